from datetime import UTC, datetime
from typing import Literal
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class EventMeta(BaseModel):
    """Metadata for all broadcast events."""

    version: Literal["1"] = "1"
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)


class BaseEvent(EventMeta):
    """Base class for team-scoped events."""

    event: str
    team_id: str
    service_id: str
