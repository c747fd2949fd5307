"""Append-only deployment event log."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class DeploymentEvent(Base):
    """One entry in an instance's audit log. Never updated or deleted.

    The autoincrement id gives the strict per-instance order.
    """

    __tablename__ = "deployment_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(
        ForeignKey("service_instances.id", ondelete="CASCADE"), index=True
    )
    team_id: Mapped[str] = mapped_column(index=True)

    event_type: Mapped[str]
    severity: Mapped[str] = mapped_column(default="info")
    success: Mapped[bool] = mapped_column(default=True)
    duration_ms: Mapped[int | None] = mapped_column(default=None)
    detail: Mapped[str | None] = mapped_column(Text, default=None)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<DeploymentEvent(id={self.id}, instance={self.instance_id}, type={self.event_type})>"
        )
