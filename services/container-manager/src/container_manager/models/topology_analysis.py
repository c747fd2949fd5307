"""Stored topology analyses. Immutable once written."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


class TopologyAnalysis(Base):
    __tablename__ = "topology_analyses"

    id: Mapped[str] = mapped_column(primary_key=True)
    team_id: Mapped[str] = mapped_column(index=True)
    workspace_id: Mapped[str] = mapped_column(index=True)
    folder_path: Mapped[str]
    deployment_strategy: Mapped[str]
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # patterns, graph and recommendations as produced by the analyzer
    result: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    def __repr__(self) -> str:
        return f"<TopologyAnalysis(id={self.id}, workspace={self.workspace_id})>"
