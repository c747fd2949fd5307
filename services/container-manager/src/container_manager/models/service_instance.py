"""Service instance model - one deployed (or deployable) container-backed service."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ServiceInstance(Base):
    """Durable lifecycle record for a folder deployed as a service.

    `status` is written only by the lifecycle manager. Rows are soft-deleted:
    status becomes "deleted" and `deleted_at` is set.
    """

    __tablename__ = "service_instances"
    __table_args__ = (
        Index("ix_service_instances_workspace_folder", "workspace_id", "folder_path"),
    )

    id: Mapped[str] = mapped_column(primary_key=True)

    # Ownership
    team_id: Mapped[str] = mapped_column(index=True)
    workspace_id: Mapped[str] = mapped_column(index=True)

    # Identification
    name: Mapped[str]
    folder_path: Mapped[str]
    service_type: Mapped[str]
    confidence: Mapped[float] = mapped_column(default=1.0)

    status: Mapped[str] = mapped_column(default="pending", index=True)

    # Runtime handles, null until built/started
    container_id: Mapped[str | None] = mapped_column(default=None)
    image_id: Mapped[str | None] = mapped_column(default=None)

    # Ports, env, volumes, resources, health check, scaling, build file
    deployment_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    deployed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_health_check_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    def __repr__(self) -> str:
        return f"<ServiceInstance(id={self.id}, name={self.name}, status={self.status})>"
