"""Data access layer for service instances, deployment events and analyses.

Mutating calls take the acting `Actor` and run `authorize()` first. Instance
uniqueness per (workspace, folder) among non-deleted rows is enforced here,
under a per-workspace lock, because soft-deleted rows keep their folder path.
"""

import asyncio
from collections import defaultdict
from collections.abc import Iterable
from typing import Any
import uuid

from sqlalchemy import select
import structlog

from .auth import SYSTEM_ACTOR, Actor, authorize
from .database import Database
from .errors import NotFoundError, ValidationError
from .models import DeploymentEvent, ServiceInstance, TopologyAnalysis
from .models.base import utcnow
from .schemas import AnalysisResult, DeploymentConfig

logger = structlog.get_logger()

DELETED = "deleted"


class ServiceStore:
    def __init__(self, database: Database):
        self._sessions = database.session_maker
        self._workspace_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # === Service instances ===

    async def create_instance(
        self,
        actor: Actor,
        *,
        team_id: str,
        workspace_id: str,
        name: str,
        folder_path: str,
        service_type: str,
        confidence: float,
        config: DeploymentConfig,
        status: str = "pending",
    ) -> ServiceInstance:
        """Insert a new instance; folder and name must be unique in the workspace."""
        authorize(actor, team_id, "create")

        async with self._workspace_locks[workspace_id]:
            async with self._sessions() as session:
                result = await session.execute(
                    select(ServiceInstance).where(
                        ServiceInstance.workspace_id == workspace_id,
                        ServiceInstance.status != DELETED,
                    )
                )
                for other in result.scalars():
                    if other.folder_path == folder_path:
                        raise ValidationError(
                            f"Folder '{folder_path}' is already deployed as '{other.name}'",
                            code="duplicate_folder",
                            service_id=other.id,
                        )
                    if other.name == name:
                        raise ValidationError(
                            f"Service name '{name}' is already used in this workspace",
                            code="duplicate_name",
                            service_id=other.id,
                        )

                instance = ServiceInstance(
                    id=uuid.uuid4().hex,
                    team_id=team_id,
                    workspace_id=workspace_id,
                    name=name,
                    folder_path=folder_path,
                    service_type=service_type,
                    confidence=confidence,
                    status=status,
                    deployment_config=config.model_dump(mode="json"),
                )
                session.add(instance)
                await session.commit()
                await session.refresh(instance)

        logger.info(
            "instance_created",
            instance_id=instance.id,
            team_id=team_id,
            workspace_id=workspace_id,
            name=name,
        )
        return instance

    async def get_instance(self, instance_id: str, team_id: str | None = None) -> ServiceInstance:
        async with self._sessions() as session:
            instance = await session.get(ServiceInstance, instance_id)
        if instance is None or (team_id is not None and instance.team_id != team_id):
            raise NotFoundError(f"Service '{instance_id}' not found", service_id=instance_id)
        return instance

    async def list_instances(
        self,
        team_id: str | None = None,
        workspace_id: str | None = None,
        status: str | Iterable[str] | None = None,
        include_deleted: bool = False,
    ) -> list[ServiceInstance]:
        query = select(ServiceInstance)
        if team_id is not None:
            query = query.where(ServiceInstance.team_id == team_id)
        if workspace_id is not None:
            query = query.where(ServiceInstance.workspace_id == workspace_id)
        if isinstance(status, str):
            query = query.where(ServiceInstance.status == status)
        elif status is not None:
            query = query.where(ServiceInstance.status.in_(list(status)))
        if not include_deleted and status is None:
            query = query.where(ServiceInstance.status != DELETED)
        query = query.order_by(ServiceInstance.created_at, ServiceInstance.id)

        async with self._sessions() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_instance(
        self, instance_id: str, actor: Actor = SYSTEM_ACTOR, **changes: Any
    ) -> ServiceInstance:
        """Apply column changes to an instance. Only the lifecycle manager passes `status`."""
        async with self._sessions() as session:
            instance = await session.get(ServiceInstance, instance_id)
            if instance is None:
                raise NotFoundError(f"Service '{instance_id}' not found", service_id=instance_id)
            authorize(actor, instance.team_id, "update")

            if "name" in changes and changes["name"] != instance.name:
                await self._check_name_free(session, instance, changes["name"])

            for key, value in changes.items():
                if key == "deployment_config" and isinstance(value, DeploymentConfig):
                    value = value.model_dump(mode="json")
                setattr(instance, key, value)
            await session.commit()
            await session.refresh(instance)
            return instance

    async def _check_name_free(self, session, instance: ServiceInstance, name: str) -> None:
        result = await session.execute(
            select(ServiceInstance.id).where(
                ServiceInstance.workspace_id == instance.workspace_id,
                ServiceInstance.status != DELETED,
                ServiceInstance.name == name,
                ServiceInstance.id != instance.id,
            )
        )
        if result.first() is not None:
            raise ValidationError(
                f"Service name '{name}' is already used in this workspace", code="duplicate_name"
            )

    async def host_ports_in_use(
        self,
        workspace_id: str,
        exclude_instance_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> dict[int, str]:
        """Map host port -> owning instance id among non-deleted instances of a workspace."""
        instances = await self.list_instances(
            workspace_id=workspace_id, status=list(statuses) if statuses is not None else None
        )
        in_use: dict[int, str] = {}
        for instance in instances:
            if instance.id == exclude_instance_id or instance.status == DELETED:
                continue
            config = DeploymentConfig.model_validate(instance.deployment_config)
            for port in config.host_ports():
                in_use.setdefault(port, instance.id)
        return in_use

    # === Deployment events ===

    async def append_event(
        self,
        instance: ServiceInstance,
        event_type: str,
        *,
        success: bool = True,
        severity: str = "info",
        duration_ms: int | None = None,
        detail: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeploymentEvent:
        event = DeploymentEvent(
            instance_id=instance.id,
            team_id=instance.team_id,
            event_type=event_type,
            success=success,
            severity=severity,
            duration_ms=duration_ms,
            detail=detail,
            event_metadata=metadata or {},
            occurred_at=utcnow(),
        )
        async with self._sessions() as session:
            session.add(event)
            await session.commit()
            await session.refresh(event)

        logger.info(
            "deployment_event_recorded",
            instance_id=instance.id,
            event_type=event_type,
            success=success,
            severity=severity,
        )
        return event

    async def list_events(self, instance_id: str) -> list[DeploymentEvent]:
        async with self._sessions() as session:
            result = await session.execute(
                select(DeploymentEvent)
                .where(DeploymentEvent.instance_id == instance_id)
                .order_by(DeploymentEvent.id)
            )
            return list(result.scalars().all())

    # === Topology analyses ===

    async def save_analysis(
        self, team_id: str, workspace_id: str, folder_path: str, result: AnalysisResult
    ) -> TopologyAnalysis:
        """Store a new analysis row. Prior analyses of the folder are left untouched."""
        analysis = TopologyAnalysis(
            id=uuid.uuid4().hex,
            team_id=team_id,
            workspace_id=workspace_id,
            folder_path=folder_path,
            deployment_strategy=result.deployment_strategy,
            result=result.model_dump(mode="json"),
            analyzed_at=utcnow(),
        )
        async with self._sessions() as session:
            session.add(analysis)
            await session.commit()
            await session.refresh(analysis)
        return analysis

    async def get_analysis(self, analysis_id: str) -> TopologyAnalysis:
        async with self._sessions() as session:
            analysis = await session.get(TopologyAnalysis, analysis_id)
        if analysis is None:
            raise NotFoundError(f"Analysis '{analysis_id}' not found", analysis_id=analysis_id)
        return analysis

    async def list_analyses(self, team_id: str, workspace_id: str) -> list[TopologyAnalysis]:
        async with self._sessions() as session:
            result = await session.execute(
                select(TopologyAnalysis)
                .where(
                    TopologyAnalysis.team_id == team_id,
                    TopologyAnalysis.workspace_id == workspace_id,
                )
                .order_by(TopologyAnalysis.analyzed_at.desc())
            )
            return list(result.scalars().all())
