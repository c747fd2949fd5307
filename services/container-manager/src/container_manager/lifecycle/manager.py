"""
Service lifecycle manager.

The single writer of `ServiceInstance.status`. Every transition is checked
against the state machine, persisted, and broadcast. Long-running work
(build, deploy, restart, scale) runs as a background task holding the
instance lock; the request that started it returns immediately.
"""

import asyncio
from collections.abc import Coroutine, Iterable
import time
from typing import Any

import structlog

from ..auth import Actor, authorize
from ..config import Settings
from ..detection.snapshot import join_folder
from ..detection.topology import sanitize_name
from ..errors import (
    InvalidTransitionError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from ..events import EventBroadcaster
from ..executor import DeploymentExecutor
from ..models import DeploymentEvent, ServiceInstance
from ..models.base import ensure_utc, utcnow
from ..schemas import (
    DeploymentConfig,
    HealthStatus,
    ServiceCreate,
    ServiceRecommendation,
    ServiceUpdate,
    StatusRead,
    TopologyAnalysisRead,
)
from ..scaling import ScalingController
from ..spec_builder import DeploymentSpecBuilder, default_recommendation, merge_config
from ..store import ServiceStore
from .locks import InstanceLocks
from .state_machine import STARTABLE_STATES, TRANSIENT_STATES, ServiceStatus, validate_transition

logger = structlog.get_logger()

S = ServiceStatus


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class LifecycleManager:
    def __init__(
        self,
        store: ServiceStore,
        builder: DeploymentSpecBuilder,
        executor: DeploymentExecutor,
        broadcaster: EventBroadcaster,
        settings: Settings,
        monitor=None,
    ):
        self.store = store
        self.builder = builder
        self.executor = executor
        self.broadcaster = broadcaster
        self.settings = settings
        self.monitor = monitor
        self.locks = InstanceLocks()
        self.scaling = ScalingController(self)

    @staticmethod
    def config_of(instance: ServiceInstance) -> DeploymentConfig:
        return DeploymentConfig.model_validate(instance.deployment_config)

    # === Reads ===

    async def get(
        self, actor: Actor, team_id: str, instance_id: str, include_deleted: bool = False
    ) -> ServiceInstance:
        authorize(actor, team_id, "read")
        instance = await self.store.get_instance(instance_id, team_id)
        if instance.status == S.DELETED and not include_deleted:
            raise NotFoundError(f"Service '{instance_id}' not found", service_id=instance_id)
        return instance

    async def list_instances(
        self,
        actor: Actor,
        team_id: str,
        workspace_id: str | None = None,
        status: str | Iterable[str] | None = None,
    ) -> list[ServiceInstance]:
        authorize(actor, team_id, "read")
        return await self.store.list_instances(
            team_id=team_id, workspace_id=workspace_id, status=status
        )

    async def events(self, actor: Actor, team_id: str, instance_id: str) -> list[DeploymentEvent]:
        instance = await self.get(actor, team_id, instance_id, include_deleted=True)
        return await self.store.list_events(instance.id)

    async def status(self, actor: Actor, team_id: str, instance_id: str) -> StatusRead:
        """Status of the last completed transition plus health, never in-flight state."""
        instance = await self.get(actor, team_id, instance_id)
        config = self.config_of(instance)
        health, degraded = HealthStatus.UNKNOWN, False
        if self.monitor is not None:
            report = self.monitor.health_report(instance)
            health, degraded = report.status, report.degraded
        uptime = None
        if instance.status == S.RUNNING and instance.deployed_at is not None:
            uptime = round((utcnow() - ensure_utc(instance.deployed_at)).total_seconds(), 3)
        return StatusRead(
            service_id=instance.id,
            status=instance.status,
            health=health,
            degraded=degraded,
            current_replicas=config.scaling.current_replicas,
            target_replicas=config.scaling.target_replicas,
            uptime_seconds=uptime,
            operation_in_progress=self.locks.operation(instance.id),
        )

    # === Transitions and events ===

    async def transition(
        self, instance: ServiceInstance, target: ServiceStatus, **changes: Any
    ) -> ServiceInstance:
        """Move an instance to `target`. Raises InvalidTransitionError if not allowed."""
        target = validate_transition(instance.status, target)
        previous = instance.status
        updated = await self.store.update_instance(instance.id, status=target.value, **changes)
        logger.info(
            "status_transition",
            instance_id=instance.id,
            previous_status=previous,
            status=target.value,
        )
        await self.broadcaster.status_changed(updated, target.value, previous)
        self._sync_monitoring(updated)
        return updated

    def _sync_monitoring(self, instance: ServiceInstance) -> None:
        if self.monitor is None:
            return
        if instance.status == S.RUNNING:
            self.monitor.watch(instance)
        elif instance.status == S.DELETED:
            self.monitor.forget(instance.id)
        elif instance.status != S.SCALING:
            self.monitor.unwatch(instance.id)

    async def record(
        self, instance: ServiceInstance, event_type: str, **kwargs: Any
    ) -> DeploymentEvent:
        event = await self.store.append_event(instance, event_type, **kwargs)
        await self.broadcaster.deployment_event(event)
        return event

    # === Background operations ===

    def spawn(
        self, instance_id: str, lock_id: str, operation: str, coro: Coroutine[Any, Any, Any]
    ) -> asyncio.Task | None:
        """Run `coro` in the background; the instance lock is released when it finishes.

        Returns None without running `coro` when stop or delete already asked to preempt
        the lock while the caller was still preparing.
        """
        preempted_by = self.locks.preempted_by(instance_id, lock_id)
        if preempted_by is not None:
            coro.close()
            logger.info(
                "operation_preempted_before_start",
                instance_id=instance_id,
                operation=operation,
                preempted_by=preempted_by,
            )
            self.locks.release(instance_id, lock_id)
            return None
        task = asyncio.create_task(
            self._guard(instance_id, operation, coro), name=f"{operation}:{instance_id}"
        )
        task.add_done_callback(lambda _: self.locks.release(instance_id, lock_id))
        self.locks.attach_task(instance_id, lock_id, task)
        return task

    async def _guard(
        self, instance_id: str, operation: str, coro: Coroutine[Any, Any, Any]
    ) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("operation_cancelled", instance_id=instance_id, operation=operation)
            raise
        except Exception as e:
            logger.error(
                "operation_crashed",
                instance_id=instance_id,
                operation=operation,
                error=str(e),
                exc_info=True,
            )
            await self._mark_crashed(instance_id, operation, e)

    async def _mark_crashed(self, instance_id: str, operation: str, error: Exception) -> None:
        try:
            instance = await self.store.get_instance(instance_id)
            if ServiceStatus(instance.status) not in TRANSIENT_STATES:
                return
            await self.record(
                instance,
                "deployment_failed",
                success=False,
                severity="error",
                detail=f"{operation} failed unexpectedly: {error}",
            )
            target = S.RUNNING if instance.status == S.SCALING else S.ERROR
            await self.transition(instance, target)
        except Exception as e:
            logger.error("crash_recovery_failed", instance_id=instance_id, error=str(e))

    async def wait_idle(self, instance_id: str) -> None:
        """Wait for the instance's background operation, if any, to finish."""
        task = self.locks.task(instance_id)
        if task is not None:
            await asyncio.wait({task})
            # Let the done-callback release the lock
            await asyncio.sleep(0)

    # === Operations ===

    async def create(self, actor: Actor, team_id: str, payload: ServiceCreate) -> ServiceInstance:
        """Create an instance in `pending` from an analysis recommendation or explicit fields."""
        authorize(actor, team_id, "create")
        if payload.analysis_id is not None:
            recommendation, workspace_id, folder_path = await self._recommendation_for(
                team_id, payload
            )
        else:
            folder_path = join_folder(".", payload.folder_path)
            workspace_id = payload.workspace_id
            base = folder_path.rsplit("/", 1)[-1]
            name = payload.name or sanitize_name(base if base != "." else "app", fallback="app")
            recommendation = default_recommendation(name, payload.service_type, payload.confidence)

        name = payload.name or recommendation.name
        config = await self.builder.build(
            recommendation, payload.overrides, workspace_id=workspace_id
        )
        instance = await self.store.create_instance(
            actor,
            team_id=team_id,
            workspace_id=workspace_id,
            name=name,
            folder_path=folder_path,
            service_type=recommendation.service_type.value,
            confidence=recommendation.confidence,
            config=config,
            status=S.PENDING.value,
        )
        await self.broadcaster.status_changed(instance, instance.status, None)
        return instance

    async def _recommendation_for(
        self, team_id: str, payload: ServiceCreate
    ) -> tuple[ServiceRecommendation, str, str]:
        analysis = await self.store.get_analysis(payload.analysis_id)
        if analysis.team_id != team_id:
            # Other teams' analyses are indistinguishable from missing ones
            raise NotFoundError(f"Analysis '{analysis.id}' not found", analysis_id=analysis.id)
        if payload.workspace_id is not None and payload.workspace_id != analysis.workspace_id:
            raise ValidationError(
                "Analysis belongs to a different workspace",
                code="workspace_mismatch",
                analysis_id=analysis.id,
            )
        result = TopologyAnalysisRead.from_record(analysis)
        if payload.recommendation_index >= len(result.recommendations):
            raise ValidationError(
                f"Analysis has no recommendation #{payload.recommendation_index}",
                code="unknown_recommendation",
                recommendations=len(result.recommendations),
            )
        recommendation = result.recommendations[payload.recommendation_index]
        folder_path = join_folder(analysis.folder_path, recommendation.folder_path)
        return recommendation, analysis.workspace_id, folder_path

    async def update(
        self, actor: Actor, team_id: str, instance_id: str, payload: ServiceUpdate
    ) -> ServiceInstance:
        """Rename or re-configure an instance. Config changes apply on the next deploy."""
        authorize(actor, team_id, "update")
        lock_id = await self.locks.acquire(instance_id, "update")
        try:
            instance = await self.get(actor, team_id, instance_id)
            changes: dict[str, Any] = {}
            if payload.overrides is not None:
                config = merge_config(self.config_of(instance), payload.overrides)
                await self.builder.validate_ports(
                    config, instance.workspace_id, exclude_instance_id=instance.id
                )
                changes["deployment_config"] = config
            if payload.name is not None:
                changes["name"] = payload.name
            if not changes:
                return instance
            instance = await self.store.update_instance(instance.id, actor, **changes)
            logger.info("instance_updated", instance_id=instance.id, fields=sorted(changes))
            return instance
        finally:
            self.locks.release(instance_id, lock_id)

    async def start(
        self, actor: Actor, team_id: str, instance_id: str, operation: str = "start"
    ) -> ServiceInstance:
        """Build and deploy in the background. Allowed from pending, stopped and error."""
        authorize(actor, team_id, "operate")
        lock_id = await self.locks.acquire(instance_id, operation)
        try:
            instance = await self.get(actor, team_id, instance_id)
            if ServiceStatus(instance.status) not in STARTABLE_STATES:
                raise InvalidTransitionError(instance.status, S.BUILDING.value)
            if instance.status == S.ERROR:
                instance = await self.transition(instance, S.STOPPED, stopped_at=utcnow())
            if instance.status == S.STOPPED:
                instance = await self.transition(instance, S.PENDING)
        except BaseException:
            self.locks.release(instance_id, lock_id)
            raise

        self.spawn(instance_id, lock_id, operation, self._build_and_deploy(instance))
        return instance

    async def deploy(self, actor: Actor, team_id: str, instance_id: str) -> ServiceInstance:
        return await self.start(actor, team_id, instance_id, operation="deploy")

    async def _build_and_deploy(self, instance: ServiceInstance) -> None:
        log = logger.bind(instance_id=instance.id)
        config = self.config_of(instance)
        started = time.monotonic()

        try:
            plan = self.executor.plan_build(instance, config)
        except ServiceError as e:
            # Build never started: instance stays pending
            log.warning("build_not_accepted", error=e.message, code=e.code)
            await self.record(
                instance,
                "deployment_failed",
                success=False,
                severity="error",
                detail=e.message,
                metadata={"stage": "submit", "code": e.code},
            )
            return

        await self.record(instance, "deployment_started", metadata={"image_tag": plan.tag})
        instance = await self.transition(instance, S.BUILDING)
        await self.record(instance, "build_started")

        build_started = time.monotonic()
        try:
            image_id = await self.executor.build(instance, plan)
        except ServiceError as e:
            await self.record(
                instance,
                "build_failed",
                success=False,
                severity="error",
                duration_ms=elapsed_ms(build_started),
                detail=e.message,
                metadata={"code": e.code, "transient": getattr(e, "transient", False)},
            )
            await self._fail(instance, "build", e, started)
            return
        await self.record(
            instance,
            "build_completed",
            duration_ms=elapsed_ms(build_started),
            metadata={"image_id": image_id},
        )

        instance = await self.transition(instance, S.DEPLOYING, image_id=image_id)
        try:
            container_id = await self.executor.deploy(instance, config, image_id)
        except ServiceError as e:
            if e.code == "port_conflict":
                await self.record(
                    instance,
                    "port_conflict",
                    success=False,
                    severity="error",
                    detail=e.message,
                    metadata=e.context,
                )
            await self._fail(instance, "deploy", e, started)
            return
        await self.record(instance, "container_started", metadata={"container_id": container_id})

        config.scaling.current_replicas = 1
        config.scaling.target_replicas = 1
        instance = await self.transition(
            instance,
            S.RUNNING,
            container_id=container_id,
            deployment_config=config,
            deployed_at=utcnow(),
            stopped_at=None,
        )
        await self.record(
            instance,
            "deployment_completed",
            duration_ms=elapsed_ms(started),
            metadata={"image_id": image_id, "container_id": container_id},
        )
        log.info("deployment_completed", duration_ms=elapsed_ms(started))

    async def _fail(
        self, instance: ServiceInstance, stage: str, error: ServiceError, started: float
    ) -> None:
        logger.warning(
            "deployment_failed",
            instance_id=instance.id,
            stage=stage,
            code=error.code,
            error=error.message,
        )
        await self.record(
            instance,
            "deployment_failed",
            success=False,
            severity="error",
            duration_ms=elapsed_ms(started),
            detail=error.message,
            metadata={"stage": stage, "code": error.code},
        )
        await self.transition(instance, S.ERROR)

    async def restart(self, actor: Actor, team_id: str, instance_id: str) -> ServiceInstance:
        authorize(actor, team_id, "operate")
        lock_id = await self.locks.acquire(instance_id, "restart")
        try:
            instance = await self.get(actor, team_id, instance_id)
            if instance.status != S.RUNNING:
                raise InvalidTransitionError(instance.status, S.RESTARTING.value)
            instance = await self.transition(instance, S.RESTARTING)
        except BaseException:
            self.locks.release(instance_id, lock_id)
            raise

        self.spawn(instance_id, lock_id, "restart", self._restart(instance))
        return instance

    async def _restart(self, instance: ServiceInstance) -> None:
        started = time.monotonic()
        try:
            await self.executor.restart(instance)
        except ServiceError as e:
            await self._fail(instance, "restart", e, started)
            return
        await self.record(instance, "container_restarted", duration_ms=elapsed_ms(started))
        await self.transition(instance, S.RUNNING, deployed_at=utcnow())

    async def scale(
        self, actor: Actor, team_id: str, instance_id: str, replica_count: int
    ) -> ServiceInstance:
        return await self.scaling.scale(actor, team_id, instance_id, replica_count)

    async def stop(self, actor: Actor, team_id: str, instance_id: str) -> ServiceInstance:
        """Stop an instance from any state. Runtime failures never block the transition."""
        authorize(actor, team_id, "operate")
        instance = await self.get(actor, team_id, instance_id)
        if instance.status == S.STOPPED and self.locks.operation(instance_id) is None:
            return instance

        lock_id = await self.locks.preempt(instance_id, "stop")
        try:
            instance = await self.store.get_instance(instance_id)
            if instance.status in (S.STOPPED, S.DELETED):
                return instance
            return await self._stop_locked(instance)
        finally:
            self.locks.release(instance_id, lock_id)

    async def _stop_locked(self, instance: ServiceInstance) -> ServiceInstance:
        started = time.monotonic()
        config = self.config_of(instance)
        try:
            await self.executor.stop(instance, config)
        except Exception as e:
            logger.warning("container_stop_failed", instance_id=instance.id, error=str(e))
            await self.record(
                instance,
                "stop_failed",
                success=False,
                severity="error",
                duration_ms=elapsed_ms(started),
                detail=str(e),
            )
        else:
            await self.record(instance, "container_stopped", duration_ms=elapsed_ms(started))

        config.scaling.current_replicas = 0
        return await self.transition(
            instance, S.STOPPED, stopped_at=utcnow(), deployment_config=config
        )

    async def delete(self, actor: Actor, team_id: str, instance_id: str) -> ServiceInstance:
        """Soft-delete from any state after a best-effort stop and removal."""
        authorize(actor, team_id, "delete")
        await self.get(actor, team_id, instance_id)

        lock_id = await self.locks.preempt(instance_id, "delete")
        try:
            instance = await self.store.get_instance(instance_id)
            if instance.status == S.DELETED:
                return instance

            config = self.config_of(instance)
            for action, call in (
                ("stop", lambda: self.executor.stop(instance, config)),
                ("remove", lambda: self.executor.remove(instance)),
            ):
                try:
                    await call()
                except Exception as e:
                    logger.warning(
                        "container_cleanup_failed",
                        instance_id=instance.id,
                        action=action,
                        error=str(e),
                    )
                    await self.record(
                        instance,
                        "stop_failed",
                        success=False,
                        severity="error",
                        detail=str(e),
                        metadata={"action": action},
                    )

            config.scaling.current_replicas = 0
            now = utcnow()
            instance = await self.transition(
                instance,
                S.DELETED,
                deleted_at=now,
                stopped_at=instance.stopped_at or now,
                deployment_config=config,
            )
            await self.record(instance, "deleted")
            return instance
        finally:
            self.locks.release(instance_id, lock_id)

    # === Startup and shutdown ===

    async def recover_interrupted(self) -> None:
        """Settle instances left mid-transition by a previous process and resume monitoring."""
        interrupted = await self.store.list_instances(status=[s.value for s in TRANSIENT_STATES])
        for instance in interrupted:
            scaling = instance.status == S.SCALING
            await self.record(
                instance,
                "scaling_failed" if scaling else "deployment_failed",
                success=False,
                severity="error",
                detail="Interrupted by shutdown",
                metadata={"status": instance.status},
            )
            await self.transition(instance, S.RUNNING if scaling else S.ERROR)
            logger.warning("interrupted_operation_settled", instance_id=instance.id)

        for instance in await self.store.list_instances(status=S.RUNNING.value):
            self.executor.adopt_ports(instance, self.config_of(instance))
            if self.monitor is not None:
                self.monitor.watch(instance)

    async def shutdown(self) -> None:
        """Cancel in-flight operations and wait for them to unwind."""
        tasks = self.locks.tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("operations_cancelled", count=len(tasks))
