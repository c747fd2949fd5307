"""
Scaling controller.

Converges an instance's replica set one replica at a time, persisting
`scaling.current_replicas` after every successful step so an interrupted
scale leaves an accurate partial count.
"""

import time
from typing import TYPE_CHECKING

import structlog

from .auth import Actor, authorize
from .errors import InvalidTransitionError, ServiceError, ValidationError
from .models import ServiceInstance

if TYPE_CHECKING:
    from .lifecycle.manager import LifecycleManager

logger = structlog.get_logger()


class ScalingController:
    def __init__(self, manager: "LifecycleManager"):
        self.manager = manager

    async def scale(
        self, actor: Actor, team_id: str, instance_id: str, target: int
    ) -> ServiceInstance:
        """Request `target` replicas for a running instance. Convergence runs in the background."""
        if target < 1:
            raise ValidationError(
                "Replica count must be at least 1; stop the service to run zero replicas",
                code="invalid_replica_count",
                replica_count=target,
            )
        authorize(actor, team_id, "operate")

        manager = self.manager
        lock_id = await manager.locks.acquire(instance_id, "scale")
        try:
            instance = await manager.get(actor, team_id, instance_id)
            config = manager.config_of(instance)
            bounds = config.scaling
            if not bounds.min_replicas <= target <= bounds.max_replicas:
                raise ValidationError(
                    f"Replica count {target} outside {bounds.min_replicas}..{bounds.max_replicas}",
                    code="invalid_replica_count",
                    replica_count=target,
                )
            if instance.status != "running":
                raise InvalidTransitionError(instance.status, "scaling")
            config.scaling.target_replicas = target
            instance = await manager.transition(instance, "scaling", deployment_config=config)
        except BaseException:
            manager.locks.release(instance_id, lock_id)
            raise

        manager.spawn(instance_id, lock_id, "scale", self._converge(instance, target))
        return instance

    async def _converge(self, instance: ServiceInstance, target: int) -> None:
        manager = self.manager
        config = manager.config_of(instance)
        current = max(config.scaling.current_replicas, 1)
        started = time.monotonic()
        log = logger.bind(instance_id=instance.id, target_replicas=target)

        await manager.record(
            instance, "scaling_started", metadata={"from_replicas": current, "to_replicas": target}
        )

        error: str | None = None
        while current != target:
            step = current + (1 if target > current else -1)
            try:
                result = await manager.executor.scale(instance, config, step)
            except ServiceError as e:
                error = e.message
                break

            if result.replicas != current:
                current = result.replicas
                config.scaling.current_replicas = current
                instance = await manager.store.update_instance(
                    instance.id, deployment_config=config
                )
                log.info("replica_step_completed", current_replicas=current)
            if result.replicas != step:
                error = result.error or f"Converged to {result.replicas} of {step} replicas"
                break

        duration_ms = int((time.monotonic() - started) * 1000)
        metadata = {"target_replicas": target, "current_replicas": current}
        if error is None:
            await manager.record(
                instance, "scaling_completed", duration_ms=duration_ms, metadata=metadata
            )
        else:
            log.warning("scaling_partial", current_replicas=current, error=error)
            await manager.record(
                instance,
                "scaling_failed",
                success=False,
                severity="error",
                duration_ms=duration_ms,
                detail=error,
                metadata=metadata,
            )
        await manager.transition(instance, "running", deployment_config=config)
