"""
Deployment executor.

Translates lifecycle commands into container runtime calls. Transient
runtime failures are retried with exponential backoff; operations that
exceed the configured timeout are treated as permanent failures. Host
ports are re-checked and claimed at the moment a container is started.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import structlog

from .config import Settings
from .detection.dockerfiles import image_tag
from .detection.snapshot import resolve_workspace_path
from .errors import PermanentRuntimeError, ScanError, TransientRuntimeError, ValidationError
from .models import ServiceInstance
from .runtime import ContainerRuntime, ContainerSpec, ResourceSample, ScaleResult, container_name
from .schemas import DeploymentConfig
from .store import ServiceStore

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class BuildPlan:
    folder: str
    build_file: str
    tag: str


# Statuses in which an instance has already bound its host ports
PORT_HOLDING_STATUSES = ("running", "restarting", "scaling")


class DeploymentExecutor:
    def __init__(self, runtime: ContainerRuntime, store: ServiceStore, settings: Settings):
        self.runtime = runtime
        self.store = store
        self.settings = settings
        # workspace_id -> host port -> instance id, for containers started by this process
        self._bound: defaultdict[str, dict[int, str]] = defaultdict(dict)
        self._port_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def container_ref(self, instance: ServiceInstance) -> str:
        return container_name(self.settings.container_prefix, instance.id)

    def service_folder(self, instance: ServiceInstance) -> Path:
        return resolve_workspace_path(
            self.settings.workspace_root, instance.workspace_id, instance.folder_path
        )

    def container_spec(
        self, instance: ServiceInstance, config: DeploymentConfig, image_ref: str
    ) -> ContainerSpec:
        folder = self.service_folder(instance)
        volumes = {}
        for host, target in config.volumes.items():
            host_path = Path(host)
            if not host_path.is_absolute():
                host_path = (folder / host_path).resolve()
            volumes[str(host_path)] = target

        return ContainerSpec(
            name=self.container_ref(instance),
            image=image_ref,
            ports=dict(config.ports),
            env=dict(config.env),
            volumes=volumes,
            memory_mb=config.resources.memory_mb,
            cpu_cores=config.resources.cpu_cores,
            labels={
                "fas.managed": "true",
                "fas.service_id": instance.id,
                "fas.name": instance.name,
                "fas.type": instance.service_type,
                "fas.team_id": instance.team_id,
                "fas.workspace_id": instance.workspace_id,
            },
            network=self.settings.docker_network or None,
        )

    async def _with_retries(
        self, action: str, instance_id: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        attempts = self.settings.build_max_retries + 1
        for attempt in range(attempts):
            try:
                return await call()
            except TransientRuntimeError as e:
                if attempt == attempts - 1:
                    logger.error(
                        "runtime_retries_exhausted",
                        action=action,
                        instance_id=instance_id,
                        attempts=attempts,
                        error=e.message,
                    )
                    raise
                delay = self.settings.retry_backoff_seconds * 2**attempt
                logger.warning(
                    "runtime_call_retrying",
                    action=action,
                    instance_id=instance_id,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=e.message,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def _with_timeout(self, action: str, instance_id: str, call: Awaitable[T]) -> T:
        timeout = self.settings.operation_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout)
        except TimeoutError as e:
            logger.error(
                "runtime_call_timed_out", action=action, instance_id=instance_id, timeout=timeout
            )
            raise PermanentRuntimeError(
                f"{action} timed out after {timeout}s", code="timeout"
            ) from e

    # === Lifecycle operations ===

    def plan_build(self, instance: ServiceInstance, config: DeploymentConfig) -> BuildPlan:
        """Check that a build can be submitted at all. Raises before anything runs."""
        if not config.build_file.strip():
            raise PermanentRuntimeError(
                f"Service '{instance.name}' has no build file", code="build_not_accepted"
            )
        folder = self.service_folder(instance)
        if not folder.is_dir():
            raise ScanError(
                f"Service folder '{instance.folder_path}' does not exist", path=str(folder)
            )
        tag = image_tag(self.settings.image_prefix, instance.name, config.build_file, str(folder))
        return BuildPlan(folder=str(folder), build_file=config.build_file, tag=tag)

    async def build(self, instance: ServiceInstance, plan: BuildPlan) -> str:
        """Build the instance image; returns the image ref.

        A build that times out or is preempted is cancelled in the runtime too.
        """
        try:
            return await self._with_timeout(
                "build",
                instance.id,
                self._with_retries(
                    "build",
                    instance.id,
                    lambda: self.runtime.build(plan.folder, plan.build_file, plan.tag),
                ),
            )
        except PermanentRuntimeError as e:
            if e.code == "timeout":
                await self._cancel_build(instance, plan)
            raise
        except asyncio.CancelledError:
            await self._cancel_build(instance, plan)
            raise

    async def _cancel_build(self, instance: ServiceInstance, plan: BuildPlan) -> None:
        try:
            await self.runtime.cancel_build(plan.tag)
        except Exception as e:
            logger.warning(
                "build_cancel_failed", instance_id=instance.id, tag=plan.tag, error=str(e)
            )
        else:
            logger.info("build_cancelled", instance_id=instance.id, tag=plan.tag)

    async def deploy(
        self, instance: ServiceInstance, config: DeploymentConfig, image_ref: str
    ) -> str:
        """Claim host ports and start the primary container; returns the container id."""
        spec = self.container_spec(instance, config, image_ref)
        async with self._port_locks[instance.workspace_id]:
            await self._claim_ports(instance, config)
            try:
                container_id = await self._with_timeout(
                    "deploy",
                    instance.id,
                    self._with_retries(
                        "deploy", instance.id, lambda: self.runtime.start(image_ref, spec)
                    ),
                )
            except BaseException:
                self.release_ports(instance)
                await self._best_effort_remove(instance)
                raise
        return container_id

    async def _claim_ports(self, instance: ServiceInstance, config: DeploymentConfig) -> None:
        requested = config.host_ports()
        if not requested:
            return
        bound = self._bound[instance.workspace_id]
        held = await self.store.host_ports_in_use(
            instance.workspace_id,
            exclude_instance_id=instance.id,
            statuses=PORT_HOLDING_STATUSES,
        )
        clashes = sorted(
            port
            for port in requested
            if bound.get(port, instance.id) != instance.id or port in held
        )
        if clashes:
            logger.warning(
                "port_conflict_at_bind", instance_id=instance.id, ports=clashes
            )
            raise ValidationError(
                f"Host port(s) {clashes} already bound in workspace '{instance.workspace_id}'",
                code="port_conflict",
                ports=clashes,
            )
        for port in requested:
            bound[port] = instance.id

    def release_ports(self, instance: ServiceInstance) -> None:
        bound = self._bound.get(instance.workspace_id)
        if not bound:
            return
        for port in [p for p, owner in bound.items() if owner == instance.id]:
            del bound[port]

    def adopt_ports(self, instance: ServiceInstance, config: DeploymentConfig) -> None:
        """Register ports of an instance already running before this process started."""
        bound = self._bound[instance.workspace_id]
        for port in config.host_ports():
            bound.setdefault(port, instance.id)

    async def _best_effort_remove(self, instance: ServiceInstance) -> None:
        try:
            await self.runtime.remove(self.container_ref(instance))
        except Exception as e:
            logger.warning("container_cleanup_failed", instance_id=instance.id, error=str(e))

    async def stop(self, instance: ServiceInstance, config: DeploymentConfig) -> None:
        """Drop extra replicas, then stop the primary container."""
        ref = self.container_ref(instance)
        try:
            if config.scaling.current_replicas > 1:
                image_ref = instance.image_id or ""
                spec = self.container_spec(instance, config, image_ref)
                await self.runtime.scale(ref, 1, image_ref, spec)
            await self.runtime.stop(ref)
        finally:
            self.release_ports(instance)

    async def restart(self, instance: ServiceInstance) -> None:
        await self.runtime.restart(self.container_ref(instance))

    async def remove(self, instance: ServiceInstance) -> None:
        try:
            await self.runtime.remove(self.container_ref(instance))
        finally:
            self.release_ports(instance)

    async def scale(
        self, instance: ServiceInstance, config: DeploymentConfig, replicas: int
    ) -> ScaleResult:
        """Converge to `replicas` containers. Partial results are returned, not raised."""
        image_ref = instance.image_id or ""
        spec = self.container_spec(instance, config, image_ref)
        return await self._with_timeout(
            "scale",
            instance.id,
            self._with_retries(
                "scale",
                instance.id,
                lambda: self.runtime.scale(spec.name, replicas, image_ref, spec),
            ),
        )

    # === Read-only diagnostics ===

    async def logs(self, instance: ServiceInstance, lines: int = 100) -> str:
        return await self.runtime.logs(self.container_ref(instance), lines)

    async def stats(self, instance: ServiceInstance) -> ResourceSample:
        return await self.runtime.stats(self.container_ref(instance))
