"""
In-memory container runtime.

Deterministic simulator used by tests and local dry runs (`RUNTIME_BACKEND=memory`).
Failures are scripted per method with `fail_next()`; builds can be held
open with `hold_builds()` to observe an instance mid-build.
"""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass, field
import uuid

import structlog

from ..errors import ContainerRuntimeError, PermanentRuntimeError
from .base import ContainerSpec, ExecResult, ResourceSample, ScaleResult, replica_spec

logger = structlog.get_logger()


@dataclass
class FakeContainer:
    id: str
    name: str
    image: str
    spec: ContainerSpec
    running: bool = True
    restarts: int = 0
    log_lines: list[str] = field(default_factory=list)


class InMemoryRuntime:
    def __init__(self, replica_capacity: int | None = None):
        self.images: dict[str, str] = {}
        self.containers: dict[str, FakeContainer] = {}
        self.calls: list[tuple[str, str]] = []
        # Maximum number of replicas scale() can bring up, None for unlimited
        self.replica_capacity = replica_capacity
        self.samples: dict[str, ResourceSample] = {}
        self.exec_results: deque[ExecResult] = deque()
        self._failures: defaultdict[str, deque[ContainerRuntimeError]] = defaultdict(deque)
        self._build_gate: asyncio.Event | None = None
        self.build_started = asyncio.Event()

    # === Scripting ===

    def fail_next(self, method: str, error: ContainerRuntimeError, times: int = 1) -> None:
        """Make the next `times` calls of `method` raise `error`."""
        for _ in range(times):
            self._failures[method].append(error)

    def hold_builds(self) -> None:
        """Block builds until `release_builds()` is called."""
        self._build_gate = asyncio.Event()

    def release_builds(self) -> None:
        if self._build_gate is not None:
            self._build_gate.set()

    def calls_to(self, method: str) -> list[str]:
        return [ref for name, ref in self.calls if name == method]

    def _record(self, method: str, ref: str) -> None:
        self.calls.append((method, ref))
        if self._failures[method]:
            raise self._failures[method].popleft()

    def _bound_ports(self, exclude: str) -> set[int]:
        ports = set()
        for container in self.containers.values():
            if container.name == exclude or not container.running:
                continue
            if container.spec.publish_ports:
                ports.update(p for p in container.spec.ports.values() if p is not None)
        return ports

    # === ContainerRuntime ===

    async def build(self, folder_path: str, build_file: str, tag: str) -> str:
        self._record("build", tag)
        self.build_started.set()
        if self._build_gate is not None:
            await self._build_gate.wait()
        if not build_file.strip():
            raise PermanentRuntimeError("build failed: empty build file", code="build_failed")
        image_id = f"sha256:{uuid.uuid4().hex}"
        self.images[tag] = image_id
        return image_id

    async def cancel_build(self, tag: str) -> None:
        self._record("cancel_build", tag)
        self.images.pop(tag, None)

    async def start(self, image_ref: str, spec: ContainerSpec) -> str:
        self._record("start", spec.name)
        if spec.publish_ports:
            requested = {p for p in spec.ports.values() if p is not None}
            taken = requested & self._bound_ports(exclude=spec.name)
            if taken:
                raise PermanentRuntimeError(
                    f"start failed: port is already allocated: {sorted(taken)}",
                    code="port_conflict",
                )
        container = FakeContainer(
            id=uuid.uuid4().hex, name=spec.name, image=image_ref, spec=spec
        )
        container.log_lines.append(f"{spec.name} started")
        self.containers[spec.name] = container
        return container.id

    async def stop(self, container_ref: str) -> None:
        self._record("stop", container_ref)
        container = self.containers.get(container_ref)
        if container is not None:
            container.running = False

    async def restart(self, container_ref: str) -> None:
        self._record("restart", container_ref)
        container = self.containers.get(container_ref)
        if container is None:
            raise PermanentRuntimeError(f"restart failed: no such container {container_ref}")
        container.running = True
        container.restarts += 1

    async def scale(
        self, service_ref: str, replicas: int, image_ref: str, spec: ContainerSpec
    ) -> ScaleResult:
        self._record("scale", service_ref)
        current = self._replica_names(service_ref)
        for name in current[replicas:]:
            del self.containers[name]

        achieved = min(len(current), replicas) or 1
        for index in range(achieved + 1, replicas + 1):
            if self.replica_capacity is not None and index > self.replica_capacity:
                return ScaleResult(
                    requested=replicas,
                    replicas=achieved,
                    error=f"replica {index} failed to start: capacity exhausted",
                )
            await self.start(image_ref, replica_spec(spec, index))
            achieved = index
        return ScaleResult(requested=replicas, replicas=achieved)

    async def stats(self, container_ref: str) -> ResourceSample:
        self._record("stats", container_ref)
        return self.samples.get(container_ref, ResourceSample(cpu_percent=1.0, memory_percent=10.0))

    async def logs(self, container_ref: str, lines: int = 100) -> str:
        self._record("logs", container_ref)
        container = self.containers.get(container_ref)
        if container is None:
            return ""
        return "\n".join(container.log_lines[-lines:])

    async def exec(self, container_ref: str, command: list[str], timeout: float) -> ExecResult:
        self._record("exec", container_ref)
        if self.exec_results:
            return self.exec_results.popleft()
        return ExecResult(exit_code=0)

    async def remove(self, container_ref: str) -> None:
        self._record("remove", container_ref)
        for name in self._replica_names(container_ref):
            del self.containers[name]

    def _replica_names(self, service_ref: str) -> list[str]:
        """Primary first, then replicas in index order."""
        names = [service_ref] if service_ref in self.containers else []
        replicas = [n for n in self.containers if n.startswith(f"{service_ref}-r")]
        return names + sorted(replicas, key=lambda n: int(n.rsplit("-r", 1)[1]))

    def close(self) -> None:
        logger.debug("memory_runtime_closed", containers=len(self.containers))
