"""Container runtime adapter contract."""

from dataclasses import dataclass, field, replace
from typing import Protocol


@dataclass
class ContainerSpec:
    """Everything needed to start one container."""

    name: str
    image: str
    # "3000/tcp" -> host port (None: exposed but not published)
    ports: dict[str, int | None] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    # absolute host path -> container path
    volumes: dict[str, str] = field(default_factory=dict)
    memory_mb: int = 512
    cpu_cores: float = 1.0
    labels: dict[str, str] = field(default_factory=dict)
    network: str | None = None
    publish_ports: bool = True


@dataclass
class ScaleResult:
    requested: int
    replicas: int
    error: str | None = None

    @property
    def partial(self) -> bool:
        return self.replicas < self.requested


@dataclass
class ResourceSample:
    cpu_percent: float | None = None
    memory_percent: float | None = None
    memory_usage_bytes: float | None = None
    network_rx_bytes: float | None = None
    network_tx_bytes: float | None = None
    disk_read_bytes: float | None = None
    disk_write_bytes: float | None = None


@dataclass
class ExecResult:
    exit_code: int
    output: str = ""


def container_name(prefix: str, instance_id: str) -> str:
    return f"{prefix}-{instance_id[:12]}"


def replica_name(service_ref: str, index: int) -> str:
    """Name of replica `index` (1-based). Replica 1 is the primary container."""
    return service_ref if index == 1 else f"{service_ref}-r{index}"


def replica_spec(spec: ContainerSpec, index: int) -> ContainerSpec:
    """Spec for an additional replica: own name, no published host ports."""
    if index == 1:
        return spec
    labels = {**spec.labels, "fas.replica": str(index)}
    return replace(spec, name=replica_name(spec.name, index), publish_ports=False, labels=labels)


class ContainerRuntime(Protocol):
    """Boundary to the container engine. Every method raises ContainerRuntimeError on failure."""

    async def build(self, folder_path: str, build_file: str, tag: str) -> str:
        """Build an image from a folder and Dockerfile content; returns the image ref."""
        ...

    async def cancel_build(self, tag: str) -> None:
        """Best-effort discard of a build the caller gave up on, including its image."""
        ...

    async def start(self, image_ref: str, spec: ContainerSpec) -> str:
        """Create and start a container; returns the container ref."""
        ...

    async def stop(self, container_ref: str) -> None: ...

    async def restart(self, container_ref: str) -> None: ...

    async def scale(
        self, service_ref: str, replicas: int, image_ref: str, spec: ContainerSpec
    ) -> ScaleResult:
        """Converge the replica set of `service_ref` to `replicas` containers."""
        ...

    async def stats(self, container_ref: str) -> ResourceSample: ...

    async def logs(self, container_ref: str, lines: int = 100) -> str: ...

    async def exec(self, container_ref: str, command: list[str], timeout: float) -> ExecResult: ...

    async def remove(self, container_ref: str) -> None:
        """Remove a container and its extra replicas. Missing containers are not an error."""
        ...

    def close(self) -> None:
        """Release client resources (thread pools, connections)."""
        ...
