"""Container runtime adapters."""

from ..config import Settings
from .base import (
    ContainerRuntime,
    ContainerSpec,
    ExecResult,
    ResourceSample,
    ScaleResult,
    container_name,
    replica_name,
)
from .docker_runtime import DockerRuntime
from .memory import InMemoryRuntime


def create_runtime(settings: Settings) -> ContainerRuntime:
    if settings.runtime_backend == "memory":
        return InMemoryRuntime()
    return DockerRuntime()


__all__ = [
    "ContainerRuntime",
    "ContainerSpec",
    "DockerRuntime",
    "ExecResult",
    "InMemoryRuntime",
    "ResourceSample",
    "ScaleResult",
    "container_name",
    "create_runtime",
    "replica_name",
]
