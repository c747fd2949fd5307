"""Pydantic schemas for service instances and their deployment config."""

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
import re
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ..errors import ServiceError
from ..models.base import ensure_utc
from ..resources import (
    parse_cpu,
    parse_size_mb,
    validate_cpu_cores,
    validate_memory_mb,
    validate_storage_mb,
)

NAME_PATTERN = r"^[a-zA-Z0-9\-_]+$"
PORT_KEY_RE = re.compile(r"^(\d+)(?:/(tcp|udp))?$")
MAX_PORT = 65535

HealthCheckType = Literal["http", "tcp", "command"]


class ServiceType(str, Enum):
    NODEJS = "nodejs"
    PYTHON = "python"
    GOLANG = "golang"
    RUST = "rust"
    RUBY = "ruby"
    JAVA = "java"
    CONTAINERIZED = "containerized"
    COMPOSE_STACK = "compose_stack"
    STATIC_SITE = "static_site"
    PROXY = "proxy"


def _checked(fn: Callable[..., Any], *args: Any) -> Any:
    """Run a resources helper, re-raising its error as a ValueError for pydantic."""
    try:
        return fn(*args)
    except ServiceError as e:
        raise ValueError(e.message) from e


def _memory(v: Any) -> int | None:
    if v is None:
        return None
    return _checked(validate_memory_mb, _checked(parse_size_mb, v, "memory"))


def _cpu(v: Any) -> float | None:
    if v is None:
        return None
    return _checked(validate_cpu_cores, _checked(parse_cpu, v))


def _storage(v: Any) -> int | None:
    if v is None:
        return None
    return _checked(validate_storage_mb, _checked(parse_size_mb, v, "storage"))


def container_port_number(key: str) -> int:
    match = PORT_KEY_RE.match(key)
    if not match:
        raise ValueError(f"Invalid container port '{key}', expected e.g. '3000' or '3000/tcp'")
    return int(match.group(1))


def _validate_port_map(ports: dict[str, int | None] | None) -> dict[str, int | None] | None:
    if ports is None:
        return None
    for key, host_port in ports.items():
        number = container_port_number(key)
        if not 1 <= number <= MAX_PORT:
            raise ValueError(f"Container port {number} out of range 1..{MAX_PORT}")
        if host_port is not None and not 1 <= host_port <= MAX_PORT:
            raise ValueError(f"Host port {host_port} out of range 1..{MAX_PORT}")
    return ports


class ResourceLimits(BaseModel):
    """Memory in MiB, CPU in cores. Strings like '1Gi' or '500m' are accepted."""

    memory_mb: int = Field(default=512, validation_alias=AliasChoices("memory_mb", "memory"))
    cpu_cores: float = Field(default=1.0, validation_alias=AliasChoices("cpu_cores", "cpu"))
    storage_mb: int | None = Field(
        default=None, validation_alias=AliasChoices("storage_mb", "storage")
    )

    @field_validator("memory_mb", mode="before")
    @classmethod
    def parse_memory(cls, v: Any) -> int:
        return _memory(v)

    @field_validator("cpu_cores", mode="before")
    @classmethod
    def parse_cpu(cls, v: Any) -> float:
        return _cpu(v)

    @field_validator("storage_mb", mode="before")
    @classmethod
    def parse_storage(cls, v: Any) -> int | None:
        return _storage(v)


class ResourceOverrides(BaseModel):
    memory_mb: int | None = Field(
        default=None, validation_alias=AliasChoices("memory_mb", "memory")
    )
    cpu_cores: float | None = Field(default=None, validation_alias=AliasChoices("cpu_cores", "cpu"))
    storage_mb: int | None = Field(
        default=None, validation_alias=AliasChoices("storage_mb", "storage")
    )

    @field_validator("memory_mb", mode="before")
    @classmethod
    def parse_memory(cls, v: Any) -> int | None:
        return _memory(v)

    @field_validator("cpu_cores", mode="before")
    @classmethod
    def parse_cpu(cls, v: Any) -> float | None:
        return _cpu(v)

    @field_validator("storage_mb", mode="before")
    @classmethod
    def parse_storage(cls, v: Any) -> int | None:
        return _storage(v)


class HealthCheckConfig(BaseModel):
    enabled: bool = False
    type: HealthCheckType = "http"
    path: str = "/health"
    # Container port to probe; defaults to the first mapped port
    port: int | None = Field(default=None, ge=1, le=MAX_PORT)
    command: list[str] | None = None
    interval_seconds: int = Field(default=30, ge=5, le=3600)
    timeout_seconds: int = Field(default=10, ge=1, le=60)
    retries: int = Field(default=3, ge=1, le=10)


class HealthCheckOverrides(BaseModel):
    enabled: bool | None = None
    type: HealthCheckType | None = None
    path: str | None = None
    port: int | None = Field(default=None, ge=1, le=MAX_PORT)
    command: list[str] | None = None
    interval_seconds: int | None = Field(default=None, ge=5, le=3600)
    timeout_seconds: int | None = Field(default=None, ge=1, le=60)
    retries: int | None = Field(default=None, ge=1, le=10)


class ScalingConfig(BaseModel):
    min_replicas: int = Field(default=1, ge=1)
    max_replicas: int = Field(default=10, ge=1, le=100)
    target_replicas: int = Field(default=1, ge=1)
    current_replicas: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "ScalingConfig":
        if self.min_replicas > self.max_replicas:
            raise ValueError("min_replicas cannot exceed max_replicas")
        return self


class ScalingOverrides(BaseModel):
    min_replicas: int | None = Field(default=None, ge=1)
    max_replicas: int | None = Field(default=None, ge=1, le=100)


class DeploymentConfig(BaseModel):
    """Fully resolved configuration for running one service instance."""

    # "3000" or "3000/tcp" -> host port (None keeps the port unpublished)
    ports: dict[str, int | None] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    # host path (relative paths resolve against the service folder) -> container path
    volumes: dict[str, str] = Field(default_factory=dict)
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    build_file: str = ""
    metrics_retention: int = Field(default=50, ge=10, le=1000)

    @field_validator("ports")
    @classmethod
    def check_ports(cls, v: dict[str, int | None]) -> dict[str, int | None]:
        return _validate_port_map(v)

    def host_ports(self) -> list[int]:
        return sorted(p for p in self.ports.values() if p is not None)

    def primary_container_port(self) -> int | None:
        if not self.ports:
            return None
        return min(container_port_number(key) for key in self.ports)

    def host_port_for(self, container_port: int) -> int | None:
        for key, host_port in self.ports.items():
            if container_port_number(key) == container_port:
                return host_port
        return None


class DeploymentOverrides(BaseModel):
    """User-supplied overrides. Map fields merge key by key."""

    ports: dict[str, int | None] | None = None
    env: dict[str, str] | None = None
    volumes: dict[str, str] | None = None
    resources: ResourceOverrides | None = None
    health_check: HealthCheckOverrides | None = None
    scaling: ScalingOverrides | None = None
    build_file: str | None = None
    metrics_retention: int | None = Field(default=None, ge=10, le=1000)

    @field_validator("ports")
    @classmethod
    def check_ports(cls, v: dict[str, int | None] | None) -> dict[str, int | None] | None:
        return _validate_port_map(v)


class ServiceCreate(BaseModel):
    """Create a service either explicitly or from a stored analysis recommendation."""

    workspace_id: str | None = None
    name: str | None = Field(default=None, min_length=1, max_length=100, pattern=NAME_PATTERN)
    folder_path: str | None = None
    service_type: ServiceType | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    analysis_id: str | None = None
    recommendation_index: int = Field(default=0, ge=0)

    overrides: DeploymentOverrides = Field(default_factory=DeploymentOverrides)

    @model_validator(mode="after")
    def check_source(self) -> "ServiceCreate":
        if self.analysis_id is None:
            missing = [
                f
                for f in ("workspace_id", "folder_path", "service_type")
                if getattr(self, f) is None
            ]
            if missing:
                raise ValueError(
                    f"Either analysis_id or {', '.join(missing)} must be provided"
                )
        return self


class ServiceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100, pattern=NAME_PATTERN)
    overrides: DeploymentOverrides | None = None


class ScaleRequest(BaseModel):
    replica_count: int = Field(ge=1)


class ServiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    team_id: str
    workspace_id: str
    name: str
    folder_path: str
    service_type: str
    confidence: float
    status: str
    container_id: str | None = None
    image_id: str | None = None
    deployment_config: DeploymentConfig
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deployed_at: datetime | None = None
    stopped_at: datetime | None = None
    last_health_check_at: datetime | None = None
    uptime_seconds: float | None = None

    @field_validator(
        "created_at", "updated_at", "deployed_at", "stopped_at", "last_health_check_at"
    )
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @model_validator(mode="after")
    def compute_uptime(self) -> "ServiceRead":
        if self.status == "running" and self.deployed_at is not None:
            self.uptime_seconds = round((datetime.now(UTC) - self.deployed_at).total_seconds(), 3)
        else:
            self.uptime_seconds = None
        return self


class DeploymentEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    instance_id: str
    event_type: str
    severity: Literal["info", "warning", "error"]
    success: bool
    duration_ms: int | None = None
    detail: str | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("event_metadata", "metadata")
    )
    occurred_at: datetime

    @field_validator("occurred_at")
    @classmethod
    def as_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
