"""Pydantic schemas for health checks, metric samples and status reads."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from .service import HealthCheckType


def utcnow() -> datetime:
    return datetime.now(UTC)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"
    STARTING = "starting"


class MetricType(str, Enum):
    CPU_PERCENT = "cpu_percent"
    MEMORY_PERCENT = "memory_percent"
    MEMORY_USAGE_BYTES = "memory_usage_bytes"
    NETWORK_RX_BYTES = "network_rx_bytes"
    NETWORK_TX_BYTES = "network_tx_bytes"
    DISK_READ_BYTES = "disk_read_bytes"
    DISK_WRITE_BYTES = "disk_write_bytes"
    RESPONSE_TIME_MS = "response_time_ms"


METRIC_UNITS: dict[MetricType, str] = {
    MetricType.CPU_PERCENT: "percent",
    MetricType.MEMORY_PERCENT: "percent",
    MetricType.MEMORY_USAGE_BYTES: "bytes",
    MetricType.NETWORK_RX_BYTES: "bytes",
    MetricType.NETWORK_TX_BYTES: "bytes",
    MetricType.DISK_READ_BYTES: "bytes",
    MetricType.DISK_WRITE_BYTES: "bytes",
    MetricType.RESPONSE_TIME_MS: "ms",
}


class HealthCheckResult(BaseModel):
    check_type: HealthCheckType
    endpoint: str
    status: HealthStatus
    response_time_ms: float | None = None
    status_code: int | None = None
    error: str | None = None
    checked_at: datetime = Field(default_factory=utcnow)


class MetricSample(BaseModel):
    metric_type: MetricType
    value: float
    unit: str
    collected_at: datetime = Field(default_factory=utcnow)


class HealthReport(BaseModel):
    service_id: str
    status: HealthStatus
    degraded: bool = False
    consecutive_failures: int = 0
    last_check: HealthCheckResult | None = None
    history: list[HealthCheckResult] = Field(default_factory=list)


class ResourceUtilization(BaseModel):
    """Computed on read from the latest sample of each metric type."""

    cpu_percent: float | None = None
    memory_percent: float | None = None
    memory_usage_bytes: float | None = None
    network_rx_bytes: float | None = None
    network_tx_bytes: float | None = None
    disk_read_bytes: float | None = None
    disk_write_bytes: float | None = None
    response_time_ms: float | None = None
    sampled_at: datetime | None = None


class MetricsReport(BaseModel):
    service_id: str
    utilization: ResourceUtilization
    samples: dict[str, list[MetricSample]] = Field(default_factory=dict)


class StatusRead(BaseModel):
    service_id: str
    status: str
    health: HealthStatus
    degraded: bool = False
    current_replicas: int
    target_replicas: int
    uptime_seconds: float | None = None
    operation_in_progress: str | None = None


class LogsRead(BaseModel):
    service_id: str
    lines: int
    logs: str
