from typing import Any, Literal

from pydantic import Field

from .base import BaseEvent


class ServiceStatusChanged(BaseEvent):
    """A service instance completed a lifecycle transition."""

    event: Literal["service_status_changed"] = "service_status_changed"
    status: str
    previous_status: str | None = None


class ServiceMetricsUpdated(BaseEvent):
    """New metric samples were collected for a service instance."""

    event: Literal["service_metrics_updated"] = "service_metrics_updated"
    metrics: dict[str, float] = Field(default_factory=dict)


class DeploymentEventOccurred(BaseEvent):
    """A deployment event was appended to an instance's log."""

    event: Literal["deployment_event"] = "deployment_event"
    event_type: str
    duration_ms: int | None = None
    success: bool
    severity: Literal["info", "warning", "error"] = "info"
    detail: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ServiceHealthDegraded(BaseEvent):
    """Consecutive health-check failures reached the instance threshold."""

    event: Literal["service_health_degraded"] = "service_health_degraded"
    consecutive_failures: int


class ServiceHealthRecovered(BaseEvent):
    """A healthy check followed a degraded period."""

    event: Literal["service_health_recovered"] = "service_health_recovered"
    consecutive_failures: int = 0


ServiceEvent = (
    ServiceStatusChanged
    | ServiceMetricsUpdated
    | DeploymentEventOccurred
    | ServiceHealthDegraded
    | ServiceHealthRecovered
)
