"""Health checks and resource metrics for running instances."""

from .health import HealthChecker
from .monitor import ServiceMonitor
from .utilization import compute_utilization, samples_from

__all__ = ["HealthChecker", "ServiceMonitor", "compute_utilization", "samples_from"]
