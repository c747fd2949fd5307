"""Pydantic schemas package."""

from .monitoring import (
    METRIC_UNITS,
    HealthCheckResult,
    HealthReport,
    HealthStatus,
    LogsRead,
    MetricSample,
    MetricsReport,
    MetricType,
    ResourceUtilization,
    StatusRead,
)
from .service import (
    DeploymentConfig,
    DeploymentEventRead,
    DeploymentOverrides,
    HealthCheckConfig,
    ResourceLimits,
    ScaleRequest,
    ScalingConfig,
    ServiceCreate,
    ServiceRead,
    ServiceType,
    ServiceUpdate,
)
from .topology import (
    AnalysisResult,
    AnalyzeRequest,
    PatternSummary,
    ServiceEdge,
    ServiceGraph,
    ServiceNode,
    ServiceRecommendation,
    TopologyAnalysisRead,
)

__all__ = [
    "METRIC_UNITS",
    "AnalysisResult",
    "AnalyzeRequest",
    "DeploymentConfig",
    "DeploymentEventRead",
    "DeploymentOverrides",
    "HealthCheckConfig",
    "HealthCheckResult",
    "HealthReport",
    "HealthStatus",
    "LogsRead",
    "MetricSample",
    "MetricType",
    "MetricsReport",
    "PatternSummary",
    "ResourceLimits",
    "ResourceUtilization",
    "ScaleRequest",
    "ScalingConfig",
    "ServiceCreate",
    "ServiceEdge",
    "ServiceGraph",
    "ServiceNode",
    "ServiceRead",
    "ServiceRecommendation",
    "ServiceType",
    "ServiceUpdate",
    "StatusRead",
    "TopologyAnalysisRead",
]
