"""Database models package."""

from .base import Base
from .deployment_event import DeploymentEvent
from .service_instance import ServiceInstance
from .topology_analysis import TopologyAnalysis

__all__ = [
    "Base",
    "DeploymentEvent",
    "ServiceInstance",
    "TopologyAnalysis",
]
