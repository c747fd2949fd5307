"""Instance lifecycle: state machine, operation locks and the manager."""

from .locks import InstanceLocks
from .manager import LifecycleManager
from .state_machine import ServiceStatus, can_transition, validate_transition

__all__ = [
    "InstanceLocks",
    "LifecycleManager",
    "ServiceStatus",
    "can_transition",
    "validate_transition",
]
