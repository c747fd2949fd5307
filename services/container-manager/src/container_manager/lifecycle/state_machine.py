"""Service instance status enumeration and its transition table."""

from enum import Enum

from ..errors import InvalidTransitionError


class ServiceStatus(str, Enum):
    DETECTING = "detecting"
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    RUNNING = "running"
    RESTARTING = "restarting"
    SCALING = "scaling"
    STOPPED = "stopped"
    ERROR = "error"
    DELETED = "deleted"


S = ServiceStatus

TRANSITIONS: dict[ServiceStatus, frozenset[ServiceStatus]] = {
    S.DETECTING: frozenset({S.PENDING}),
    S.PENDING: frozenset({S.BUILDING}),
    S.BUILDING: frozenset({S.DEPLOYING, S.ERROR}),
    S.DEPLOYING: frozenset({S.RUNNING, S.ERROR}),
    S.RUNNING: frozenset({S.RESTARTING, S.SCALING, S.ERROR, S.STOPPED}),
    S.RESTARTING: frozenset({S.RUNNING, S.ERROR}),
    S.SCALING: frozenset({S.RUNNING}),
    S.ERROR: frozenset({S.STOPPED}),
    S.STOPPED: frozenset({S.PENDING}),
    S.DELETED: frozenset(),
}

# States an in-flight operation passes through; never valid after a restart
TRANSIENT_STATES = frozenset({S.BUILDING, S.DEPLOYING, S.RESTARTING, S.SCALING})

# States from which start/deploy may be requested
STARTABLE_STATES = frozenset({S.PENDING, S.STOPPED, S.ERROR})


def can_transition(current: ServiceStatus | str, target: ServiceStatus | str) -> bool:
    """Whether `current -> target` is allowed.

    Stop and delete are accepted from every non-deleted state: stopping must
    never be blocked, and delete is always available to operators.
    """
    current, target = ServiceStatus(current), ServiceStatus(target)
    if current == S.DELETED:
        return False
    if target in (S.STOPPED, S.DELETED):
        return True
    return target in TRANSITIONS[current]


def validate_transition(current: ServiceStatus | str, target: ServiceStatus | str) -> ServiceStatus:
    if not can_transition(current, target):
        raise InvalidTransitionError(ServiceStatus(current).value, ServiceStatus(target).value)
    return ServiceStatus(target)
