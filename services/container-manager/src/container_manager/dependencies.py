"""FastAPI dependencies: the acting member and the control-plane components."""

from fastapi import Header
from fastapi.requests import HTTPConnection

from .auth import Actor
from .detection import TopologyAnalyzer
from .events import EventBroadcaster
from .lifecycle import LifecycleManager
from .monitoring import ServiceMonitor
from .plane import ControlPlane
from .store import ServiceStore


async def get_actor(
    x_team_member: str | None = Header(None, alias="X-Team-Member"),
    x_actor_teams: str | None = Header(None, alias="X-Actor-Teams"),
) -> Actor:
    """Resolve the actor from request or WebSocket handshake headers.

    Requests without X-Team-Member come from internal callers and act as the
    system actor.
    """
    return Actor.from_headers(x_team_member, x_actor_teams)


def get_plane(conn: HTTPConnection) -> ControlPlane:
    return conn.app.state.plane


def get_manager(conn: HTTPConnection) -> LifecycleManager:
    return get_plane(conn).manager


def get_monitor(conn: HTTPConnection) -> ServiceMonitor:
    return get_plane(conn).monitor


def get_analyzer(conn: HTTPConnection) -> TopologyAnalyzer:
    return get_plane(conn).analyzer


def get_store(conn: HTTPConnection) -> ServiceStore:
    return get_plane(conn).store


def get_broadcaster(conn: HTTPConnection) -> EventBroadcaster:
    return get_plane(conn).broadcaster
