"""Actor resolution and the authorization check run before every mutation."""

from dataclasses import dataclass, field
from typing import Literal

import structlog

from .errors import PermissionDeniedError

logger = structlog.get_logger()

Action = Literal["read", "create", "update", "delete", "operate", "analyze"]


@dataclass(frozen=True)
class Actor:
    """Who is performing a request.

    A system actor represents internal callers (background operations,
    collaborators without member context) and passes every check.
    """

    member_id: str
    team_ids: frozenset[str] = field(default_factory=frozenset)
    is_system: bool = False

    @classmethod
    def from_headers(cls, member_id: str | None, teams: str | None) -> "Actor":
        if not member_id:
            return SYSTEM_ACTOR
        team_ids = frozenset(t.strip() for t in (teams or "").split(",") if t.strip())
        return cls(member_id=member_id, team_ids=team_ids)


SYSTEM_ACTOR = Actor(member_id="system", is_system=True)


def authorize(actor: Actor, team_id: str, action: Action) -> None:
    """Raise PermissionDeniedError unless the actor may act on the team's resources."""
    if actor.is_system or team_id in actor.team_ids:
        return
    logger.warning(
        "authorization_denied", member_id=actor.member_id, team_id=team_id, action=action
    )
    raise PermissionDeniedError(
        f"Member '{actor.member_id}' may not {action} resources of team '{team_id}'",
        team_id=team_id,
        action=action,
    )
