"""Realtime events channel: one WebSocket per observer, scoped to a team."""

import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
import structlog

from ..auth import Actor, authorize
from ..dependencies import get_actor, get_broadcaster
from ..errors import PermissionDeniedError
from ..events import EventBroadcaster, Subscription

logger = structlog.get_logger()

router = APIRouter(tags=["events"])


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump(mode="json"))


async def _drain(websocket: WebSocket) -> None:
    """Consume client frames until the client goes away."""
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@router.websocket("/teams/{team_id}/events")
async def team_events(
    websocket: WebSocket,
    team_id: str,
    actor: Actor = Depends(get_actor),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
):
    """Push every status, deployment, health and metrics event of the team."""
    try:
        authorize(actor, team_id, "read")
    except PermissionDeniedError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    # Subscribe before accepting so nothing published after the handshake is missed
    subscription = broadcaster.subscribe(team_id)
    await websocket.accept()
    logger.info("events_channel_opened", team_id=team_id, member_id=actor.member_id)

    sender = asyncio.create_task(_forward(websocket, subscription))
    receiver = asyncio.create_task(_drain(websocket))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sender.cancel()
        receiver.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        broadcaster.unsubscribe(subscription)

    # The subscription ended while the client is still connected
    if sender in done and receiver not in done and sender.exception() is None:
        if subscription.overflowed:
            logger.warning("events_channel_overflowed", team_id=team_id)
            await websocket.close(
                code=status.WS_1013_TRY_AGAIN_LATER, reason="Subscriber fell behind"
            )
        else:
            await websocket.close(code=status.WS_1001_GOING_AWAY)
    logger.info("events_channel_closed", team_id=team_id)
