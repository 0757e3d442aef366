"""
WebSocket signaling relay

WS /api/v1/live/{session_token}/signal?token=<jwt>&role=viewer|broadcaster

Remote participants exchange the same offer/answer/ice-candidate/join/leave
messages as in-process channels. `from` and `sender` are always taken from
the authenticated connection, never from the client payload. Only the
instructor who owns an active session may connect to it as broadcaster.
On connect the backlog messages the newcomer would have received live are
replayed; clients drop ids they have already seen.
"""

import asyncio
import logging

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from livecast.core.config import configs
from livecast.core.container import Container
from livecast.core.dependencies import can_broadcast, resolve_user
from livecast.core.exceptions import AuthError
from livecast.repository.live_stream_repo import get_by_stream_url
from livecast.schemas.signal_schema import SignalMessage
from livecast.services.signaling import BROADCASTER, VIEWER, SignalingHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/live", tags=["Signaling"])


class RemoteParticipant:
    """A signaling participant on the other end of a WebSocket."""

    def __init__(self, websocket: WebSocket, participant_id: str, role: str):
        self.websocket = websocket
        self.participant_id = participant_id
        self.role = role

    async def deliver(self, message: SignalMessage) -> None:
        await self.websocket.send_json(message.to_wire())

    def accept(self, data: dict) -> SignalMessage:
        """Client payload -> stamped message with the connection's identity."""
        return SignalMessage.model_validate({
            **data,
            "from": self.role,
            "sender": self.participant_id,
        }).stamped()


async def relay(hub: SignalingHub, session_token: str, message: SignalMessage) -> None:
    try:
        await hub.publish(session_token, message)
    except LookupError:
        logger.debug(f"[signal:{session_token}] nobody to deliver {message.type} to")
    finally:
        hub.record(session_token, message)


async def owns_session(db, session_token: str, user: dict) -> bool:
    """Only the instructor who started an active session may signal as its broadcaster."""
    if not can_broadcast(user):
        return False
    record = await asyncio.wait_for(
        get_by_stream_url(db, session_token),
        timeout=configs.DB_QUERY_TIMEOUT_SECONDS,
    )
    return record is not None and record.is_active and record.created_by == user["id"]


@router.websocket("/{session_token}/signal")
@inject
async def signal_socket(
    websocket: WebSocket,
    session_token: str,
    token: str = Query(...),
    role: str = Query(VIEWER),
    hub: SignalingHub = Depends(Provide[Container.hub]),
    session_factory=Depends(Provide[Container.session_factory]),
):
    try:
        async with session_factory() as db:
            user = await resolve_user(db, token)
            allowed = role == VIEWER or (role == BROADCASTER and await owns_session(db, session_token, user))
    except AuthError as e:
        logger.warning(f"[signal:{session_token}] rejected connection: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    except asyncio.TimeoutError:
        logger.warning(f"[signal:{session_token}] session lookup timed out, rejecting {role}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    if not allowed:
        logger.warning(f"[signal:{session_token}] {user['id']} may not join as {role}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    participant = RemoteParticipant(websocket, user["id"], role)
    hub.attach(session_token, participant)

    try:
        for message in hub.backlog_for(session_token, participant.participant_id):
            await participant.deliver(message)

        while True:
            try:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    raise ValueError("signaling message must be a JSON object")
                message = participant.accept(data)
            except (ValidationError, ValueError) as e:
                await websocket.send_json({"type": "error", "detail": str(e)})
                continue
            await relay(hub, session_token, message)

    except WebSocketDisconnect:
        logger.info(f"[signal:{session_token}] {participant.participant_id} disconnected")
    finally:
        hub.detach(session_token, participant.participant_id)
        if role == VIEWER and hub.has_room(session_token):
            # a viewer that vanished without saying goodbye still leaves
            await relay(hub, session_token, participant.accept({"type": "leave"}))
