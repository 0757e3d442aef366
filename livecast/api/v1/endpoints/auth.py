from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends
import logging

from livecast.core.container import Container
from livecast.core.dependencies import can_broadcast, get_current_user
from livecast.services.live_stream_service import StreamLifecycleCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/me")
async def me(current_user: dict = Depends(get_current_user)):
    return {**current_user, "can_broadcast": can_broadcast(current_user)}


@router.post("/logout")
@inject
async def logout(
    current_user: dict = Depends(get_current_user),
    coordinator: StreamLifecycleCoordinator = Depends(Provide[Container.coordinator]),
):
    """
    Tokens are stateless; logging out only tells the station so a live
    broadcast by this user is stopped.
    """
    logger.info(f"[LOGOUT] user={current_user['id']}")
    await coordinator.handle_session_change(current_user["id"], None)
    return {"success": True}
