from typing import List
import logging

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, HTTPException

from livecast.core.container import Container
from livecast.core.dependencies import get_current_user
from livecast.schemas.live_schema import RecordedStreamOut
from livecast.services.recording_service import RecordingPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recordings", tags=["Recordings"])


@router.get("", response_model=List[RecordedStreamOut])
@inject
async def list_recordings(
    current_user: dict = Depends(get_current_user),
    recording: RecordingPipeline = Depends(Provide[Container.recording]),
):
    """Recorded streams, newest first."""
    try:
        return await recording.list_recordings()
    except Exception as e:
        logger.error(f"Failed to list recordings: {e}")
        raise HTTPException(status_code=500, detail="Failed to list recordings")
