"""
Live streaming API endpoints

POST /api/v1/live/start    - Broadcaster starts streaming from this station
POST /api/v1/live/stop     - Broadcaster stops streaming
GET  /api/v1/live/active   - Most recent active live session (viewer poll)
GET  /api/v1/live/status   - Station diagnostics (read-only)
GET  /api/v1/live/events   - SSE stream of active session changes

Session lifecycle is persisted in the live_streams table; media and
signaling state stay in-memory in the coordinator.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from livecast.core.config import configs
from livecast.core.container import Container
from livecast.core.dependencies import display_name, get_current_user, require_broadcaster
from livecast.core.exceptions import AcquisitionError, StationBusyError
from livecast.models.orm.live_stream import LiveStream
from livecast.schemas.live_schema import (
    ActiveSessionResponse,
    LiveStreamOut,
    StartStreamRequest,
    StartStreamResponse,
    StopStreamResponse,
)
from livecast.services.live_stream_service import StreamLifecycleCoordinator
from livecast.services.session_watcher import ActiveSessionWatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/live", tags=["Live Streaming"])


def session_event(record: Optional[LiveStream]) -> dict:
    session = LiveStreamOut.model_validate(record).model_dump(mode="json") if record else None
    return {
        "event_type": "active_session",
        "payload": {"is_live": session is not None, "session": session},
    }


def sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


# ── Endpoints ────────────────────────────────────────────────────────

@router.post("/start", response_model=StartStreamResponse)
@inject
async def start_stream(
    request: StartStreamRequest,
    current_user: dict = Depends(require_broadcaster),
    coordinator: StreamLifecycleCoordinator = Depends(Provide[Container.coordinator]),
):
    try:
        result = await coordinator.start(
            current_user["id"],
            title=request.title,
            description=request.description,
            creator_name=display_name(current_user),
        )
    except AcquisitionError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except StationBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except Exception as e:
        logger.error(f"Failed to start live stream for {current_user['id']}: {e}")
        raise HTTPException(status_code=500, detail="Failed to start live stream")

    return StartStreamResponse(
        session_token=result.session_token,
        state=result.state.value,
        tracked=result.tracked,
        record=LiveStreamOut.model_validate(result.record) if result.record else None,
        warnings=result.warnings,
    )


@router.post("/stop", response_model=StopStreamResponse)
@inject
async def stop_stream(
    current_user: dict = Depends(require_broadcaster),
    coordinator: StreamLifecycleCoordinator = Depends(Provide[Container.coordinator]),
):
    result = await coordinator.stop(current_user["id"])
    return StopStreamResponse(
        state=result.state.value,
        closed_records=result.closed_records,
        warnings=result.warnings,
    )


@router.get("/active", response_model=ActiveSessionResponse)
@inject
async def get_active_session(
    current_user: dict = Depends(get_current_user),
    coordinator: StreamLifecycleCoordinator = Depends(Provide[Container.coordinator]),
):
    record = await coordinator.poll_active_session()
    return ActiveSessionResponse(
        is_live=record is not None,
        session=LiveStreamOut.model_validate(record) if record else None,
    )


@router.get("/status")
@inject
async def get_station_status(
    current_user: dict = Depends(get_current_user),
    coordinator: StreamLifecycleCoordinator = Depends(Provide[Container.coordinator]),
    watcher: ActiveSessionWatcher = Depends(Provide[Container.watcher]),
):
    current = watcher.current
    return {
        **coordinator.status(),
        "watcher": {
            "running": watcher.running,
            "interval": watcher.interval,
            "active_session_id": current.id if current else None,
        },
    }


@router.get("/events")
@inject
async def stream_session_events(
    current_user: dict = Depends(get_current_user),
    watcher: ActiveSessionWatcher = Depends(Provide[Container.watcher]),
):
    """
    SSE endpoint for viewers to learn when a broadcast starts or ends.
    Sends:
    - active_session snapshot (once on connect, then on every change)
    - heartbeat (when nothing changed for SSE_HEARTBEAT_SECONDS)
    """
    async def event_generator():
        notify = asyncio.Event()
        unsubscribe = watcher.add_listener(lambda record: notify.set())

        try:
            yield sse(session_event(watcher.current))

            while True:
                try:
                    await asyncio.wait_for(notify.wait(), timeout=configs.SSE_HEARTBEAT_SECONDS)
                    notify.clear()
                    yield sse(session_event(watcher.current))
                except asyncio.TimeoutError:
                    yield sse({
                        "event_type": "heartbeat",
                        "payload": {"timestamp": datetime.now(timezone.utc).isoformat()},
                    })

        except asyncio.CancelledError:
            pass
        finally:
            unsubscribe()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
