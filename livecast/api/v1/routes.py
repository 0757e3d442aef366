from fastapi import APIRouter

from livecast.api.v1.endpoints.auth import router as auth_router
from livecast.api.v1.endpoints.live import router as live_router
from livecast.api.v1.endpoints.recordings import router as recordings_router
from livecast.api.v1.endpoints.signaling import router as signaling_router

routers = APIRouter()
routers.include_router(auth_router, prefix="/auth", tags=["Auth"])
routers.include_router(live_router)
routers.include_router(signaling_router)
routers.include_router(recordings_router)
