import os
from typing import Dict, List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from pydantic import computed_field

load_dotenv()


class Configs(BaseSettings):
    # base
    ENV: str = os.getenv("ENV", "dev")
    API: str = "/api"
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "livecast-api"

    PROJECT_ROOT: str = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

    # auth
    SECRET_KEY: str = os.getenv("SECRET_KEY", "livecast-dev-secret")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 1 day
    BROADCASTER_ROLES: List[str] = ["instructor", "admin"]

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    # database
    DB: str = os.getenv("DB", "postgresql")
    DB_USER: str = os.getenv("DB_USER", "")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "")
    DB_HOST: str = os.getenv("DB_HOST", "")
    DB_PORT: str = os.getenv("DB_PORT", "5432")
    DB_NAME: str = os.getenv("DB_NAME", "livecast")
    DB_ENGINE_MAPPER: Dict[str, str] = {
        "postgresql": "postgresql+asyncpg",
        "sqlite": "sqlite+aiosqlite",
    }

    DATABASE_URI_FORMAT: str = "{db_engine}://{user}:{password}@{host}:{port}/{database}"

    # Support both DATABASE_URL (from env) and DATABASE_URI (constructed)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # bounded wait for profile/session lookups before degrading
    DB_QUERY_TIMEOUT_SECONDS: float = 5.0

    # webrtc
    ICE_SERVERS: List[str] = [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ]

    # capture device (aiortc MediaPlayer arguments)
    CAPTURE_VIDEO_DEVICE: str = os.getenv("CAPTURE_VIDEO_DEVICE", "/dev/video0")
    CAPTURE_VIDEO_FORMAT: str = os.getenv("CAPTURE_VIDEO_FORMAT", "v4l2")
    CAPTURE_AUDIO_DEVICE: str = os.getenv("CAPTURE_AUDIO_DEVICE", "default")
    CAPTURE_AUDIO_FORMAT: str = os.getenv("CAPTURE_AUDIO_FORMAT", "pulse")
    CAPTURE_WIDTH: int = 1280
    CAPTURE_HEIGHT: int = 720
    CAPTURE_FRAMERATE: int = 30

    # live session sync
    ACTIVE_SESSION_POLL_SECONDS: float = 2.0
    JOIN_WAIT_SECONDS: float = 10.0
    SIGNAL_BACKLOG_SIZE: int = 500
    SSE_HEARTBEAT_SECONDS: float = 15.0

    # recording
    RECORDER_TIMESLICE_SECONDS: float = 1.0
    RECORDING_FORMAT: str = "webm"
    RECORDING_CONTENT_TYPE: str = "video/webm"

    # azure blob storage
    AZURE_STORAGE_CONNECTION_STRING: str = os.getenv("AZURE_STORAGE_CONNECTION_STRING", "")
    AZURE_BLOB_CONTAINER: str = os.getenv("AZURE_BLOB_CONTAINER", "recordings")

    @computed_field
    @property
    def DB_ENGINE(self) -> str:
        return self.DB_ENGINE_MAPPER.get(self.DB, "postgresql+asyncpg")

    @computed_field
    @property
    def DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self.DATABASE_URI_FORMAT.format(
            db_engine=self.DB_ENGINE,
            user=self.DB_USER,
            password=self.DB_PASSWORD,
            host=self.DB_HOST,
            port=self.DB_PORT,
            database=self.DB_NAME,
        )

    class Config:
        case_sensitive = True


configs = Configs()
