from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class LiveStreamOut(BaseModel):
    id: int
    created_by: str
    stream_url: str
    is_active: bool
    title: str
    description: Optional[str] = None
    created_at: datetime
    ended_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RecordedStreamOut(BaseModel):
    id: int
    created_by: str
    creator_name: str = "Unknown"
    title: str
    description: Optional[str] = None
    media_url: str
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StartStreamRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


class StartStreamResponse(BaseModel):
    session_token: Optional[str] = None
    state: str
    tracked: bool
    record: Optional[LiveStreamOut] = None
    warnings: List[str] = []


class StopStreamResponse(BaseModel):
    state: str
    closed_records: int
    warnings: List[str] = []


class ActiveSessionResponse(BaseModel):
    is_live: bool
    session: Optional[LiveStreamOut] = None
