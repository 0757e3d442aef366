# livecast/repository/recorded_stream_repo.py

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from livecast.models.orm.recorded_stream import RecordedStream
from livecast.models.orm.user import UserProfile


async def create_recorded_stream(
    db: AsyncSession,
    created_by: str,
    title: str,
    media_url: str,
    description: Optional[str] = None,
    thumbnail_url: Optional[str] = None,
    duration_seconds: Optional[float] = None,
) -> RecordedStream:
    recorded = RecordedStream(
        created_by=created_by,
        title=title,
        description=description,
        media_url=media_url,
        thumbnail_url=thumbnail_url,
        duration_seconds=duration_seconds,
    )

    db.add(recorded)
    await db.commit()
    await db.refresh(recorded)

    return recorded


async def list_recorded_streams(db: AsyncSession) -> list[RecordedStream]:
    result = await db.execute(
        select(RecordedStream).order_by(RecordedStream.created_at.desc(), RecordedStream.id.desc())
    )
    return list(result.scalars().all())


async def list_recorded_streams_with_creator(db: AsyncSession) -> list[tuple[RecordedStream, str | None]]:
    """Recordings newest first, each paired with the creator's full name (None if unknown)."""
    result = await db.execute(
        select(RecordedStream, UserProfile.full_name)
        .outerjoin(UserProfile, UserProfile.id == RecordedStream.created_by)
        .order_by(RecordedStream.created_at.desc(), RecordedStream.id.desc())
    )
    return [(row[0], row[1]) for row in result.all()]
