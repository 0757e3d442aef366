# livecast/repository/live_stream_repo.py

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from livecast.models.orm.live_stream import LiveStream


async def create_live_stream(
    db: AsyncSession,
    created_by: str,
    stream_url: str,
    title: str,
    description: Optional[str] = None,
) -> LiveStream:
    live_stream = LiveStream(
        created_by=created_by,
        stream_url=stream_url,
        is_active=True,
        title=title,
        description=description,
    )

    db.add(live_stream)
    await db.commit()
    await db.refresh(live_stream)

    return live_stream


async def get_latest_active(db: AsyncSession) -> LiveStream | None:
    """Most recent active stream across all broadcasters, if any."""
    result = await db.execute(
        select(LiveStream)
        .where(LiveStream.is_active.is_(True))
        .order_by(LiveStream.created_at.desc(), LiveStream.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_active_for_broadcaster(db: AsyncSession, created_by: str) -> list[LiveStream]:
    result = await db.execute(
        select(LiveStream)
        .where(LiveStream.is_active.is_(True), LiveStream.created_by == created_by)
        .order_by(LiveStream.created_at.desc())
    )
    return list(result.scalars().all())


async def close_active_for_broadcaster(
    db: AsyncSession,
    created_by: str,
    ended_at: datetime | None = None,
) -> list[int]:
    """Mark every active stream of a broadcaster as ended. Returns the closed ids."""
    ended_at = ended_at or datetime.now(timezone.utc)
    active = await list_active_for_broadcaster(db, created_by)
    if not active:
        return []

    ids = [s.id for s in active]
    await db.execute(
        update(LiveStream)
        .where(LiveStream.is_active.is_(True), LiveStream.created_by == created_by)
        .values(is_active=False, ended_at=ended_at)
    )
    await db.commit()
    return ids


async def get_by_stream_url(db: AsyncSession, stream_url: str) -> LiveStream | None:
    result = await db.execute(
        select(LiveStream).where(LiveStream.stream_url == stream_url)
    )
    return result.scalar_one_or_none()
