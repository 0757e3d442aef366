# livecast/repository/auth_repo.py

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from livecast.models.orm.user import UserProfile


async def get_user_by_id(db: AsyncSession, user_id: str | int) -> UserProfile | None:
    if user_id is None:
        return None

    result = await db.execute(
        select(UserProfile).where(UserProfile.id == str(user_id))
    )
    return result.scalar_one_or_none()
