from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import asyncio
import logging

from livecast.core.config import configs
from livecast.core.db import get_db
from livecast.core.exceptions import AuthError
from livecast.repository.auth_repo import get_user_by_id
from livecast.utils.jwt import decode_token
from jose import JWTError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def user_to_dict(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "user_type": user.user_type,
    }


def display_name(user: Optional[dict]) -> Optional[str]:
    """Full name, else the local part of the email."""
    if not user:
        return None
    if user.get("full_name"):
        return user["full_name"]
    email = user.get("email") or ""
    return email.split("@")[0] or None


def can_broadcast(user: Optional[dict]) -> bool:
    return bool(user) and user.get("user_type") in configs.BROADCASTER_ROLES


async def resolve_user(db: AsyncSession, token: str, timeout: Optional[float] = None) -> dict:
    """
    Bearer token -> user dict. Raises AuthError when the token is invalid,
    names an unknown user, or the profile lookup exceeds the DB timeout.
    """
    try:
        payload = decode_token(token)
    except JWTError as e:
        raise AuthError(f"Invalid token: {str(e)}") from e

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Token missing 'sub' field")
        raise AuthError("Invalid token: missing user id")

    try:
        user = await asyncio.wait_for(
            get_user_by_id(db, user_id),
            timeout=timeout or configs.DB_QUERY_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as e:
        logger.warning(f"Profile lookup timed out for id: {user_id}")
        raise AuthError("Profile lookup timed out") from e

    if not user:
        logger.warning(f"User not found for id: {user_id}")
        raise AuthError("User not found")

    return user_to_dict(user)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Dependency to get current user from JWT token
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await resolve_user(db, credentials.credentials)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    except Exception as e:
        logger.error(f"Unexpected error in get_current_user: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_broadcaster(current_user: dict = Depends(get_current_user)) -> dict:
    if not can_broadcast(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only instructors can broadcast",
        )
    return current_user
