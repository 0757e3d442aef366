from datetime import datetime, timedelta, timezone

from jose import jwt

from livecast.core.config import configs


def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or configs.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {"sub": subject, "exp": expire, "type": "access"}
    return jwt.encode(payload, configs.SECRET_KEY, algorithm=configs.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and verify a bearer token. Raises jose.JWTError on failure."""
    return jwt.decode(token, configs.SECRET_KEY, algorithms=[configs.JWT_ALGORITHM])
