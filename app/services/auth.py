from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.config import settings


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(user_id: int, is_admin: bool = False) -> str:
    # issuing tokens belongs to the auth service; kept here for tooling and tests
    expire = _now() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"sub": str(user_id), "type": "access", "is_admin": bool(is_admin), "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> dict:
    """Decode a bearer token and return its claims. Raises JWTError when invalid."""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    if payload.get("sub") is None:
        raise JWTError("Token has no subject")
    return payload
