from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from app.services import auth as auth_service


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as asserted by a verified access token."""

    user_id: int
    is_admin: bool = False


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    try:
        claims = auth_service.verify_access_token(token)
        user_id = int(claims["sub"])
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials")
    return Actor(user_id=user_id, is_admin=bool(claims.get("is_admin", False)))


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    return actor
