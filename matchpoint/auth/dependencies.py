"""Bearer-token dependencies: who is acting, and may they act as staff."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.auth.jwt import decode_token
from matchpoint.database import get_db
from matchpoint.models.user import User

# A missing Authorization header is answered with 403 by HTTPBearer itself
_bearer_scheme = HTTPBearer()


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def user_id_from_token(token: str) -> uuid.UUID:
    """Return the subject of a valid access token, or raise 401."""
    try:
        claims = decode_token(token)
    except JWTError:
        raise _unauthorized() from None
    if claims.get("type") != "access":
        raise _unauthorized("Invalid token type")
    try:
        return uuid.UUID(str(claims["sub"]))
    except (KeyError, ValueError):
        raise _unauthorized() from None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the acting player or staff member from the bearer token.

    Unknown and deactivated accounts are both rejected with 401.
    """
    user = await db.get(User, user_id_from_token(credentials.credentials))
    if user is None:
        raise _unauthorized()
    if not user.is_active:
        raise _unauthorized("User account is inactive")
    return user


async def require_staff(user: User = Depends(get_current_user)) -> User:
    if not user.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff access required")
    return user
