import uuid

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from streakboard.clock import Clock, utc_now
from streakboard.config import settings
from streakboard.database import get_db
from streakboard.models.user import User
from streakboard.realtime.reconciler import Reconciler
from streakboard.services import store_service
from streakboard.services.lifecycle_service import SessionLifecycle

bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_id(token: str) -> uuid.UUID:
    """Return the user id carried in an access token's ``sub`` claim."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token"
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token"
        )
    user = await store_service.get_user(db, decode_user_id(credentials.credentials))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


def get_lifecycle(request: Request) -> SessionLifecycle:
    return request.app.state.lifecycle


def get_reconciler(request: Request) -> Reconciler:
    reconciler = request.app.state.reconciler
    if not reconciler.ready.is_set():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Live snapshot is re-syncing, try again shortly",
        )
    return reconciler


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", utc_now)
