import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from streakboard.clock import Clock
from streakboard.config import settings
from streakboard.database import get_db
from streakboard.dependencies import get_clock, get_current_user, get_lifecycle
from streakboard.models.user import User
from streakboard.schemas.session import (
    CurrentSessionResponse,
    SessionResponse,
    StopResponse,
    WeeklyTotalAudit,
)
from streakboard.services import leaderboard_service, store_service
from streakboard.services.lifecycle_service import SessionLifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=list[SessionResponse])
async def list_sessions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await store_service.list_sessions(db, user.id, limit=limit, offset=offset)


@router.get("/current", response_model=CurrentSessionResponse)
async def current_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    session = await store_service.get_open_session(db, user.id)
    if session is None:
        return CurrentSessionResponse(session=None)
    elapsed = leaderboard_service.elapsed_seconds(session, clock())
    return CurrentSessionResponse(
        session=SessionResponse.model_validate(session),
        elapsed_seconds=elapsed,
        elapsed_display=leaderboard_service.format_duration(elapsed),
    )


@router.get("/audit", response_model=WeeklyTotalAudit)
async def audit_weekly_total(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Compare the stored weekly total with one recomputed from this week's sessions."""
    stored, recomputed = await leaderboard_service.audit_weekly_total(
        db, user.id, clock(), settings.tz
    )
    if stored != recomputed:
        logger.warning(
            "Weekly total drift: user=%s stored=%ss recomputed=%ss", user.id, stored, recomputed
        )
    return WeeklyTotalAudit(
        weekly_total=stored, recomputed=recomputed, consistent=stored == recomputed
    )


@router.post("/start", response_model=SessionResponse, status_code=201)
async def start_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.start(db, user.id)


@router.post("/stop", response_model=StopResponse)
async def stop_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.stop(db, user.id)
