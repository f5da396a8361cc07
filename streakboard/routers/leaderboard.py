from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from streakboard.clock import Clock
from streakboard.config import settings
from streakboard.database import get_db
from streakboard.dependencies import get_clock, get_current_user, get_reconciler
from streakboard.models.user import User
from streakboard.realtime.reconciler import Reconciler
from streakboard.schemas.leaderboard import LeaderboardResponse
from streakboard.schemas.realtime import SnapshotView
from streakboard.services import leaderboard_service

router = APIRouter(tags=["leaderboard"])


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return await leaderboard_service.get_leaderboard(db, clock(), settings.tz)


@router.get("/snapshot", response_model=SnapshotView)
async def get_snapshot(
    user: User = Depends(get_current_user),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """The live view this process holds: who is active, standings, champion."""
    return reconciler.view(user.id)
