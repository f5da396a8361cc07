from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from streakboard.database import get_db
from streakboard.dependencies import get_current_user
from streakboard.models.user import User
from streakboard.schemas.achievement import AchievementResponse, UserAchievementResponse
from streakboard.services import store_service

router = APIRouter(prefix="/achievements", tags=["achievements"])


@router.get("", response_model=list[AchievementResponse])
async def list_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await store_service.list_achievements(db)


@router.get("/me", response_model=list[UserAchievementResponse])
async def my_achievements(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Full catalog with the caller's unlock state; absence of a row means locked."""
    catalog = await store_service.list_achievements(db)
    states = {s.achievement_id: s for s in await store_service.list_achievement_states(db, user.id)}
    return [
        UserAchievementResponse(
            id=a.id,
            name=a.name,
            emoji=a.emoji,
            description=a.description,
            unlocked=a.id in states,
            unlocked_at=states[a.id].unlocked_at if a.id in states else None,
        )
        for a in catalog
    ]
