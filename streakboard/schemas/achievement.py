import uuid

from pydantic import BaseModel

from streakboard.schemas.common import UTCDatetime


class AchievementResponse(BaseModel):
    id: str
    name: str
    emoji: str
    description: str

    model_config = {"from_attributes": True, "frozen": True}


class AchievementStateResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    achievement_id: str
    unlocked_at: UTCDatetime

    model_config = {"from_attributes": True, "frozen": True}


class UserAchievementResponse(AchievementResponse):
    unlocked: bool
    unlocked_at: UTCDatetime | None = None
