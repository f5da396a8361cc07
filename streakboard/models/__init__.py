from streakboard.models.achievement import Achievement, AchievementState
from streakboard.models.base import Base
from streakboard.models.session import Session
from streakboard.models.user import User

__all__ = [
    "Achievement",
    "AchievementState",
    "Base",
    "Session",
    "User",
]
