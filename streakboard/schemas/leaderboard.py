import uuid

from pydantic import BaseModel


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: uuid.UUID
    display_name: str
    avatar: str
    weekly_total: int

    model_config = {"frozen": True}


class LeaderboardResponse(BaseModel):
    entries: list[LeaderboardEntry]
    champion: LeaderboardEntry | None
    days_until_reset: int
