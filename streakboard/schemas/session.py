import uuid

from pydantic import BaseModel, Field

from streakboard.schemas.common import UTCDatetime


class SessionResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    start_time: UTCDatetime
    end_time: UTCDatetime | None
    duration: int | None = Field(default=None, ge=0)
    version: int

    model_config = {"from_attributes": True, "frozen": True}

    @property
    def is_open(self) -> bool:
        return self.end_time is None


class CurrentSessionResponse(BaseModel):
    session: SessionResponse | None
    elapsed_seconds: int = 0
    elapsed_display: str = "0:00"


class StopResponse(BaseModel):
    session: SessionResponse
    weekly_total: int
    unlocked: list[str]


class WeeklyTotalAudit(BaseModel):
    weekly_total: int
    recomputed: int
    consistent: bool
