import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

from streakboard.schemas.achievement import AchievementStateResponse
from streakboard.schemas.common import UTCDatetime
from streakboard.schemas.leaderboard import LeaderboardEntry
from streakboard.schemas.session import SessionResponse
from streakboard.schemas.user import UserResponse

EntityType = Literal["sessions", "users", "user_achievements"]
Operation = Literal["insert", "update", "delete"]

ENTITY_MODELS: dict[str, type[BaseModel]] = {
    "sessions": SessionResponse,
    "users": UserResponse,
    "user_achievements": AchievementStateResponse,
}


class ChangeEvent(BaseModel):
    entity_type: EntityType
    operation: Operation
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @classmethod
    def of(
        cls,
        entity_type: EntityType,
        operation: Operation,
        new: BaseModel | None = None,
        old: BaseModel | None = None,
    ) -> "ChangeEvent":
        return cls(
            entity_type=entity_type,
            operation=operation,
            new=new.model_dump(mode="json") if new is not None else None,
            old=old.model_dump(mode="json") if old is not None else None,
        )

    def row(self) -> BaseModel:
        """The changed row, parsed into its schema (old value for deletes)."""
        value = self.old if self.operation == "delete" else self.new
        if value is None:
            raise ValueError(f"{self.operation} event for {self.entity_type} carries no row")
        return ENTITY_MODELS[self.entity_type].model_validate(value)


class ChangeBatch(BaseModel):
    """All row changes of one committed transaction, applied together."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    committed_at: UTCDatetime
    changes: list[ChangeEvent] = Field(min_length=1)


class Snapshot(BaseModel):
    users: list[UserResponse] = []
    sessions: list[SessionResponse] = []
    achievement_states: list[AchievementStateResponse] = []


class SnapshotView(BaseModel):
    users: list[UserResponse]
    active_user_ids: list[uuid.UUID]
    current_session: SessionResponse | None = None
    leaderboard: list[LeaderboardEntry]
    champion: LeaderboardEntry | None
    days_until_reset: int
    achievement_states: list[AchievementStateResponse] = []
