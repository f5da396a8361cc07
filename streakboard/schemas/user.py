import uuid

from pydantic import BaseModel, Field


class UserResponse(BaseModel):
    id: uuid.UUID
    display_name: str
    avatar: str
    weekly_total: int = Field(ge=0)
    version: int

    model_config = {"from_attributes": True, "frozen": True}
