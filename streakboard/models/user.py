from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from streakboard.models.base import Base, UUIDPrimaryKey


class User(UUIDPrimaryKey, Base):
    __tablename__ = "users"

    display_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    avatar: Mapped[str] = mapped_column(String(16), nullable=False, default="\U0001F4A9")
    weekly_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("weekly_total >= 0", name="weekly_total_non_negative"),
    )
