import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from streakboard.clock import ensure_utc
from streakboard.errors import PersistenceError
from streakboard.models.achievement import Achievement, AchievementState
from streakboard.models.session import Session
from streakboard.models.user import User
from streakboard.schemas.achievement import AchievementResponse, AchievementStateResponse
from streakboard.schemas.realtime import Snapshot
from streakboard.schemas.session import SessionResponse
from streakboard.schemas.user import UserResponse


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def list_users(db: AsyncSession) -> list[User]:
    result = await db.execute(select(User).order_by(User.id))
    return list(result.scalars().all())


async def get_open_session(db: AsyncSession, user_id: uuid.UUID) -> Session | None:
    result = await db.execute(
        select(Session)
        .where(Session.user_id == user_id, Session.end_time.is_(None))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_sessions(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int | None = None,
    offset: int = 0,
) -> list[Session]:
    """Sessions of a user, most recent first."""
    query = (
        select(Session)
        .where(Session.user_id == user_id)
        .order_by(Session.start_time.desc(), Session.id)
        .offset(offset)
    )
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_session(db: AsyncSession, user_id: uuid.UUID, start_time: datetime) -> Session:
    session = Session(user_id=user_id, start_time=ensure_utc(start_time))
    db.add(session)
    await db.flush()
    await db.refresh(session)
    return session


async def close_session(
    db: AsyncSession, session: Session, end_time: datetime, duration: int
) -> Session:
    session.end_time = ensure_utc(end_time)
    session.duration = duration
    await db.flush()
    return session


async def increment_weekly_total(db: AsyncSession, user_id: uuid.UUID, seconds: int) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one()
    user.weekly_total = user.weekly_total + seconds
    await db.flush()
    return user


async def list_achievements(db: AsyncSession) -> list[Achievement]:
    result = await db.execute(select(Achievement).order_by(Achievement.id))
    return list(result.scalars().all())


async def list_achievement_states(db: AsyncSession, user_id: uuid.UUID) -> list[AchievementState]:
    result = await db.execute(
        select(AchievementState)
        .where(AchievementState.user_id == user_id)
        .order_by(AchievementState.unlocked_at)
    )
    return list(result.scalars().all())


async def insert_achievement_state(
    db: AsyncSession,
    user_id: uuid.UUID,
    achievement_id: str,
    unlocked_at: datetime,
) -> AchievementState | None:
    """Insert an unlock row. Returns None when the pair is already unlocked."""
    existing = await db.execute(
        select(AchievementState).where(
            AchievementState.user_id == user_id,
            AchievementState.achievement_id == achievement_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        return None

    state = AchievementState(
        user_id=user_id,
        achievement_id=achievement_id,
        unlocked_at=ensure_utc(unlocked_at),
    )
    db.add(state)
    await db.flush()
    await db.refresh(state)
    return state


async def seed_achievements(db: AsyncSession, catalog: Iterable[AchievementResponse]) -> int:
    """Insert catalog entries that are not stored yet. Returns the number inserted."""
    result = await db.execute(select(Achievement.id))
    known = set(result.scalars().all())

    inserted = 0
    for entry in catalog:
        if entry.id in known:
            continue
        db.add(Achievement(**entry.model_dump()))
        inserted += 1

    if inserted:
        await db.flush()
    return inserted


# Isolation for the baseline read; all three SELECTs must see one snapshot
SNAPSHOT_ISOLATION_LEVELS = {"postgresql": "REPEATABLE READ"}


def snapshot_isolation_level(dialect_name: str) -> str:
    return SNAPSHOT_ISOLATION_LEVELS.get(dialect_name, "SERIALIZABLE")


async def load_snapshot(db: AsyncSession) -> Snapshot:
    """Full baseline of users, sessions and unlock states.

    Must be called on a fresh session: the isolation level is fixed when the
    transaction begins, so a stop committing mid-read can never show a closed
    session next to the old weekly total.
    """
    level = snapshot_isolation_level(db.get_bind().dialect.name)
    await db.connection(execution_options={"isolation_level": level})
    users = await db.execute(select(User))
    sessions = await db.execute(select(Session))
    states = await db.execute(select(AchievementState))
    return Snapshot(
        users=[UserResponse.model_validate(u) for u in users.scalars().all()],
        sessions=[SessionResponse.model_validate(s) for s in sessions.scalars().all()],
        achievement_states=[
            AchievementStateResponse.model_validate(s) for s in states.scalars().all()
        ],
    )


def snapshot_loader(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[], Awaitable[Snapshot]]:
    """Bind load_snapshot to a fresh session per fetch."""

    async def load() -> Snapshot:
        try:
            async with session_factory() as db:
                return await load_snapshot(db)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to fetch snapshot") from exc

    return load
