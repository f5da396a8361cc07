import uuid
from collections.abc import Iterable
from datetime import datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from streakboard.clock import ensure_utc
from streakboard.schemas.leaderboard import LeaderboardEntry, LeaderboardResponse
from streakboard.services import store_service


class RankableUser(Protocol):
    id: uuid.UUID
    display_name: str
    avatar: str
    weekly_total: int


class TimedSession(Protocol):
    user_id: uuid.UUID
    start_time: datetime
    end_time: datetime | None
    duration: int | None


def _ordering_key(user: RankableUser) -> tuple[int, str]:
    # Highest total first; equal totals fall back to the id so every replica agrees
    return (-user.weekly_total, str(user.id))


def rank_users(users: Iterable[RankableUser]) -> list[LeaderboardEntry]:
    ordered = sorted(users, key=_ordering_key)
    return [
        LeaderboardEntry(
            rank=i + 1,
            user_id=u.id,
            display_name=u.display_name,
            avatar=u.avatar,
            weekly_total=u.weekly_total,
        )
        for i, u in enumerate(ordered)
    ]


def champion(entries: list[LeaderboardEntry]) -> LeaderboardEntry | None:
    """Head of the leaderboard, or None when nobody has logged any time."""
    if not entries or entries[0].weekly_total <= 0:
        return None
    return entries[0]


def week_start(now: datetime, tz: ZoneInfo) -> datetime:
    """Monday 00:00 of the week containing ``now``, in ``tz``."""
    local = ensure_utc(now).astimezone(tz)
    monday = local.date() - timedelta(days=local.weekday())
    return datetime.combine(monday, time.min, tzinfo=tz)


def days_until_reset(now: datetime, tz: ZoneInfo) -> int:
    """Days left before the next Monday 00:00. Always in [1, 7]."""
    local = ensure_utc(now).astimezone(tz)
    return 7 - local.weekday()


def weekly_total_from_sessions(
    sessions: Iterable[TimedSession], now: datetime, tz: ZoneInfo
) -> int:
    """Sum of durations of sessions closed during the current week."""
    start = week_start(now, tz)
    end = datetime.combine(start.date() + timedelta(days=7), time.min, tzinfo=tz)
    total = 0
    for session in sessions:
        if session.end_time is None or session.duration is None:
            continue
        if start <= ensure_utc(session.end_time) < end:
            total += session.duration
    return total


def active_user_ids(sessions: Iterable[TimedSession]) -> list[uuid.UUID]:
    return sorted({s.user_id for s in sessions if s.end_time is None}, key=str)


def elapsed_seconds(session: TimedSession, now: datetime) -> int:
    if session.duration is not None:
        return session.duration
    end = session.end_time or now
    return max(0, int((ensure_utc(end) - ensure_utc(session.start_time)).total_seconds()))


def format_duration(seconds: int) -> str:
    """Render seconds as M:SS, or H:MM:SS from one hour up."""
    if not seconds or seconds < 0:
        return "0:00"
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02}:{secs:02}"
    return f"{minutes}:{secs:02}"


async def get_leaderboard(db: AsyncSession, now: datetime, tz: ZoneInfo) -> LeaderboardResponse:
    entries = rank_users(await store_service.list_users(db))
    return LeaderboardResponse(
        entries=entries,
        champion=champion(entries),
        days_until_reset=days_until_reset(now, tz),
    )


async def audit_weekly_total(
    db: AsyncSession, user_id: uuid.UUID, now: datetime, tz: ZoneInfo
) -> tuple[int, int]:
    """Return (stored, recomputed) weekly totals for a user."""
    user = await store_service.get_user(db, user_id)
    if user is None:
        raise ValueError(f"Unknown user {user_id}")
    sessions = await store_service.list_sessions(db, user_id)
    return user.weekly_total, weekly_total_from_sessions(sessions, now, tz)
