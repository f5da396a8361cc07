"""Achievement rules evaluated when a session closes.

Rules are pure predicates over a :class:`RuleContext` built from the user's
history. The catalog stored in the database names which rules are live; every
stored achievement id must have a predicate here.
"""

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from zoneinfo import ZoneInfo

from streakboard.clock import ensure_utc
from streakboard.errors import RuleEvaluationError
from streakboard.schemas.achievement import AchievementResponse

FAST_THRESHOLD_SECONDS = 60
MARATHON_THRESHOLD_SECONDS = 1800
FREQUENT_SESSION_COUNT = 10
ACCUMULATOR_THRESHOLD_SECONDS = 7200
EARLY_BIRD_BEFORE_HOUR = 7
NIGHT_OWL_FROM_HOUR = 22
WEEKEND_STREAK_COUNT = 3


class UserLike(Protocol):
    weekly_total: int


class SessionLike(Protocol):
    id: uuid.UUID
    start_time: datetime
    end_time: datetime | None
    duration: int | None


@dataclass(frozen=True, slots=True)
class RuleContext:
    duration: int
    session_count: int
    weekly_total: int
    end_local: datetime
    weekend_sessions: int


Rule = Callable[[RuleContext], bool]

RULES: dict[str, Rule] = {
    "first-session": lambda ctx: ctx.session_count == 1,
    # Zero-length sessions never count as fast
    "fast": lambda ctx: 0 < ctx.duration < FAST_THRESHOLD_SECONDS,
    "marathon": lambda ctx: ctx.duration > MARATHON_THRESHOLD_SECONDS,
    "frequent": lambda ctx: ctx.session_count >= FREQUENT_SESSION_COUNT,
    "accumulator": lambda ctx: ctx.weekly_total >= ACCUMULATOR_THRESHOLD_SECONDS,
    "early-bird": lambda ctx: ctx.end_local.hour < EARLY_BIRD_BEFORE_HOUR,
    "night-owl": lambda ctx: ctx.end_local.hour >= NIGHT_OWL_FROM_HOUR,
    "weekend-streak": lambda ctx: ctx.weekend_sessions >= WEEKEND_STREAK_COUNT,
}

DEFAULT_CATALOG: tuple[AchievementResponse, ...] = (
    AchievementResponse(
        id="first-session", name="First Timer", emoji="\U0001F3AF",
        description="Track your first session",
    ),
    AchievementResponse(
        id="fast", name="Lightning", emoji="⚡",
        description="Complete a session in under 1 minute",
    ),
    AchievementResponse(
        id="marathon", name="Marathon", emoji="\U0001F3C3",
        description="Keep a session going for more than 30 minutes",
    ),
    AchievementResponse(
        id="frequent", name="Regular", emoji="\U0001F4C5",
        description="Complete 10 sessions",
    ),
    AchievementResponse(
        id="accumulator", name="Accumulator", emoji="⏳",
        description="Reach 2 hours in a single week",
    ),
    AchievementResponse(
        id="early-bird", name="Early Bird", emoji="\U0001F305",
        description="Finish a session before 7 AM",
    ),
    AchievementResponse(
        id="night-owl", name="Night Owl", emoji="\U0001F989",
        description="Finish a session after 10 PM",
    ),
    AchievementResponse(
        id="weekend-streak", name="Weekend Warrior", emoji="\U0001F389",
        description="Finish 3 sessions on weekends",
    ),
)


def _is_weekend(moment: datetime, tz: ZoneInfo) -> bool:
    return ensure_utc(moment).astimezone(tz).weekday() >= 5


def build_context(
    user: UserLike,
    closed_session: SessionLike,
    sessions: Iterable[SessionLike],
    now: datetime,
    tz: ZoneInfo,
) -> RuleContext:
    end_time = closed_session.end_time or now
    duration = closed_session.duration
    if duration is None:
        elapsed = ensure_utc(end_time) - ensure_utc(closed_session.start_time)
        duration = max(0, int(elapsed.total_seconds()))

    # The closed session always counts, whether or not the history has caught up
    closed_ends = {s.id: s.end_time for s in sessions if s.end_time is not None}
    closed_ends[closed_session.id] = end_time

    return RuleContext(
        duration=duration,
        session_count=len(closed_ends),
        weekly_total=user.weekly_total,
        end_local=ensure_utc(end_time).astimezone(tz),
        weekend_sessions=sum(1 for end in closed_ends.values() if _is_weekend(end, tz)),
    )


def evaluate(
    user: UserLike,
    closed_session: SessionLike,
    sessions: Iterable[SessionLike],
    now: datetime,
    *,
    tz: ZoneInfo,
    catalog: Iterable[str] | None = None,
    unlocked: Iterable[str] = (),
) -> set[str]:
    """Return the achievement ids newly satisfied by ``closed_session``.

    ``user.weekly_total`` must already include the closed session's duration.
    Ids in ``unlocked`` are never returned, so repeated calls are harmless.
    Raises RuleEvaluationError if the catalog names an unknown rule or a rule
    fails; nothing is unlocked for that pass.
    """
    catalog_ids = list(RULES) if catalog is None else list(catalog)
    already = set(unlocked)
    ctx = build_context(user, closed_session, sessions, now, tz)

    qualifying: set[str] = set()
    for achievement_id in catalog_ids:
        if achievement_id in already:
            continue
        rule = RULES.get(achievement_id)
        if rule is None:
            raise RuleEvaluationError(f"No rule defined for achievement {achievement_id!r}")
        try:
            satisfied = rule(ctx)
        except Exception as exc:
            raise RuleEvaluationError(f"Rule {achievement_id!r} failed: {exc}") from exc
        if satisfied:
            qualifying.add(achievement_id)
    return qualifying
