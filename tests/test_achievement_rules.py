import uuid
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from streakboard.errors import RuleEvaluationError
from streakboard.schemas.session import SessionResponse
from streakboard.schemas.user import UserResponse
from streakboard.services.achievement_rules import DEFAULT_CATALOG, RULES, evaluate

UTC = ZoneInfo("UTC")
USER_ID = uuid.uuid4()

WEDNESDAY_NOON = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
SATURDAY_NOON = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
SUNDAY_NOON = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def closed(end_time: datetime, duration: int) -> SessionResponse:
    return SessionResponse(
        id=uuid.uuid4(),
        user_id=USER_ID,
        start_time=end_time - timedelta(seconds=duration),
        end_time=end_time,
        duration=duration,
        version=2,
    )


def user(weekly_total: int) -> UserResponse:
    return UserResponse(
        id=USER_ID, display_name="Tester", avatar="\U0001F4A9", weekly_total=weekly_total, version=2
    )


def run(session, history=(), weekly_total=None, **kwargs) -> set[str]:
    total = session.duration if weekly_total is None else weekly_total
    return evaluate(
        user(total), session, [*history, session], session.end_time, tz=kwargs.pop("tz", UTC), **kwargs
    )


def test_catalog_has_a_rule_for_every_entry():
    assert {a.id for a in DEFAULT_CATALOG} == set(RULES)


def test_first_session_and_fast():
    assert run(closed(WEDNESDAY_NOON, 45)) == {"first-session", "fast"}


@pytest.mark.parametrize(
    "duration,expected",
    [(59, True), (60, False), (1, True), (0, False)],
)
def test_fast_is_strictly_under_a_minute_and_never_zero(duration, expected):
    assert ("fast" in run(closed(WEDNESDAY_NOON, duration))) is expected


@pytest.mark.parametrize(
    "duration,expected",
    [(1800, False), (1801, True), (0, False)],
)
def test_marathon_is_strictly_over_thirty_minutes(duration, expected):
    assert ("marathon" in run(closed(WEDNESDAY_NOON, duration))) is expected


def test_zero_duration_still_counts_as_a_session():
    result = run(closed(WEDNESDAY_NOON, 0))
    assert result == {"first-session"}


def test_frequent_on_tenth_session():
    history = [closed(WEDNESDAY_NOON - timedelta(hours=i + 1), 300) for i in range(9)]
    result = run(closed(WEDNESDAY_NOON, 300), history)
    assert "frequent" in result
    assert "first-session" not in result


def test_frequent_not_on_ninth_session():
    history = [closed(WEDNESDAY_NOON - timedelta(hours=i + 1), 300) for i in range(8)]
    assert "frequent" not in run(closed(WEDNESDAY_NOON, 300), history)


def test_open_sessions_in_history_do_not_count():
    open_session = SessionResponse(
        id=uuid.uuid4(), user_id=USER_ID, start_time=WEDNESDAY_NOON,
        end_time=None, duration=None, version=1,
    )
    assert "first-session" in run(closed(WEDNESDAY_NOON, 300), [open_session])


def test_closed_session_counted_once_even_if_missing_from_history():
    session = closed(WEDNESDAY_NOON, 300)
    result = evaluate(user(300), session, [], WEDNESDAY_NOON, tz=UTC)
    assert "first-session" in result


@pytest.mark.parametrize(
    "weekly_total,expected",
    [(7210, True), (7200, True), (7199, False)],
)
def test_accumulator_threshold(weekly_total, expected):
    result = run(closed(WEDNESDAY_NOON, 60), weekly_total=weekly_total)
    assert ("accumulator" in result) is expected


@pytest.mark.parametrize(
    "hour,minute,expected",
    [(6, 59, {"early-bird"}), (7, 0, set()), (21, 59, set()), (22, 0, {"night-owl"}), (23, 30, {"night-owl"})],
)
def test_time_of_day_rules(hour, minute, expected):
    end = datetime(2026, 10, 14, hour, minute, tzinfo=timezone.utc)
    result = run(closed(end, 120)) & {"early-bird", "night-owl"}
    assert result == expected


def test_time_of_day_uses_reference_timezone():
    # 03:00 UTC is 23:00 the previous evening in New York
    end = datetime(2026, 10, 15, 3, 0, tzinfo=timezone.utc)
    result = run(closed(end, 120), tz=ZoneInfo("America/New_York"))
    assert "night-owl" in result
    assert "early-bird" not in result


def test_weekend_streak_needs_three_weekend_sessions():
    history = [closed(SATURDAY_NOON - timedelta(days=7), 120), closed(SATURDAY_NOON, 120)]
    assert "weekend-streak" in run(closed(SUNDAY_NOON, 120), history)


def test_weekend_streak_ignores_weekday_sessions():
    history = [closed(SATURDAY_NOON, 120), closed(WEDNESDAY_NOON, 120)]
    assert "weekend-streak" not in run(closed(SUNDAY_NOON, 120), history)


def test_already_unlocked_ids_are_never_returned():
    session = closed(WEDNESDAY_NOON, 45)
    first = run(session)
    second = run(session, unlocked=first)
    assert first == {"first-session", "fast"}
    assert second == set()


def test_repeated_evaluation_is_stable():
    session = closed(WEDNESDAY_NOON, 45)
    assert run(session) == run(session)


def test_catalog_limits_rules_evaluated():
    assert run(closed(WEDNESDAY_NOON, 45), catalog=["fast"]) == {"fast"}


def test_unknown_catalog_entry_fails_the_pass():
    with pytest.raises(RuleEvaluationError):
        run(closed(WEDNESDAY_NOON, 45), catalog=["fast", "moonwalk"])


def test_open_session_is_measured_up_to_now():
    session = SessionResponse(
        id=uuid.uuid4(), user_id=USER_ID, start_time=WEDNESDAY_NOON,
        end_time=None, duration=None, version=1,
    )
    now = WEDNESDAY_NOON + timedelta(seconds=30)
    assert "fast" in evaluate(user(30), session, [], now, tz=UTC)
