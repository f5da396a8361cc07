"""Per-user session state machine: Idle -> Active -> Idle.

Writes are committed before anything local changes: the owning process's
reconciler only sees a start or stop once the store has acknowledged it, and
the same batch is published on the change feed for every other observer.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from zoneinfo import ZoneInfo

import sentry_sdk
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from streakboard.clock import Clock, ensure_utc, utc_now
from streakboard.errors import (
    AlreadyActive,
    NoActiveSession,
    OperationInProgress,
    PersistenceError,
    RuleEvaluationError,
)
from streakboard.realtime.feed import ChangeFeed
from streakboard.realtime.reconciler import Reconciler
from streakboard.schemas.achievement import AchievementStateResponse
from streakboard.schemas.realtime import ChangeBatch, ChangeEvent
from streakboard.schemas.session import SessionResponse, StopResponse
from streakboard.schemas.user import UserResponse
from streakboard.services import achievement_rules, store_service

logger = logging.getLogger(__name__)


def session_duration(start_time: datetime, end_time: datetime) -> int:
    """Whole seconds between start and end, clamped at zero for clock skew."""
    elapsed = ensure_utc(end_time) - ensure_utc(start_time)
    return max(0, int(elapsed.total_seconds()))


class SessionLifecycle:
    def __init__(
        self,
        feed: ChangeFeed | None = None,
        reconciler: Reconciler | None = None,
        *,
        tz: ZoneInfo,
        clock: Clock = utc_now,
    ):
        self._feed = feed
        self._reconciler = reconciler
        self._tz = tz
        self._clock = clock
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    @asynccontextmanager
    async def _exclusive(self, user_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        # Refuse rather than queue: a start racing a stop is a caller error
        if lock.locked():
            raise OperationInProgress(user_id)
        try:
            async with lock:
                yield
        finally:
            if not lock.locked():
                self._locks.pop(user_id, None)

    def is_busy(self, user_id: uuid.UUID) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    async def start(self, db: AsyncSession, user_id: uuid.UUID) -> SessionResponse:
        async with self._exclusive(user_id):
            try:
                if await store_service.get_user(db, user_id) is None:
                    raise ValueError(f"Unknown user {user_id}")
                if await store_service.get_open_session(db, user_id) is not None:
                    raise AlreadyActive(user_id)
                session = await store_service.create_session(db, user_id, self._clock())
                await db.commit()
            except IntegrityError as exc:
                # Another process opened a session between our check and insert
                await db.rollback()
                raise AlreadyActive(user_id) from exc
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Failed to persist session start") from exc

            row = SessionResponse.model_validate(session)
            await self._broadcast([ChangeEvent.of("sessions", "insert", new=row)])
            logger.info("Session started: user=%s session=%s", user_id, row.id)
            return row

    async def stop(self, db: AsyncSession, user_id: uuid.UUID) -> StopResponse:
        async with self._exclusive(user_id):
            now = self._clock()
            try:
                session = await store_service.get_open_session(db, user_id)
                if session is None:
                    raise NoActiveSession(user_id)
                previous = SessionResponse.model_validate(session)
                duration = session_duration(session.start_time, now)
                # Close and total land in one transaction and one change batch
                session = await store_service.close_session(db, session, now, duration)
                user = await store_service.increment_weekly_total(db, user_id, duration)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Failed to persist session stop") from exc

            closed = SessionResponse.model_validate(session)
            user_row = UserResponse.model_validate(user)
            await self._broadcast([
                ChangeEvent.of("sessions", "update", new=closed, old=previous),
                ChangeEvent.of("users", "update", new=user_row),
            ])
            logger.info(
                "Session stopped: user=%s session=%s duration=%ss weekly_total=%ss",
                user_id, closed.id, duration, user_row.weekly_total,
            )

            unlocked = await self._award(db, user_row, closed, now)
            return StopResponse(session=closed, weekly_total=user_row.weekly_total, unlocked=unlocked)

    async def _award(
        self,
        db: AsyncSession,
        user: UserResponse,
        closed: SessionResponse,
        now: datetime,
    ) -> list[str]:
        # The stop is already committed; nothing here may undo or block it
        try:
            catalog = await store_service.list_achievements(db)
            states = await store_service.list_achievement_states(db, user.id)
            history = await store_service.list_sessions(db, user.id)
            qualifying = achievement_rules.evaluate(
                user,
                closed,
                history,
                now,
                tz=self._tz,
                catalog=[a.id for a in catalog],
                unlocked=[s.achievement_id for s in states],
            )
            return await self.unlock_achievements(db, user.id, qualifying, now)
        except (RuleEvaluationError, PersistenceError, SQLAlchemyError) as exc:
            logger.exception("Achievement evaluation failed for user=%s session=%s", user.id, closed.id)
            sentry_sdk.capture_exception(exc)
            await db.rollback()
            return []

    async def unlock_achievements(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        achievement_ids: Iterable[str],
        unlocked_at: datetime,
    ) -> list[str]:
        """Mark achievements unlocked. Already-unlocked ids are skipped.

        Returns the ids this call actually unlocked. If another writer unlocks
        one of the same pairs first, the pass is retried once and that pair
        is skipped.
        """
        wanted = sorted(set(achievement_ids))
        for attempt in range(2):
            inserted: list[AchievementStateResponse] = []
            try:
                for achievement_id in wanted:
                    state = await store_service.insert_achievement_state(
                        db, user_id, achievement_id, unlocked_at
                    )
                    if state is not None:
                        inserted.append(AchievementStateResponse.model_validate(state))
                await db.commit()
                break
            except IntegrityError as exc:
                await db.rollback()
                if attempt:
                    raise PersistenceError("Failed to persist achievement unlocks") from exc
                logger.info("Unlock race for user=%s; re-checking existing unlocks", user_id)
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError("Failed to persist achievement unlocks") from exc

        if inserted:
            await self._broadcast(
                [ChangeEvent.of("user_achievements", "insert", new=s) for s in inserted]
            )
            logger.info(
                "Achievements unlocked: user=%s ids=%s",
                user_id, ",".join(s.achievement_id for s in inserted),
            )
        return [s.achievement_id for s in inserted]

    async def _broadcast(self, changes: list[ChangeEvent]) -> None:
        batch = ChangeBatch(committed_at=self._clock(), changes=changes)
        if self._reconciler is not None:
            self._reconciler.apply_batch(batch)
        if self._feed is None:
            return
        try:
            await self._feed.publish(batch)
        except RedisError as exc:
            # The write is committed; observers catch up on their next resync
            logger.warning("Failed to publish change batch %s: %s", batch.id, exc)
            sentry_sdk.capture_exception(exc)
