"""Keeps a local snapshot of users, sessions and unlocks in step with the store.

Each process owns one Reconciler. It loads a full baseline, then folds change
batches delivered on the feed into its snapshot. Rows are replaced by id using
the row ``version`` as the last-write-wins arbiter, so a replayed or echoed
batch never changes anything twice.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

import sentry_sdk
from pydantic import BaseModel

from streakboard.clock import Clock, utc_now
from streakboard.errors import PersistenceError, ReconciliationGapError
from streakboard.realtime.feed import ChangeFeed
from streakboard.schemas.achievement import AchievementStateResponse
from streakboard.schemas.leaderboard import LeaderboardEntry
from streakboard.schemas.realtime import ChangeBatch, ChangeEvent, Snapshot, SnapshotView
from streakboard.schemas.session import SessionResponse
from streakboard.schemas.user import UserResponse
from streakboard.services import leaderboard_service

logger = logging.getLogger(__name__)

SnapshotLoader = Callable[[], Awaitable[Snapshot]]

LISTENER_QUEUE_SIZE = 16


class SnapshotState:
    """Rows keyed by id. Only the owning Reconciler mutates this."""

    def __init__(self) -> None:
        self.users: dict[uuid.UUID, UserResponse] = {}
        self.sessions: dict[uuid.UUID, SessionResponse] = {}
        self.achievement_states: dict[uuid.UUID, AchievementStateResponse] = {}

    def replace(self, snapshot: Snapshot) -> None:
        self.users = {u.id: u for u in snapshot.users}
        self.sessions = {s.id: s for s in snapshot.sessions}
        self.achievement_states = {a.id: a for a in snapshot.achievement_states}

    def _table(self, entity_type: str) -> dict[uuid.UUID, BaseModel]:
        return {
            "users": self.users,
            "sessions": self.sessions,
            "user_achievements": self.achievement_states,
        }[entity_type]

    def apply(self, event: ChangeEvent) -> bool:
        """Apply one change. Returns True if the snapshot changed."""
        row = event.row()
        table = self._table(event.entity_type)

        if event.operation == "delete":
            return table.pop(row.id, None) is not None

        current = table.get(row.id)
        if current is not None:
            if getattr(current, "version", 0) > getattr(row, "version", 0):
                return False  # stale replay
            if current == row:
                return False
        table[row.id] = row
        return True


class Reconciler:
    def __init__(
        self,
        feed: ChangeFeed,
        load_snapshot: SnapshotLoader,
        *,
        tz: ZoneInfo,
        clock: Clock = utc_now,
        reconnect_delay: float = 1.0,
    ):
        self._feed = feed
        self._load_snapshot = load_snapshot
        self._tz = tz
        self._clock = clock
        self._reconnect_delay = reconnect_delay
        self._state = SnapshotState()
        self._leaderboard: list[LeaderboardEntry] = []
        self._active: list[uuid.UUID] = []
        self._listeners: set[asyncio.Queue[SnapshotView]] = set()
        self.ready = asyncio.Event()

    async def run(self) -> None:
        """Follow the feed until cancelled.

        A dropped feed or a failed snapshot fetch clears ``ready``, wakes
        listeners so they can see the view went stale, and retries after the
        reconnect delay.
        """
        while True:
            try:
                async with self._feed.subscribe() as batches:
                    # Subscribe before fetching so nothing committed in between is missed
                    await self.resync()
                    async for batch in batches:
                        self.apply_batch(batch)
            except ReconciliationGapError as exc:
                self.mark_stale()
                logger.warning(
                    "Change feed dropped (%s); re-fetching snapshot in %.1fs",
                    exc, self._reconnect_delay,
                )
            except PersistenceError as exc:
                self.mark_stale()
                logger.error(
                    "Snapshot fetch failed (%s); retrying in %.1fs", exc, self._reconnect_delay
                )
                sentry_sdk.capture_exception(exc)
            await asyncio.sleep(self._reconnect_delay)

    def mark_stale(self) -> None:
        """Drop readiness until the next successful resync and wake listeners."""
        self.ready.clear()
        self._notify()

    async def resync(self) -> None:
        snapshot = await self._load_snapshot()
        self._state.replace(snapshot)
        self.ready.set()
        self._recompute()
        logger.info(
            "Snapshot loaded: %d users, %d sessions", len(snapshot.users), len(snapshot.sessions)
        )

    def apply_batch(self, batch: ChangeBatch) -> bool:
        """Fold one committed batch into the snapshot; listeners hear about it once."""
        changed = False
        for event in batch.changes:
            try:
                applied = self._state.apply(event)
            except ValueError:
                logger.warning(
                    "Skipping malformed %s %s event in batch %s",
                    event.entity_type, event.operation, batch.id,
                )
                continue
            changed = applied or changed
        if changed:
            self._recompute()
        return changed

    def _recompute(self) -> None:
        self._leaderboard = leaderboard_service.rank_users(self._state.users.values())
        self._active = leaderboard_service.active_user_ids(self._state.sessions.values())
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.view()
        for queue in self._listeners:
            if queue.full():
                queue.get_nowait()  # slow listener: keep only the newest views
            queue.put_nowait(view)

    @asynccontextmanager
    async def listen(self) -> AsyncIterator[asyncio.Queue[SnapshotView]]:
        queue: asyncio.Queue[SnapshotView] = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        self._listeners.add(queue)
        try:
            yield queue
        finally:
            self._listeners.discard(queue)

    @property
    def active_user_ids(self) -> list[uuid.UUID]:
        return list(self._active)

    def open_session(self, user_id: uuid.UUID) -> SessionResponse | None:
        for session in self._state.sessions.values():
            if session.user_id == user_id and session.is_open:
                return session
        return None

    def view(self, user_id: uuid.UUID | None = None) -> SnapshotView:
        states = self._state.achievement_states.values()
        if user_id is not None:
            states = [s for s in states if s.user_id == user_id]
        return SnapshotView(
            users=sorted(self._state.users.values(), key=lambda u: str(u.id)),
            active_user_ids=self.active_user_ids,
            current_session=self.open_session(user_id) if user_id is not None else None,
            leaderboard=list(self._leaderboard),
            champion=leaderboard_service.champion(self._leaderboard),
            days_until_reset=leaderboard_service.days_until_reset(self._clock(), self._tz),
            achievement_states=sorted(states, key=lambda s: s.unlocked_at),
        )
