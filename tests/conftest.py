import asyncio
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from streakboard.database import get_db
from streakboard.dependencies import get_current_user
from streakboard.main import app
from streakboard.models import Base
from streakboard.models.session import Session
from streakboard.models.user import User
from streakboard.realtime.feed import ChangeFeed
from streakboard.realtime.reconciler import Reconciler
from streakboard.services import store_service
from streakboard.services.achievement_rules import DEFAULT_CATALOG
from streakboard.services.lifecycle_service import SessionLifecycle

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_CHANNEL = "test:changes"
UTC = ZoneInfo("UTC")

# Wednesday noon, mid-week
T0 = datetime(2026, 10, 14, 12, 0, 0, tzinfo=timezone.utc)

_DROP = object()


class FakePubSub:
    """In-memory stand-in for redis.asyncio.client.PubSub."""

    def __init__(self, redis: "FakeRedis", ignore_subscribe_messages: bool = False):
        self._redis = redis
        self._queue: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        if self._redis.down:
            raise RedisConnectionError("Connection refused")
        for channel in channels:
            self.channels.add(channel)
            self._redis.subscribers.setdefault(channel, set()).add(self)

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels or tuple(self.channels):
            self.channels.discard(channel)
            self._redis.subscribers.get(channel, set()).discard(self)

    async def listen(self):
        while self.channels:
            message = await self._queue.get()
            if message is _DROP:
                raise RedisConnectionError("Connection closed by server.")
            yield message

    async def aclose(self) -> None:
        await self.unsubscribe()
        self.closed = True


class FakeRedis:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self.subscribers: dict[str, set[FakePubSub]] = {}
        self.published: list[tuple[str, str]] = []
        self.down = False

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._store[key] = str(value)

    async def publish(self, channel: str, message: str) -> int:
        if self.down:
            raise RedisConnectionError("Connection refused")
        self.published.append((channel, message))
        receivers = list(self.subscribers.get(channel, ()))
        for sub in receivers:
            sub._queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self, **kwargs) -> FakePubSub:
        return FakePubSub(self, **kwargs)

    def drop_connections(self) -> None:
        for subs in self.subscribers.values():
            for sub in subs:
                sub._queue.put_nowait(_DROP)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


async def wait_for_view(queue: asyncio.Queue, predicate, timeout: float = 2.0):
    """Drain snapshot views until one satisfies ``predicate``."""

    async def _drain():
        while True:
            view = await queue.get()
            if predicate(view):
                return view

    return await asyncio.wait_for(_drain(), timeout)


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        await store_service.seed_achievements(session, DEFAULT_CATALOG)
        await session.commit()
        yield session


@pytest.fixture
def make_user(db_session: AsyncSession):
    async def _make(display_name: str, weekly_total: int = 0, avatar: str = "\U0001F451") -> User:
        user = User(
            id=uuid.uuid4(),
            display_name=display_name,
            avatar=avatar,
            weekly_total=weekly_total,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def add_closed_session(db_session: AsyncSession):
    async def _add(user_id: uuid.UUID, end_time: datetime, duration: int) -> Session:
        session = Session(
            user_id=user_id,
            start_time=end_time - timedelta(seconds=duration),
            end_time=end_time,
            duration=duration,
        )
        db_session.add(session)
        await db_session.commit()
        return session

    return _add


@pytest.fixture
async def test_user(make_user) -> User:
    return await make_user("ThroneMaster", avatar="\U0001F4A9")


@pytest.fixture
async def second_user(make_user) -> User:
    return await make_user("ToiletKing")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def feed(fake_redis: FakeRedis) -> ChangeFeed:
    return ChangeFeed(fake_redis, TEST_CHANNEL)


@pytest.fixture
def make_reconciler(feed, session_factory, clock):
    def _make(load_snapshot=None) -> Reconciler:
        return Reconciler(
            feed,
            load_snapshot or store_service.snapshot_loader(session_factory),
            tz=UTC,
            clock=clock,
            reconnect_delay=0,
        )

    return _make


@pytest.fixture
async def reconciler(make_reconciler, db_session) -> Reconciler:
    reconciler = make_reconciler()
    await reconciler.resync()
    return reconciler


@pytest.fixture
def lifecycle(feed, reconciler, clock) -> SessionLifecycle:
    return SessionLifecycle(feed, reconciler, tz=UTC, clock=clock)


@pytest.fixture
async def client(
    session_factory, db_session, test_user: User, fake_redis, reconciler, lifecycle, clock
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_current_user():
        return test_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.state.redis = fake_redis
    app.state.session_factory = session_factory
    app.state.clock = clock
    app.state.reconciler = reconciler
    app.state.lifecycle = lifecycle

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
