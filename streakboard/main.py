import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
import sentry_sdk
from fastapi import FastAPI
from sqlalchemy import text

from streakboard.clock import utc_now
from streakboard.config import settings
from streakboard.database import async_session, engine
from streakboard.realtime.feed import ChangeFeed
from streakboard.realtime.reconciler import Reconciler
from streakboard.services import achievement_rules, store_service
from streakboard.services.lifecycle_service import SessionLifecycle

logger = logging.getLogger(__name__)

# Initialize Sentry
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.2 if settings.ENVIRONMENT == "production" else 1.0,
        send_default_pii=False,
    )


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _log_reconciler_exit(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Reconciler stopped", exc_info=task.exception())


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    # Startup: verify DB connection, seed the catalog and connect Redis
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    async with async_session() as db:
        seeded = await store_service.seed_achievements(db, achievement_rules.DEFAULT_CATALOG)
        await db.commit()
    if seeded:
        logger.info("Seeded %d achievements", seeded)

    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    await app.state.redis.ping()

    feed = ChangeFeed(app.state.redis, settings.CHANGE_FEED_CHANNEL)
    reconciler = Reconciler(
        feed,
        store_service.snapshot_loader(async_session),
        tz=settings.tz,
        reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
    )
    app.state.session_factory = async_session
    app.state.clock = utc_now
    app.state.reconciler = reconciler
    app.state.lifecycle = SessionLifecycle(feed, reconciler, tz=settings.tz)
    reconciler_task = asyncio.create_task(reconciler.run())
    reconciler_task.add_done_callback(_log_reconciler_exit)

    yield

    # Shutdown
    reconciler_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reconciler_task
    await app.state.redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="Streakboard API",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from streakboard.middleware.error_handler import register_error_handlers  # noqa: E402

register_error_handlers(app)

# Routers
from streakboard.routers.achievements import router as achievements_router  # noqa: E402
from streakboard.routers.leaderboard import router as leaderboard_router  # noqa: E402
from streakboard.routers.realtime import router as realtime_router  # noqa: E402
from streakboard.routers.sessions import router as sessions_router  # noqa: E402

app.include_router(sessions_router)
app.include_router(leaderboard_router)
app.include_router(achievements_router)
app.include_router(realtime_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
