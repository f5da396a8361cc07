import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pydantic import ValidationError as SchemaError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from streakboard.errors import ReconciliationGapError
from streakboard.schemas.realtime import ChangeBatch

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Redis pub/sub channel carrying one ChangeBatch per committed write."""

    def __init__(self, redis_client, channel: str):
        self._redis = redis_client
        self.channel = channel

    async def publish(self, batch: ChangeBatch) -> int:
        """Publish a batch. Returns the number of subscribers that received it."""
        return await self._redis.publish(self.channel, batch.model_dump_json())

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[AsyncIterator[ChangeBatch]]:
        """Scoped subscription; the pub/sub connection is released on every exit path.

        The yielded iterator raises ReconciliationGapError once the feed drops.
        """
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            try:
                await pubsub.subscribe(self.channel)
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise ReconciliationGapError("Could not subscribe to change feed") from exc
            yield self._batches(pubsub)
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
            except RedisError:
                logger.debug("Unsubscribe from %s failed on a dead connection", self.channel)
            await pubsub.aclose()

    async def _batches(self, pubsub) -> AsyncIterator[ChangeBatch]:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    batch = ChangeBatch.model_validate_json(message["data"])
                except SchemaError:
                    logger.warning("Dropping malformed change batch on %s", self.channel)
                    continue
                yield batch
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise ReconciliationGapError("Change feed connection lost") from exc
        raise ReconciliationGapError("Change feed subscription ended")
