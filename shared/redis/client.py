from collections.abc import AsyncIterator
import json
import os
from typing import Any

import redis.asyncio as redis
import structlog

from shared.contracts.base import BaseEvent

logger = structlog.get_logger(__name__)


class RedisPubSubClient:
    """Client for Redis pub/sub fan-out of realtime events."""

    def __init__(self, redis_url: str | None = None):
        """Initialize Redis client.

        Args:
            redis_url: Redis connection URL. Falls back to REDIS_URL env var.
        """
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        if not self.redis_url:
            raise RuntimeError(
                "Redis URL not provided. Pass redis_url argument or set REDIS_URL env var."
            )
        self._redis: redis.Redis | None = None

    @classmethod
    def from_client(cls, client: redis.Redis) -> "RedisPubSubClient":
        """Wrap an already-connected client (e.g. fakeredis in tests)."""
        instance = cls(redis_url="redis://preconnected")
        instance._redis = client
        return instance

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
            logger.info("redis_connected", redis_url=self.redis_url)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_connection_closed")

    @property
    def redis(self) -> redis.Redis:
        """Get Redis client, ensuring connection."""
        if self._redis is None:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._redis

    async def publish(self, channel: str, data: dict[str, Any]) -> int:
        """Publish a dict to a channel. Returns the number of receivers."""
        receivers = await self.redis.publish(channel, json.dumps(data))
        logger.debug("message_published", channel=channel, receivers=receivers)
        return receivers

    async def publish_event(self, channel: str, event: BaseEvent) -> int:
        """Publish a Pydantic event to a channel."""
        # mode=json so datetimes serialize
        return await self.publish(channel, event.model_dump(mode="json"))

    async def subscribe(self, channel: str) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages published to a channel until cancelled."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        logger.info("channel_subscribed", channel=channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.error("message_parse_failed", channel=channel, error=str(e))
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.info("channel_unsubscribed", channel=channel)
