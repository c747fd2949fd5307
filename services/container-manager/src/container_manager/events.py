"""
Event broadcaster.

In-process publish/subscribe keyed by team id. Each subscriber owns a bounded
queue; a subscriber that falls behind far enough to fill it is disconnected
rather than slowing down publishers. Events are also fanned out to Redis
(`{prefix}:{team_id}:events`) when a Redis client is configured.
"""

import asyncio
from collections import defaultdict

import redis.exceptions
import structlog

from shared.contracts.base import BaseEvent
from shared.contracts.events import (
    DeploymentEventOccurred,
    ServiceHealthDegraded,
    ServiceHealthRecovered,
    ServiceMetricsUpdated,
    ServiceStatusChanged,
)
from shared.redis import RedisPubSubClient

from .models import DeploymentEvent, ServiceInstance

logger = structlog.get_logger()

_CLOSED = object()


class Subscription:
    """Async iterator over the events published for one team."""

    def __init__(self, team_id: str, queue_size: int):
        self.team_id = team_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.overflowed = False

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BaseEvent:
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class EventBroadcaster:
    def __init__(
        self,
        queue_size: int = 256,
        redis_client: RedisPubSubClient | None = None,
        channel_prefix: str = "services",
    ):
        self.queue_size = queue_size
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix
        self._subscribers: defaultdict[str, list[Subscription]] = defaultdict(list)

    def channel(self, team_id: str) -> str:
        return f"{self.channel_prefix}:{team_id}:events"

    def subscribe(self, team_id: str) -> Subscription:
        subscription = Subscription(team_id, self.queue_size)
        self._subscribers[team_id].append(subscription)
        logger.info(
            "subscriber_added", team_id=team_id, subscribers=len(self._subscribers[team_id])
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.team_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        subscription._close()
        logger.info("subscriber_removed", team_id=subscription.team_id)

    def subscriber_count(self, team_id: str) -> int:
        return len(self._subscribers.get(team_id, []))

    def close(self) -> None:
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                self.unsubscribe(subscription)

    async def publish(self, event: BaseEvent) -> None:
        """Deliver an event to every subscriber of its team, then to Redis."""
        for subscription in list(self._subscribers.get(event.team_id, [])):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "subscriber_overflow",
                    team_id=event.team_id,
                    queue_size=self.queue_size,
                )
                subscription.overflowed = True
                self.unsubscribe(subscription)

        if self.redis_client is not None:
            try:
                await self.redis_client.publish_event(self.channel(event.team_id), event)
            except (redis.exceptions.RedisError, OSError) as e:
                # Local subscribers already have the event
                logger.error(
                    "event_publish_failed",
                    event=event.event,
                    service_id=event.service_id,
                    error=str(e),
                )

    # === Typed helpers ===

    async def status_changed(
        self, instance: ServiceInstance, status: str, previous_status: str | None
    ) -> None:
        await self.publish(
            ServiceStatusChanged(
                team_id=instance.team_id,
                service_id=instance.id,
                status=status,
                previous_status=previous_status,
            )
        )

    async def deployment_event(self, event: DeploymentEvent) -> None:
        await self.publish(
            DeploymentEventOccurred(
                team_id=event.team_id,
                service_id=event.instance_id,
                event_type=event.event_type,
                duration_ms=event.duration_ms,
                success=event.success,
                severity=event.severity,
                detail=event.detail,
                metadata=event.event_metadata or {},
            )
        )

    async def metrics_updated(self, instance: ServiceInstance, metrics: dict[str, float]) -> None:
        await self.publish(
            ServiceMetricsUpdated(team_id=instance.team_id, service_id=instance.id, metrics=metrics)
        )

    async def health_degraded(self, instance: ServiceInstance, consecutive_failures: int) -> None:
        await self.publish(
            ServiceHealthDegraded(
                team_id=instance.team_id,
                service_id=instance.id,
                consecutive_failures=consecutive_failures,
            )
        )

    async def health_recovered(self, instance: ServiceInstance) -> None:
        await self.publish(ServiceHealthRecovered(team_id=instance.team_id, service_id=instance.id))
