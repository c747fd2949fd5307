import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from fakeredis import aioredis
import pytest
import redis.exceptions

from container_manager.events import EventBroadcaster
from shared.contracts.events import ServiceHealthRecovered, ServiceStatusChanged
from shared.redis import RedisPubSubClient


def status_event(team_id="team-1", status="running"):
    return ServiceStatusChanged(team_id=team_id, service_id="svc-1", status=status)


async def drain(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


@pytest.mark.asyncio
async def test_events_reach_only_their_team():
    broadcaster = EventBroadcaster()
    mine = broadcaster.subscribe("team-1")
    theirs = broadcaster.subscribe("team-2")

    await broadcaster.publish(status_event())

    assert [e.status for e in await drain(mine)] == ["running"]
    assert await drain(theirs) == []


@pytest.mark.asyncio
async def test_subscribers_receive_events_in_publish_order():
    broadcaster = EventBroadcaster()
    first = broadcaster.subscribe("team-1")
    second = broadcaster.subscribe("team-1")

    for status in ("building", "deploying", "running"):
        await broadcaster.publish(status_event(status=status))

    for subscription in (first, second):
        assert [e.status for e in await drain(subscription)] == ["building", "deploying", "running"]


@pytest.mark.asyncio
async def test_slow_subscriber_is_disconnected():
    broadcaster = EventBroadcaster(queue_size=2)
    slow = broadcaster.subscribe("team-1")
    fast = broadcaster.subscribe("team-1")

    await broadcaster.publish(status_event(status="building"))
    await broadcaster.publish(status_event(status="deploying"))
    await fast.queue.get()
    await fast.queue.get()
    await broadcaster.publish(status_event(status="running"))

    assert slow.overflowed
    assert slow.closed
    assert broadcaster.subscriber_count("team-1") == 1
    # the iterator ends instead of blocking forever
    assert [e async for e in slow] == []
    assert (await fast.queue.get()).status == "running"


@pytest.mark.asyncio
async def test_unsubscribe_ends_iteration():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("team-1")

    async def consume():
        return [e async for e in subscription]

    consumer = asyncio.create_task(consume())
    await broadcaster.publish(status_event())
    await asyncio.sleep(0)
    broadcaster.unsubscribe(subscription)

    received = await asyncio.wait_for(consumer, timeout=1)
    assert len(received) <= 1
    assert broadcaster.subscriber_count("team-1") == 0


@pytest.mark.asyncio
async def test_typed_helpers_build_contract_events():
    broadcaster = EventBroadcaster()
    subscription = broadcaster.subscribe("team-1")
    instance = MagicMock(id="svc-1", team_id="team-1")

    await broadcaster.status_changed(instance, "running", "deploying")
    await broadcaster.metrics_updated(instance, {"cpu_percent": 12.5})
    await broadcaster.health_degraded(instance, consecutive_failures=3)
    await broadcaster.health_recovered(instance)

    events = await drain(subscription)
    assert [e.event for e in events] == [
        "service_status_changed",
        "service_metrics_updated",
        "service_health_degraded",
        "service_health_recovered",
    ]
    assert events[0].previous_status == "deploying"
    assert events[1].metrics == {"cpu_percent": 12.5}
    assert events[2].consecutive_failures == 3
    assert isinstance(events[3], ServiceHealthRecovered)


class TestRedisFanOut:
    @pytest.mark.asyncio
    async def test_events_are_published_to_team_channel(self):
        fake = aioredis.FakeRedis(decode_responses=True)
        pubsub = fake.pubsub()
        await pubsub.subscribe("services:team-1:events")
        broadcaster = EventBroadcaster(redis_client=RedisPubSubClient.from_client(fake))

        await broadcaster.publish(status_event())

        message = None
        for _ in range(20):
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
            if message:
                break
        await pubsub.aclose()
        await fake.aclose()

        assert message is not None
        payload = json.loads(message["data"])
        assert payload["event"] == "service_status_changed"
        assert payload["team_id"] == "team-1"

    @pytest.mark.asyncio
    async def test_redis_failure_does_not_affect_local_delivery(self):
        client = MagicMock()
        client.publish_event = AsyncMock(side_effect=redis.exceptions.ConnectionError("down"))
        broadcaster = EventBroadcaster(redis_client=client, channel_prefix="fas")
        subscription = broadcaster.subscribe("team-1")

        await broadcaster.publish(status_event())

        assert len(await drain(subscription)) == 1
        client.publish_event.assert_awaited_once()
        assert client.publish_event.await_args.args[0] == "fas:team-1:events"
