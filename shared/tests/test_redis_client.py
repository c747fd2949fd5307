"""Tests for the Redis pub/sub client using fakeredis."""

import asyncio

from fakeredis import aioredis
import pytest

from shared.contracts.events import ServiceStatusChanged
from shared.redis.client import RedisPubSubClient

CHANNEL = "services:team-1:events"


@pytest.fixture
async def client():
    fake = aioredis.FakeRedis(decode_responses=True)
    yield RedisPubSubClient.from_client(fake)
    await fake.aclose()


def test_requires_url(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    with pytest.raises(RuntimeError):
        RedisPubSubClient()


def test_redis_property_requires_connection():
    pubsub = RedisPubSubClient(redis_url="redis://localhost:6379")
    with pytest.raises(RuntimeError):
        _ = pubsub.redis


@pytest.mark.asyncio
async def test_publish_event_reaches_subscriber(client):
    stream = client.subscribe(CHANNEL)
    first = asyncio.ensure_future(stream.__anext__())

    event = ServiceStatusChanged(team_id="team-1", service_id="svc-1", status="running")
    # publish until the subscription is registered
    for _ in range(200):
        if await client.publish_event(CHANNEL, event) > 0:
            break
        await asyncio.sleep(0.01)

    message = await asyncio.wait_for(first, timeout=2)
    await stream.aclose()

    assert message["status"] == "running"
    assert message["event"] == "service_status_changed"


@pytest.mark.asyncio
async def test_publish_without_subscribers_returns_zero(client):
    assert await client.publish("services:nobody:events", {"x": 1}) == 0
