"""Lock stores and event transports."""

import asyncio
import os
from urllib.parse import urlparse

import pytest

from sagaflow.locks import InMemoryLockStore, get_lock_store
from sagaflow.locks.redis import RedisLockStore
from sagaflow.transports import (
    InMemoryBroadcastChannel,
    InMemoryDurableSink,
    get_broadcast_channel,
    get_durable_sink,
)
from sagaflow.transports.kafka import KafkaDurableSink
from sagaflow.transports.redis import RedisBroadcastChannel, RedisDurableSink


@pytest.mark.asyncio
async def test_inmemory_lock_is_exclusive_until_released():
    store = InMemoryLockStore()

    assert await store.set_if_absent_with_expiry("order:1", "exec-a", 60)
    assert not await store.set_if_absent_with_expiry("order:1", "exec-b", 60)
    assert await store.get("order:1") == "exec-a"

    await store.delete("order:1")
    assert await store.get("order:1") is None
    assert await store.set_if_absent_with_expiry("order:1", "exec-b", 60)


@pytest.mark.asyncio
async def test_inmemory_lock_expires():
    store = InMemoryLockStore()
    assert await store.set_if_absent_with_expiry("order:2", "exec-a", 0.05)

    await asyncio.sleep(0.1)

    assert await store.get("order:2") is None
    assert await store.set_if_absent_with_expiry("order:2", "exec-b", 60)


@pytest.mark.asyncio
async def test_redis_lock_store():
    url = urlparse(os.getenv("TEST_REDIS_URL", "redis://localhost:6379/0"))
    store = RedisLockStore(
        host=url.hostname or "localhost",
        port=url.port or 6379,
        db=int(url.path.lstrip("/") or 0),
        password=url.password,
        prefix="sagaflow-test:",
    )
    try:
        await store.ping()
    except Exception:
        pytest.skip("Redis server not available")

    try:
        await store.delete("order:3")
        assert await store.set_if_absent_with_expiry("order:3", "exec-a", 0.5)
        assert not await store.set_if_absent_with_expiry("order:3", "exec-b", 0.5)
        assert await store.get("order:3") == "exec-a"
        await store.delete("order:3")
        assert await store.get("order:3") is None
    finally:
        await store.disconnect()


@pytest.mark.asyncio
async def test_inmemory_broadcast_subscriber_receives_later_messages():
    channel = InMemoryBroadcastChannel()
    await channel.broadcast("/topic/workflows", {"eventType": "EARLY"})

    received = []

    async def listen():
        async for message in channel.subscribe("/topic/workflows", lifespan=0.5):
            received.append(message)
            break

    task = asyncio.create_task(listen())
    await asyncio.sleep(0.05)
    await channel.broadcast("/topic/workflows", {"eventType": "LATE"})
    await task

    assert received == [{"eventType": "LATE"}]


@pytest.mark.asyncio
async def test_inmemory_subscription_ends_after_lifespan():
    channel = InMemoryBroadcastChannel()
    messages = [m async for m in channel.subscribe("/topic/workflows", lifespan=0.05)]
    assert messages == []


@pytest.mark.asyncio
async def test_inmemory_durable_sink_keeps_order_per_topic():
    sink = InMemoryDurableSink()
    await sink.publish("workflow-events", "e-1", {"n": 1})
    await sink.publish("workflow-events", "e-1", {"n": 2})
    await sink.publish("other", "e-2", {"n": 3})

    assert sink.envelopes("workflow-events") == [{"n": 1}, {"n": 2}]
    assert sink.records["other"] == [("e-2", {"n": 3})]


def test_factories_follow_backend():
    assert isinstance(get_lock_store("inmemory"), InMemoryLockStore)
    assert isinstance(get_lock_store("redis"), RedisLockStore)
    assert isinstance(get_durable_sink("redis"), RedisDurableSink)
    assert isinstance(get_broadcast_channel("redis"), RedisBroadcastChannel)

    kafka_sink = get_durable_sink("kafka")
    assert isinstance(kafka_sink, KafkaDurableSink)
    assert kafka_sink.brokers == ["localhost:9092"]
    assert isinstance(get_broadcast_channel("kafka"), InMemoryBroadcastChannel)

    with pytest.raises(ValueError):
        get_lock_store("zookeeper")
    with pytest.raises(ValueError):
        get_durable_sink("sqs")


@pytest.mark.asyncio
async def test_inmemory_broadcast_history_is_bounded():
    channel = InMemoryBroadcastChannel(history_size=2)
    for n in range(5):
        await channel.broadcast("/topic/workflows", {"n": n})

    assert list(channel.history["/topic/workflows"]) == [{"n": 3}, {"n": 4}]
