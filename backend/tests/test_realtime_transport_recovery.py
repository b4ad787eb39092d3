from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from app.monitoring.metrics import realtime_transport_restarts_total
from nooke.realtime.transport import (
    BrokerConfig,
    RedisChangeFeed,
    TransportUnavailableError,
)
from nooke.rooms.models import INSERT, PARTICIPANTS_TABLE, ChangeEvent


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.unregister(channel, self)
            self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)
        self._channels.clear()

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedis:
    def __init__(self) -> None:
        self.online = True
        self._pubsubs: dict[str, set[FakePubSub]] = {}

    async def ping(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online:
            raise ConnectionError("offline")
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def close(self) -> None:
        self.online = False
        for subscribers in list(self._pubsubs.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)
        self._pubsubs.clear()

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        subscribers = self._pubsubs.get(channel)
        if not subscribers:
            return
        subscribers.discard(pubsub)
        if not subscribers:
            self._pubsubs.pop(channel, None)

    def fail(self) -> None:
        self.online = False
        for subscribers in list(self._pubsubs.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)


class FakeRedisFactory:
    def __init__(self) -> None:
        self.instances: list[FakeRedis] = []

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis()
        self.instances.append(client)
        return client


def participant_event(room_id: str, user_id: str) -> ChangeEvent:
    return ChangeEvent(
        PARTICIPANTS_TABLE,
        INSERT,
        record={"room_id": room_id, "user_id": user_id, "is_muted": True},
    )


@pytest.fixture()
def fake_redis(monkeypatch) -> FakeRedisFactory:
    factory = FakeRedisFactory()
    monkeypatch.setattr(
        "nooke.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=factory.from_url),
    )
    monkeypatch.setattr("nooke.realtime.transport._REDIS_RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("nooke.realtime.transport._REDIS_RECOVERY_MAX_DELAY", 0.05)
    return factory


@pytest.mark.anyio("asyncio")
async def test_redis_feed_filters_events_by_room(fake_redis):
    feed = RedisChangeFeed(BrokerConfig(redis_url="redis://fake", redis_prefix="test"))
    await feed.start()

    received: list[ChangeEvent] = []
    received_event = asyncio.Event()

    async def handler(event: ChangeEvent) -> None:
        received.append(event)
        received_event.set()

    subscription = await feed.subscribe(PARTICIPANTS_TABLE, handler, room_id="room-1")
    assert subscription.name == "test.room_participants:room-1"

    await feed.publish(participant_event("room-2", "carol"))
    await feed.publish(participant_event("room-1", "bob"))
    await asyncio.wait_for(received_event.wait(), timeout=1.0)

    assert [(event.room_id, event.record["user_id"]) for event in received] == [("room-1", "bob")]

    await subscription.close()
    await feed.stop()


@pytest.mark.anyio("asyncio")
async def test_redis_feed_recovers_after_disconnect(fake_redis):
    feed = RedisChangeFeed(BrokerConfig(redis_url="redis://fake"))
    await feed.start()

    received: list[ChangeEvent] = []
    received_event = asyncio.Event()

    async def handler(event: ChangeEvent) -> None:
        received.append(event)
        received_event.set()

    subscription = await feed.subscribe(PARTICIPANTS_TABLE, handler)

    await feed.publish(participant_event("room-1", "alice"))
    await asyncio.wait_for(received_event.wait(), timeout=1.0)
    received_event.clear()
    received.clear()

    first_client = fake_redis.instances[0]
    first_client.fail()
    await asyncio.sleep(0)

    with pytest.raises(TransportUnavailableError):
        await feed.publish(participant_event("room-1", "bob"))

    async def wait_for_instances(expected: int) -> None:
        for _ in range(50):
            if len(fake_redis.instances) >= expected:
                return
            await asyncio.sleep(0.02)
        raise AssertionError("Redis client was not recreated")

    await wait_for_instances(2)

    async def publish_with_retry(event: ChangeEvent) -> None:
        for _ in range(20):
            try:
                await feed.publish(event)
                return
            except TransportUnavailableError:
                await asyncio.sleep(0.05)
        raise AssertionError("Redis change feed did not recover in time")

    await publish_with_retry(participant_event("room-1", "carol"))
    await asyncio.wait_for(received_event.wait(), timeout=1.5)

    assert [event.record["user_id"] for event in received] == ["carol"]
    restarts = realtime_transport_restarts_total.value(
        "redis", "publish_failed"
    ) + realtime_transport_restarts_total.value("redis", "reader_stopped")
    assert restarts >= 1.0

    await subscription.close()
    await feed.stop()


@pytest.mark.anyio("asyncio")
async def test_redis_feed_discards_malformed_payloads(fake_redis):
    feed = RedisChangeFeed(BrokerConfig(redis_url="redis://fake"))
    await feed.start()
    received: list[ChangeEvent] = []
    received_event = asyncio.Event()

    async def handler(event: ChangeEvent) -> None:
        received.append(event)
        received_event.set()

    subscription = await feed.subscribe(PARTICIPANTS_TABLE, handler)
    client = fake_redis.instances[0]
    await client.publish("nooke.realtime.room_participants", "not json")
    await client.publish(
        "nooke.realtime.room_participants", '{"table": "room_participants", "action": "TRUNCATE"}'
    )
    await feed.publish(participant_event("room-1", "alice"))
    await asyncio.wait_for(received_event.wait(), timeout=1.0)

    assert [event.record["user_id"] for event in received] == ["alice"]
    await subscription.close()
    await feed.stop()


@pytest.mark.anyio("asyncio")
async def test_unconfigured_redis_feed_is_unavailable():
    feed = RedisChangeFeed(BrokerConfig(redis_url=None))

    async def handler(event: ChangeEvent) -> None:  # pragma: no cover - never delivered
        raise AssertionError("unexpected delivery")

    with pytest.raises(TransportUnavailableError):
        await feed.publish(participant_event("room-1", "alice"))
    with pytest.raises(TransportUnavailableError):
        await feed.subscribe(PARTICIPANTS_TABLE, handler)
