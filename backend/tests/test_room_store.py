from __future__ import annotations

import logging
from datetime import timezone

import pytest
from sqlalchemy import select

from app.models import Room as RoomModel
from app.monitoring.metrics import realtime_publish_errors_total
from app.services.room_store import SqlRoomStore
from nooke.errors import Conflict
from nooke.realtime.transport import BrokerConfig, RedisChangeFeed
from nooke.rooms.models import (
    DELETE,
    INSERT,
    PARTICIPANTS_TABLE,
    ROOMS_TABLE,
    UPDATE,
    ChangeEvent,
)


class FailingRedis:
    async def publish(self, channel: str, payload: str) -> None:  # pragma: no cover - used in tests
        raise ConnectionError("boom")


async def record_changes(room_store) -> list[ChangeEvent]:
    events: list[ChangeEvent] = []

    async def handler(event: ChangeEvent) -> None:
        events.append(event)

    await room_store.subscribe(ROOMS_TABLE, handler)
    await room_store.subscribe(PARTICIPANTS_TABLE, handler)
    return events


@pytest.mark.anyio("asyncio")
async def test_committed_writes_are_published_in_order(room_store):
    events = await record_changes(room_store)

    room = await room_store.insert_room(creator_id="alice", name="Study Hall")
    await room_store.insert_participant(room.id, "alice")
    await room_store.update_participant(room.id, "alice", is_muted=False)
    await room_store.delete_participant(room.id, "alice")
    await room_store.close_room(room.id)

    assert [(event.table, event.action) for event in events] == [
        (ROOMS_TABLE, INSERT),
        (PARTICIPANTS_TABLE, INSERT),
        (PARTICIPANTS_TABLE, UPDATE),
        (PARTICIPANTS_TABLE, DELETE),
        (ROOMS_TABLE, UPDATE),
    ]
    assert all(event.room_id == room.id for event in events)
    assert events[2].old_record["is_muted"] is True
    assert events[2].record["is_muted"] is False
    assert events[4].record["is_active"] is False
    assert events[4].old_record["is_active"] is True


@pytest.mark.anyio("asyncio")
async def test_unchanged_mute_flag_is_not_republished(room_store):
    room = await room_store.insert_room(creator_id="alice", name="Study Hall")
    await room_store.insert_participant(room.id, "alice")
    events = await record_changes(room_store)

    participant = await room_store.update_participant(room.id, "alice", is_muted=True)

    assert participant.is_muted is True
    assert events == []


@pytest.mark.anyio("asyncio")
async def test_conditional_close_leaves_occupied_room_open(room_store):
    room = await room_store.insert_room(creator_id="alice", name="Study Hall")
    await room_store.insert_participant(room.id, "bob")

    assert await room_store.close_room(room.id, only_if_empty=True) is False
    assert (await room_store.get_room(room.id)).is_active is True

    await room_store.delete_participant(room.id, "bob")
    assert await room_store.close_room(room.id, only_if_empty=True) is True
    assert await room_store.close_room(room.id) is False

    closed = await room_store.get_room(room.id)
    assert closed.is_active is False
    assert closed.closed_at is not None
    assert closed.closed_at.tzinfo is timezone.utc


@pytest.mark.anyio("asyncio")
async def test_close_leaves_other_rooms_untouched(room_store, db_session):
    target = await room_store.insert_room(creator_id="alice", name="Target")
    other = await room_store.insert_room(creator_id="bob", name="Other")

    await room_store.close_room(target.id, only_if_empty=True)

    active = db_session.scalars(select(RoomModel.id).where(RoomModel.is_active.is_(True))).all()
    assert active == [other.id]


@pytest.mark.anyio("asyncio")
async def test_duplicate_participant_raises_conflict(room_store):
    room = await room_store.insert_room(creator_id="alice", name="Study Hall")
    await room_store.insert_participant(room.id, "alice")

    with pytest.raises(Conflict):
        await room_store.insert_participant(room.id, "alice")

    assert await room_store.count_participants(room.id) == 1


@pytest.mark.anyio("asyncio")
async def test_missing_rows_are_reported_not_raised(room_store):
    assert await room_store.get_room("missing") is None
    assert await room_store.get_participant("missing", "alice") is None
    assert await room_store.update_participant("missing", "alice", is_muted=False) is None
    assert await room_store.delete_participant("missing", "alice") is False
    assert await room_store.close_room("missing") is False


@pytest.mark.anyio("asyncio")
async def test_list_rooms_can_include_closed_rooms(room_store):
    open_room = await room_store.insert_room(creator_id="alice", name="Open")
    closed_room = await room_store.insert_room(creator_id="alice", name="Closed")
    await room_store.close_room(closed_room.id)

    active = await room_store.list_rooms()
    everything = await room_store.list_rooms(active_only=False)

    assert [room.id for room in active] == [open_room.id]
    assert {room.id for room in everything} == {open_room.id, closed_room.id}


@pytest.mark.anyio("asyncio")
async def test_publish_failure_logs_warning_and_keeps_write(
    session_factory, monkeypatch, caplog
):
    monkeypatch.setattr("nooke.realtime.transport.redis_asyncio", None)
    feed = RedisChangeFeed(BrokerConfig(redis_url="redis://example"))
    feed._redis = FailingRedis()  # type: ignore[assignment]
    store = SqlRoomStore(session_factory, feed)

    with caplog.at_level(logging.WARNING):
        room = await store.insert_room(creator_id="alice", name="Study Hall")
        await store.insert_participant(room.id, "alice")

    assert await store.count_participants(room.id) == 1
    assert any(
        record.levelno == logging.WARNING and "Change feed unavailable" in record.getMessage()
        for record in caplog.records
    ), "Publish failure should be logged as a warning"
    assert realtime_publish_errors_total.value(ROOMS_TABLE, "unavailable") == 1.0
    assert realtime_publish_errors_total.value(PARTICIPANTS_TABLE, "unavailable") == 1.0


@pytest.mark.anyio("asyncio")
async def test_unconfigured_feed_does_not_fail_writes(session_factory):
    store = SqlRoomStore(session_factory, RedisChangeFeed(BrokerConfig(redis_url=None)))

    room = await store.insert_room(creator_id="alice", name="Study Hall")

    assert (await store.get_room(room.id)).name == "Study Hall"
    assert realtime_publish_errors_total.value(ROOMS_TABLE, "unavailable") == 1.0
