"""SQLAlchemy implementation of the room store with a change feed."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterator, Sequence

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings, get_settings
from app.database import get_session_factory
from app.models import Room as RoomModel
from app.models import RoomParticipant
from app.monitoring.metrics import realtime_publish_errors_total
from nooke.errors import BackendError, Conflict
from nooke.realtime.transport import (
    BrokerConfig,
    ChangeFeed,
    ChangeHandler,
    LocalChangeFeed,
    RedisChangeFeed,
    Subscription,
    TransportUnavailableError,
)
from nooke.rooms.models import (
    DELETE,
    INSERT,
    PARTICIPANTS_TABLE,
    ROOMS_TABLE,
    UPDATE,
    ChangeEvent,
    Participant,
    Room,
    utcnow,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _room_from_model(model: RoomModel) -> Room:
    return Room(
        id=model.id,
        creator_id=model.creator_id,
        name=model.name,
        is_private=bool(model.is_private),
        is_active=bool(model.is_active),
        audio_active=bool(model.audio_active),
        created_at=_aware(model.created_at) or utcnow(),
        closed_at=_aware(model.closed_at),
    )


def _participant_from_model(model: RoomParticipant) -> Participant:
    return Participant(
        room_id=model.room_id,
        user_id=model.user_id,
        is_muted=bool(model.is_muted),
        joined_at=_aware(model.joined_at) or utcnow(),
    )


class SqlRoomStore:
    """Room store backed by the relational database.

    Every committed write is published on the change feed. Feed outages are
    logged and counted but never fail the write itself.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        feed: ChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed: ChangeFeed = feed if feed is not None else LocalChangeFeed()

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except IntegrityError as exc:
            session.rollback()
            raise Conflict(f"Conflicting room write: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Room store operation failed")
            raise BackendError("Room store is unavailable") from exc
        finally:
            session.close()

    async def _publish(self, event: ChangeEvent) -> None:
        try:
            await self._feed.publish(event)
        except TransportUnavailableError:
            realtime_publish_errors_total.labels(event.table, "unavailable").inc()
            logger.warning(
                "Change feed unavailable; event not delivered",
                extra={"table": event.table, "action": event.action},
            )

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    async def insert_room(
        self,
        *,
        creator_id: str,
        name: str,
        is_private: bool = False,
        audio_active: bool = False,
    ) -> Room:
        with self._session() as session:
            model = RoomModel(
                creator_id=creator_id,
                name=name,
                is_private=is_private,
                is_active=True,
                audio_active=audio_active,
                created_at=utcnow(),
            )
            session.add(model)
            session.commit()
            session.refresh(model)
            room = _room_from_model(model)
        await self._publish(ChangeEvent(ROOMS_TABLE, INSERT, record=room.to_payload()))
        return room

    async def get_room(self, room_id: str) -> Room | None:
        with self._session() as session:
            model = session.get(RoomModel, room_id)
            return _room_from_model(model) if model is not None else None

    async def list_rooms(self, *, active_only: bool = True) -> Sequence[Room]:
        stmt = select(RoomModel).order_by(RoomModel.created_at.desc())
        if active_only:
            stmt = stmt.where(RoomModel.is_active.is_(True))
        with self._session() as session:
            return [_room_from_model(model) for model in session.scalars(stmt)]

    async def close_room(
        self,
        room_id: str,
        *,
        closed_at: datetime | None = None,
        only_if_empty: bool = False,
    ) -> bool:
        stmt = update(RoomModel).where(
            RoomModel.id == room_id, RoomModel.is_active.is_(True)
        )
        if only_if_empty:
            stmt = stmt.where(
                ~exists().where(RoomParticipant.room_id == room_id)
            )
        stmt = stmt.values(is_active=False, closed_at=closed_at or utcnow())
        with self._session() as session:
            result = session.execute(stmt.execution_options(synchronize_session=False))
            session.commit()
            if not result.rowcount:
                return False
            model = session.get(RoomModel, room_id)
            room = _room_from_model(model) if model is not None else None
        if room is not None:
            old = room.to_payload()
            old.update(is_active=True, closed_at=None)
            await self._publish(
                ChangeEvent(ROOMS_TABLE, UPDATE, record=room.to_payload(), old_record=old)
            )
        return True

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------
    async def insert_participant(
        self, room_id: str, user_id: str, *, is_muted: bool = True
    ) -> Participant:
        with self._session() as session:
            model = RoomParticipant(
                room_id=room_id, user_id=user_id, is_muted=is_muted, joined_at=utcnow()
            )
            session.add(model)
            session.commit()
            session.refresh(model)
            participant = _participant_from_model(model)
        await self._publish(
            ChangeEvent(PARTICIPANTS_TABLE, INSERT, record=participant.to_payload())
        )
        return participant

    def _participant_stmt(self, room_id: str, user_id: str):
        return select(RoomParticipant).where(
            RoomParticipant.room_id == room_id, RoomParticipant.user_id == user_id
        )

    async def get_participant(self, room_id: str, user_id: str) -> Participant | None:
        with self._session() as session:
            model = session.scalars(self._participant_stmt(room_id, user_id)).first()
            return _participant_from_model(model) if model is not None else None

    async def list_participants(self, room_id: str) -> Sequence[Participant]:
        stmt = (
            select(RoomParticipant)
            .where(RoomParticipant.room_id == room_id)
            .order_by(RoomParticipant.joined_at, RoomParticipant.id)
        )
        with self._session() as session:
            return [_participant_from_model(model) for model in session.scalars(stmt)]

    async def count_participants(self, room_id: str) -> int:
        stmt = select(func.count()).select_from(RoomParticipant).where(
            RoomParticipant.room_id == room_id
        )
        with self._session() as session:
            return int(session.scalar(stmt) or 0)

    async def update_participant(
        self, room_id: str, user_id: str, *, is_muted: bool
    ) -> Participant | None:
        with self._session() as session:
            model = session.scalars(self._participant_stmt(room_id, user_id)).first()
            if model is None:
                return None
            old = _participant_from_model(model)
            if bool(model.is_muted) == is_muted:
                return old
            model.is_muted = is_muted
            session.commit()
            session.refresh(model)
            participant = _participant_from_model(model)
        await self._publish(
            ChangeEvent(
                PARTICIPANTS_TABLE,
                UPDATE,
                record=participant.to_payload(),
                old_record=old.to_payload(),
            )
        )
        return participant

    async def delete_participant(self, room_id: str, user_id: str) -> bool:
        with self._session() as session:
            model = session.scalars(self._participant_stmt(room_id, user_id)).first()
            if model is None:
                return False
            old = _participant_from_model(model)
            session.execute(
                delete(RoomParticipant).where(RoomParticipant.id == model.id)
            )
            session.commit()
        await self._publish(ChangeEvent(PARTICIPANTS_TABLE, DELETE, old_record=old.to_payload()))
        return True

    async def subscribe(
        self, table: str, handler: ChangeHandler, *, room_id: str | None = None
    ) -> Subscription:
        return await self._feed.subscribe(table, handler, room_id=room_id)


def build_change_feed(settings: Settings) -> ChangeFeed:
    if settings.realtime_feed_backend == "redis":
        return RedisChangeFeed(
            BrokerConfig(
                redis_url=settings.realtime_redis_url,
                redis_prefix=settings.realtime_namespace,
            )
        )
    return LocalChangeFeed()


def build_room_store(settings: Settings | None = None) -> SqlRoomStore:
    settings = settings or get_settings()
    return SqlRoomStore(get_session_factory(), build_change_feed(settings))


@lru_cache(maxsize=1)
def get_room_store() -> SqlRoomStore:
    """Return the process wide room store."""

    return build_room_store()


__all__ = [
    "SqlRoomStore",
    "build_change_feed",
    "build_room_store",
    "get_room_store",
]
