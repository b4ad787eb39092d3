"""Create, join and leave rooms on behalf of the signed-in user."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from app.monitoring.metrics import room_lifecycle_total

from ..errors import AlreadyClosed, BackendError, Conflict, NotAuthenticated, NotFound
from ..identity import Identity
from .models import Participant, Room
from .store import RoomStore

logger = logging.getLogger(__name__)

IdentityProvider = Callable[[], Identity | None]


def _record(action: str) -> None:
    room_lifecycle_total.labels(action).inc()


def default_room_name(identity: Identity) -> str:
    return f"{identity.label}'s Room"


class RoomLifecycleManager:
    """Room membership of one user, bound to at most one current room.

    Joining is idempotent and the last participant to leave closes the room.
    With ``close_requires_creator`` only the creator's departure may close it.
    """

    def __init__(
        self,
        store: RoomStore,
        identity: IdentityProvider,
        *,
        close_requires_creator: bool = False,
    ) -> None:
        self._store = store
        self._identity = identity
        self._close_requires_creator = close_requires_creator
        self._current: Room | None = None

    @property
    def current_room(self) -> Room | None:
        return self._current

    @property
    def current_room_id(self) -> str | None:
        return self._current.id if self._current is not None else None

    def _require_identity(self) -> Identity:
        identity = self._identity()
        if identity is None or not identity.user_id:
            raise NotAuthenticated("Sign in to manage rooms")
        return identity

    async def create_room(self, name: str | None = None, *, is_private: bool = False) -> Room:
        identity = self._require_identity()
        room_name = (name or "").strip() or default_room_name(identity)
        room = await self._store.insert_room(
            creator_id=identity.user_id,
            name=room_name,
            is_private=is_private,
            audio_active=False,
        )
        try:
            await self._store.insert_participant(room.id, identity.user_id, is_muted=True)
        except BackendError as exc:
            await self._compensate_orphan(room)
            raise BackendError(f"Room {room.id} created but joining it failed") from exc

        self._current = room
        _record("create")
        logger.info(
            "Room created",
            extra={"room_id": room.id, "user_id": identity.user_id, "is_private": is_private},
        )
        return room

    async def _compensate_orphan(self, room: Room) -> None:
        try:
            await self._store.close_room(room.id)
        except BackendError:
            logger.exception("Failed to close orphaned room", extra={"room_id": room.id})
            return
        _record("orphan_closed")
        logger.warning("Closed room whose creator could not join", extra={"room_id": room.id})

    async def join_room(self, room_id: str) -> Room:
        identity = self._require_identity()
        room = await self._store.get_room(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} does not exist")
        if not room.is_active:
            raise AlreadyClosed(f"Room {room_id} is closed")

        existing = await self._store.get_participant(room_id, identity.user_id)
        if existing is None:
            try:
                await self._store.insert_participant(room_id, identity.user_id, is_muted=True)
            except Conflict:
                logger.debug(
                    "Concurrent join already inserted participant",
                    extra={"room_id": room_id, "user_id": identity.user_id},
                )
            else:
                _record("join")
                logger.info(
                    "Joined room", extra={"room_id": room_id, "user_id": identity.user_id}
                )

        self._current = room
        return room

    async def leave_room(self) -> bool:
        """Leave the bound room; returns ``True`` when this call closed it."""

        room = self._current
        if room is None:
            return False
        identity = self._require_identity()
        removed = await self._store.delete_participant(room.id, identity.user_id)
        self._current = None
        if removed:
            _record("leave")
            logger.info("Left room", extra={"room_id": room.id, "user_id": identity.user_id})

        remaining = await self._store.count_participants(room.id)
        if remaining > 0:
            return False
        if self._close_requires_creator and room.creator_id != identity.user_id:
            logger.debug(
                "Room empty but caller is not the creator; leaving it open",
                extra={"room_id": room.id},
            )
            return False

        closed = await self._store.close_room(room.id, only_if_empty=True)
        if closed:
            _record("close")
            logger.info("Closed empty room", extra={"room_id": room.id})
        return closed

    async def set_muted(self, muted: bool) -> Participant | None:
        room = self._current
        if room is None:
            return None
        identity = self._require_identity()
        participant = await self._store.update_participant(
            room.id, identity.user_id, is_muted=muted
        )
        if participant is None:
            logger.warning(
                "Mute change for missing participant row",
                extra={"room_id": room.id, "user_id": identity.user_id},
            )
        return participant

    async def toggle_mute(self) -> bool:
        """Flip the caller's mute flag and return the new value."""

        room = self._current
        if room is None:
            raise NotFound("Not in a room")
        identity = self._require_identity()
        participant = await self._store.get_participant(room.id, identity.user_id)
        if participant is None:
            raise NotFound(f"Not a participant of room {room.id}")
        updated = await self.set_muted(not participant.is_muted)
        return updated.is_muted if updated is not None else not participant.is_muted

    async def list_active_rooms(self) -> Sequence[Room]:
        rooms = await self._store.list_rooms(active_only=True)
        return sorted(rooms, key=lambda item: item.created_at, reverse=True)

    async def list_participants(self, room_id: str | None = None) -> Sequence[Participant]:
        target = room_id or self.current_room_id
        if target is None:
            return []
        return await self._store.list_participants(target)


__all__ = ["RoomLifecycleManager", "IdentityProvider", "default_room_name"]
