"""Contract of the remote room store consumed by the coordination core."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from ..realtime.transport import ChangeHandler, Subscription
from .models import Participant, Room


class RoomStore(Protocol):
    """Durable record of rooms and participants with a push change feed.

    Implementations raise :class:`nooke.errors.BackendError` for storage
    failures and :class:`nooke.errors.Conflict` when a participant row for the
    same ``(room_id, user_id)`` already exists.
    """

    async def insert_room(
        self,
        *,
        creator_id: str,
        name: str,
        is_private: bool = False,
        audio_active: bool = False,
    ) -> Room:
        ...

    async def get_room(self, room_id: str) -> Room | None:
        ...

    async def list_rooms(self, *, active_only: bool = True) -> Sequence[Room]:
        ...

    async def close_room(
        self,
        room_id: str,
        *,
        closed_at: datetime | None = None,
        only_if_empty: bool = False,
    ) -> bool:
        """Mark an active room closed; return ``False`` when nothing changed."""

    async def insert_participant(
        self, room_id: str, user_id: str, *, is_muted: bool = True
    ) -> Participant:
        ...

    async def get_participant(self, room_id: str, user_id: str) -> Participant | None:
        ...

    async def list_participants(self, room_id: str) -> Sequence[Participant]:
        ...

    async def count_participants(self, room_id: str) -> int:
        ...

    async def update_participant(
        self, room_id: str, user_id: str, *, is_muted: bool
    ) -> Participant | None:
        ...

    async def delete_participant(self, room_id: str, user_id: str) -> bool:
        """Remove a participant row; return ``False`` if it did not exist."""

    async def subscribe(
        self, table: str, handler: ChangeHandler, *, room_id: str | None = None
    ) -> Subscription:
        ...


__all__ = ["RoomStore"]
