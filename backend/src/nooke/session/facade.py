"""Single entry point binding a consumer to its current room."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Protocol, Sequence

from ..errors import BackendError, NotAuthenticated, NotFound
from ..events import EventEmitter
from ..identity import Identity
from ..realtime.presence import PresenceSync
from ..rooms.lifecycle import RoomLifecycleManager
from ..rooms.models import Participant, Room
from ..voice import signaling
from ..voice.controller import AudioSessionController
from ..voice.signaling import AudioConnectionState

logger = logging.getLogger(__name__)

ROOM_CHANGED = "room_changed"
LAST_ROOM_HINT = "nooke:last-room:{user_id}"


class HintStore(Protocol):
    def set(self, key: str, value: str, ttl_seconds: int = 0) -> None:
        ...

    def get(self, key: str) -> str | None:
        ...

    def delete(self, key: str) -> None:
        ...


class SessionFacade:
    """Binds room membership, presence and audio to one current room.

    Binding joins the room and follows its participants; audio is only
    connected on an explicit :meth:`unmute`. Leaving the room always runs
    ``leave_room`` and then ``disconnect``, both even if the first one fails.
    Emits ``room_changed(room_id)`` on :attr:`events`.
    """

    def __init__(
        self,
        rooms: RoomLifecycleManager,
        presence: PresenceSync,
        audio: AudioSessionController,
        identity: Callable[[], Identity | None],
        *,
        hints: HintStore | None = None,
        hint_ttl_seconds: int = 0,
    ) -> None:
        self.events = EventEmitter()
        self._rooms = rooms
        self._presence = presence
        self._audio = audio
        self._identity = identity
        self._hints = hints
        self._hint_ttl = hint_ttl_seconds
        self._lock = asyncio.Lock()
        self._room_id: str | None = None
        self._unsubscribers: List[Callable[[], None]] = [
            audio.events.on(signaling.SILENCE_TIMEOUT, self._on_silence_timeout),
        ]

    # ------------------------------------------------------------------
    # State exposed to the UI
    # ------------------------------------------------------------------
    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def room(self) -> Room | None:
        return self._rooms.current_room if self._room_id is not None else None

    @property
    def participants(self) -> Sequence[Participant]:
        if self._room_id is None:
            return ()
        return self._presence.participants(self._room_id)

    @property
    def rooms(self) -> Sequence[Room]:
        return self._presence.rooms

    @property
    def audio_state(self) -> AudioConnectionState:
        return self._audio.state

    @property
    def speaking(self) -> frozenset[str]:
        return self._audio.speaking

    @property
    def microphone_enabled(self) -> bool:
        return self._audio.microphone_enabled

    @property
    def presence_events(self) -> EventEmitter:
        return self._presence.events

    @property
    def audio_events(self) -> EventEmitter:
        return self._audio.events

    def last_room_hint(self) -> str | None:
        identity = self._identity()
        if self._hints is None or identity is None:
            return None
        return self._hints.get(LAST_ROOM_HINT.format(user_id=identity.user_id))

    # ------------------------------------------------------------------
    # Room binding
    # ------------------------------------------------------------------
    async def bind(self, room_id: str) -> Room:
        """Join ``room_id`` and follow its participants."""

        async with self._lock:
            if room_id == self._room_id and self._rooms.current_room is not None:
                return self._rooms.current_room
            await self._release_previous_locked()
            room = await self._rooms.join_room(room_id)
            await self._attach_locked(room)
            return room

    async def create_room(self, name: str | None = None, *, is_private: bool = False) -> Room:
        async with self._lock:
            await self._release_previous_locked()
            room = await self._rooms.create_room(name, is_private=is_private)
            await self._attach_locked(room)
            return room

    async def unbind(self) -> None:
        """Leave the current room and end any audio session."""

        async with self._lock:
            await self._teardown_locked()

    async def close(self) -> None:
        """Unbind and release the presence feed (sign out)."""

        try:
            await self.unbind()
        finally:
            await self._presence.unbind()

    async def _release_previous_locked(self) -> None:
        if self._room_id is None:
            return
        previous = self._room_id
        try:
            await self._teardown_locked()
        except Exception:
            logger.warning(
                "Teardown of previous room failed; continuing with rebind",
                exc_info=True,
                extra={"room_id": previous},
            )

    async def _attach_locked(self, room: Room) -> None:
        identity = self._require_identity()
        self._room_id = room.id
        self._remember(identity, room.id)
        self.events.emit(ROOM_CHANGED, room.id)
        await self._presence.bind(identity.user_id)
        await self._presence.watch_room(room.id)
        logger.info("Session bound to room", extra={"room_id": room.id, "user_id": identity.user_id})

    async def _teardown_locked(self) -> None:
        room_id, self._room_id = self._room_id, None
        errors: List[BaseException] = []
        try:
            await self._rooms.leave_room()
        except Exception as exc:
            errors.append(exc)
            logger.warning("Leaving room failed", exc_info=True, extra={"room_id": room_id})
        try:
            await self._audio.disconnect()
        except Exception as exc:
            errors.append(exc)
            logger.warning("Disconnecting audio failed", exc_info=True, extra={"room_id": room_id})
        try:
            await self._presence.watch_room(None)
        except Exception:
            logger.warning("Releasing participant feed failed", exc_info=True)

        identity = self._identity()
        if identity is not None:
            self._forget(identity)
        if room_id is not None:
            self.events.emit(ROOM_CHANGED, None)
            logger.info("Session left room", extra={"room_id": room_id})
        if errors:
            raise errors[0]

    # ------------------------------------------------------------------
    # Audio intents
    # ------------------------------------------------------------------
    async def unmute(self) -> bool:
        """Connect audio for the bound room or re-enable the microphone."""

        if self._room_id is None:
            raise NotFound("Bind a room before enabling audio")
        if self._audio.state in (
            AudioConnectionState.CONNECTED,
            AudioConnectionState.RECONNECTING,
        ):
            enabled = await self._audio.set_local_microphone_enabled(True)
        else:
            enabled = await self._audio.connect(self._room_id)
        if enabled:
            await self._mirror_mute(False)
        return enabled

    async def mute(self) -> bool:
        changed = await self._audio.set_local_microphone_enabled(False)
        if changed:
            await self._mirror_mute(True)
        return changed

    async def disconnect_audio(self) -> None:
        was_live = self._audio.busy
        await self._audio.disconnect()
        if was_live:
            await self._mirror_mute(True)

    async def _mirror_mute(self, muted: bool) -> None:
        try:
            await self._rooms.set_muted(muted)
        except BackendError:
            logger.warning(
                "Could not store mute state",
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"room_id": self._room_id, "muted": muted},
            )

    async def _on_silence_timeout(self) -> None:
        logger.info("Disconnecting audio after silence", extra={"room_id": self._room_id})
        await self.disconnect_audio()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_identity(self) -> Identity:
        identity = self._identity()
        if identity is None:
            raise NotAuthenticated("Sign in to join rooms")
        return identity

    def _remember(self, identity: Identity, room_id: str) -> None:
        if self._hints is None:
            return
        try:
            self._hints.set(
                LAST_ROOM_HINT.format(user_id=identity.user_id), room_id, self._hint_ttl
            )
        except Exception:
            logger.debug("Hint store unavailable", exc_info=True)

    def _forget(self, identity: Identity) -> None:
        if self._hints is None:
            return
        try:
            self._hints.delete(LAST_ROOM_HINT.format(user_id=identity.user_id))
        except Exception:
            logger.debug("Hint store unavailable", exc_info=True)

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def __aenter__(self) -> "SessionFacade":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = ["HintStore", "LAST_ROOM_HINT", "ROOM_CHANGED", "SessionFacade"]
