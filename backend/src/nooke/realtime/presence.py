"""Deduplicated, throttled mirror of room and participant state."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Sequence

from app.monitoring.metrics import presence_feed_bindings, presence_resyncs_total

from ..errors import BackendError
from ..events import EventEmitter
from ..rooms.models import PARTICIPANTS_TABLE, ROOMS_TABLE, ChangeEvent, Participant, Room
from .transport import Subscription, TransportUnavailableError

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ..rooms.store import RoomStore

logger = logging.getLogger(__name__)

ROOMS_CHANGED = "rooms_changed"
PARTICIPANTS_CHANGED = "participants_changed"

ROOMS_SCOPE = "rooms"
PARTICIPANTS_SCOPE = "participants"

DEFAULT_THROTTLE_SECONDS = 3.0


def _record_resync(scope: str, outcome: str) -> None:
    presence_resyncs_total.labels(scope, outcome).inc()


class FeedBinding:
    """Live feed handle owned by one user id."""

    def __init__(self, sync: "PresenceSync", user_id: str) -> None:
        self._sync = sync
        self._user_id = user_id
        self._subscriptions: List[Subscription] = []
        self._closed = False

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        await self._sync._release(self)

    async def _shutdown(self) -> None:
        self._closed = True
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception:
                logger.exception(
                    "Failed to close feed subscription", extra={"subscription": subscription.name}
                )


class PresenceSync:
    """Keeps a local snapshot of rooms and the watched room's participants.

    At most one :class:`FeedBinding` is live at a time. Change events trigger
    resyncs that are throttled per scope: the first event in a window starts a
    resync, later events within ``throttle_seconds`` are dropped.
    """

    def __init__(
        self,
        store: RoomStore,
        *,
        throttle_seconds: float = DEFAULT_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.events = EventEmitter()
        self._store = store
        self._throttle = max(0.0, float(throttle_seconds))
        self._clock = clock
        self._lock = asyncio.Lock()
        self._binding: FeedBinding | None = None
        self._participants_subscription: Subscription | None = None
        self._watched_room: str | None = None
        self._rooms: List[Room] = []
        self._participants: Dict[str, List[Participant]] = {}
        self._last_resync: Dict[str, float] = {}
        self._resync_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    @property
    def binding(self) -> FeedBinding | None:
        return self._binding

    @property
    def watched_room(self) -> str | None:
        return self._watched_room

    @property
    def rooms(self) -> Sequence[Room]:
        return tuple(self._rooms)

    def participants(self, room_id: str | None = None) -> Sequence[Participant]:
        target = room_id or self._watched_room
        if target is None:
            return ()
        return tuple(self._participants.get(target, ()))

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------
    async def bind(self, user_id: str) -> FeedBinding:
        """Return the live binding for ``user_id``, opening it if needed."""

        async with self._lock:
            current = self._binding
            if current is not None and not current.closed:
                if current.user_id == user_id:
                    return current
                logger.info(
                    "Replacing presence binding",
                    extra={"previous_user_id": current.user_id, "user_id": user_id},
                )
                await self._teardown_locked()

            binding = FeedBinding(self, user_id)
            try:
                binding._subscriptions.append(
                    await self._store.subscribe(ROOMS_TABLE, self._on_room_change)
                )
                if self._watched_room is not None:
                    await self._subscribe_participants_locked(binding, self._watched_room)
            except (BackendError, TransportUnavailableError):
                await binding._shutdown()
                self._participants_subscription = None
                raise
            self._binding = binding
            presence_feed_bindings.inc()
            logger.info("Presence feed bound", extra={"user_id": user_id})

        await self._resync_now(ROOMS_SCOPE)
        return binding

    async def unbind(self) -> None:
        async with self._lock:
            await self._teardown_locked()

    async def _release(self, binding: FeedBinding) -> None:
        async with self._lock:
            if binding is self._binding:
                await self._teardown_locked()

    async def _teardown_locked(self) -> None:
        binding, self._binding = self._binding, None
        self._participants_subscription = None
        pending = list(self._resync_tasks)
        self._resync_tasks = set()
        self._last_resync.clear()
        try:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            if binding is not None:
                await binding._shutdown()
                presence_feed_bindings.dec()
                logger.info("Presence feed released", extra={"user_id": binding.user_id})

    async def watch_room(self, room_id: str | None) -> None:
        """Follow participant changes of ``room_id`` (``None`` stops)."""

        async with self._lock:
            if room_id == self._watched_room:
                return
            previous = self._watched_room
            self._watched_room = room_id
            if previous is not None:
                self._last_resync.pop(f"{PARTICIPANTS_SCOPE}:{previous}", None)
                self._participants.pop(previous, None)
            subscription, self._participants_subscription = self._participants_subscription, None
            binding = self._binding
            if subscription is not None:
                if binding is not None and subscription in binding._subscriptions:
                    binding._subscriptions.remove(subscription)
                await subscription.close()
            if binding is not None and room_id is not None:
                await self._subscribe_participants_locked(binding, room_id)

        if room_id is not None:
            await self._resync_now(f"{PARTICIPANTS_SCOPE}:{room_id}")

    async def _subscribe_participants_locked(self, binding: FeedBinding, room_id: str) -> None:
        subscription = await self._store.subscribe(
            PARTICIPANTS_TABLE, self._on_participant_change, room_id=room_id
        )
        binding._subscriptions.append(subscription)
        self._participants_subscription = subscription

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------
    async def refresh_rooms(self) -> Sequence[Room]:
        rooms = await self._store.list_rooms(active_only=True)
        self._rooms = sorted(rooms, key=lambda item: item.created_at, reverse=True)
        self.events.emit(ROOMS_CHANGED, self.rooms)
        return self.rooms

    async def refresh_participants(self, room_id: str | None = None) -> Sequence[Participant]:
        target = room_id or self._watched_room
        if target is None:
            return ()
        participants = list(await self._store.list_participants(target))
        self._participants[target] = participants
        self.events.emit(PARTICIPANTS_CHANGED, target, tuple(participants))
        return tuple(participants)

    async def _on_room_change(self, event: ChangeEvent) -> None:
        self._request_resync(ROOMS_SCOPE)

    async def _on_participant_change(self, event: ChangeEvent) -> None:
        room_id = event.room_id
        if room_id is None or room_id != self._watched_room:
            return
        self._request_resync(f"{PARTICIPANTS_SCOPE}:{room_id}")

    def _request_resync(self, scope: str) -> None:
        if self._binding is None:
            return
        kind = scope.split(":", 1)[0]
        now = self._clock()
        last = self._last_resync.get(scope)
        if last is not None and now - last < self._throttle:
            _record_resync(kind, "dropped")
            return
        self._last_resync[scope] = now
        task = asyncio.create_task(self._run_resync(scope), name=f"presence-resync-{scope}")
        self._resync_tasks.add(task)
        task.add_done_callback(lambda finished: self._resync_tasks.discard(finished))

    async def _resync_now(self, scope: str) -> None:
        self._last_resync[scope] = self._clock()
        await self._run_resync(scope)

    async def _run_resync(self, scope: str) -> None:
        kind, _, room_id = scope.partition(":")
        _record_resync(kind, "started")
        try:
            if kind == ROOMS_SCOPE:
                await self.refresh_rooms()
            elif room_id == self._watched_room:
                await self.refresh_participants(room_id)
        except BackendError:
            _record_resync(kind, "failed")
            logger.warning(
                "Presence resync failed; keeping previous snapshot",
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"scope": scope},
            )

    async def pending_resyncs(self) -> None:
        """Wait for scheduled resyncs to finish."""

        while self._resync_tasks:
            await asyncio.gather(*list(self._resync_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.unbind()
        await self.events.drain()


__all__ = [
    "DEFAULT_THROTTLE_SECONDS",
    "FeedBinding",
    "PARTICIPANTS_CHANGED",
    "PresenceSync",
    "ROOMS_CHANGED",
]
