"""Change feed transports for room and participant row events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Protocol, TYPE_CHECKING

try:  # pragma: no cover - optional dependency
    import redis.asyncio as redis_asyncio
    from redis.exceptions import RedisError
except Exception:  # pragma: no cover - fallback when Redis is unavailable
    redis_asyncio = None  # type: ignore[assignment]
    RedisError = None  # type: ignore[assignment]

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any  # type: ignore[assignment,misc]

from app.monitoring.metrics import realtime_transport_restarts_total

from ..rooms.models import ChangeEvent


logger = logging.getLogger(__name__)

if RedisError is not None:
    _REDIS_PUBLISH_ERRORS: tuple[type[BaseException], ...] = (
        RedisError,
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
    )
else:
    _REDIS_PUBLISH_ERRORS = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
    )


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """Handle returned when subscribing to a change feed."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class TransportUnavailableError(RuntimeError):
    """Raised when publishing to a feed backend that is not configured."""


class ChangeFeed(Protocol):
    """Push channel for row changes keyed by table and optional room filter."""

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every matching subscriber."""

    async def subscribe(
        self, table: str, handler: ChangeHandler, *, room_id: str | None = None
    ) -> Subscription:
        """Register ``handler`` for changes of ``table`` (optionally one room)."""


def _matches(event: ChangeEvent, room_id: str | None) -> bool:
    return room_id is None or event.room_id == room_id


@dataclass(slots=True)
class _LocalSubscriber:
    handler: ChangeHandler
    room_id: str | None


class LocalChangeFeed:
    """In-process change feed delivering events in publish order."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[_LocalSubscriber]] = defaultdict(list)

    def subscriber_count(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._subscribers.get(table, ()))
        return sum(len(items) for items in self._subscribers.values())

    async def publish(self, event: ChangeEvent) -> None:
        for subscriber in list(self._subscribers.get(event.table, ())):
            if not _matches(event, subscriber.room_id):
                continue
            try:
                await subscriber.handler(event)
            except Exception:
                logger.exception(
                    "Change handler failed", extra={"table": event.table, "action": event.action}
                )

    async def subscribe(
        self, table: str, handler: ChangeHandler, *, room_id: str | None = None
    ) -> Subscription:
        subscriber = _LocalSubscriber(handler=handler, room_id=room_id)
        self._subscribers[table].append(subscriber)

        async def cleanup() -> None:
            subscribers = self._subscribers.get(table)
            if not subscribers:
                return
            with contextlib.suppress(ValueError):
                subscribers.remove(subscriber)
            if not subscribers:
                self._subscribers.pop(table, None)

        name = f"{table}:{room_id}" if room_id else table
        return Subscription(name, cleanup)


@dataclass(slots=True)
class BrokerConfig:
    """Configuration used for wiring the Redis change feed."""

    redis_url: str | None
    redis_prefix: str = "nooke.realtime"


@dataclass(slots=True)
class _RedisSubscriptionState:
    """Internal bookkeeping for Redis subscriptions."""

    table: str
    channel: str
    handler: ChangeHandler
    room_id: str | None = None
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


class RedisChangeFeed:
    """Change feed built on Redis pub/sub with automatic recovery."""

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: RedisClient | None = None
        self._redis_states: list[_RedisSubscriptionState] = []
        self._redis_recovery_lock = asyncio.Lock()
        self._redis_recovery_task: asyncio.Task[Any] | None = None
        self._redis_warning_logged = False

    @property
    def started(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if not self._config.redis_url:
            return
        if redis_asyncio is None:
            if not self._redis_warning_logged:
                logger.info(
                    "Redis realtime URL configured but 'redis' is not installed; "
                    "install the 'realtime' extra to enable it",
                )
                self._redis_warning_logged = True
            return
        if self._redis is None:
            await self._connect_redis()

    async def stop(self) -> None:
        for state in list(self._redis_states):
            if state.subscription is not None:
                await state.subscription.close()
        self._redis_states.clear()
        if self._redis_recovery_task is not None:
            self._redis_recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._redis_recovery_task
            self._redis_recovery_task = None
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _connect_redis(self) -> None:
        if self._config.redis_url is None or redis_asyncio is None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except OSError:
            logger.exception("Failed to connect to Redis change feed")
            await client.close()
            raise
        self._redis = client

    async def _pause_redis_state(self, state: _RedisSubscriptionState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_redis_state(self, state: _RedisSubscriptionState) -> None:
        state.active = False
        await self._pause_redis_state(state)
        if state in self._redis_states:
            self._redis_states.remove(state)

    async def _restart_redis(self, reason: str) -> None:
        if self._config.redis_url is None or redis_asyncio is None:
            return
        async with self._redis_recovery_lock:
            for state in list(self._redis_states):
                await self._pause_redis_state(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [state for state in self._redis_states if state.active]:
                try:
                    await self._attach_redis_reader(state)
                except Exception:
                    logger.exception(
                        "Failed to restore Redis subscription", extra={"channel": state.channel}
                    )
                    raise

        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis change feed recovered",
            extra={"reason": reason, "subscriptions": len(self._redis_states)},
        )

    async def _attach_redis_reader(self, state: _RedisSubscriptionState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_PUBLISH_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        event = ChangeEvent.from_payload(json.loads(raw))
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        logger.warning(
                            "Discarded malformed change payload", extra={"channel": state.channel}
                        )
                        continue
                    if not _matches(event, state.room_id):
                        continue
                    await state.handler(event)
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(state.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(reader(), name=f"change-feed-{state.channel}")
        state.task = task
        if state.subscription is not None:
            state.subscription._task = task
        task.add_done_callback(
            lambda finished: asyncio.create_task(self._on_redis_reader_done(state, finished))
        )

    async def _on_redis_reader_done(
        self, state: _RedisSubscriptionState, task: asyncio.Task[Any]
    ) -> None:
        state.task = None
        state.pubsub = None
        if not state.active or state.suspending:
            return
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Change feed reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning(
                "Change feed reader exited unexpectedly; scheduling recovery",
                extra={"channel": state.channel},
            )
        self._trigger_redis_recovery("reader_stopped")

    def _trigger_redis_recovery(self, reason: str) -> None:
        if self._config.redis_url is None or redis_asyncio is None:
            return
        if self._redis_recovery_task is not None and not self._redis_recovery_task.done():
            return
        logger.info("Scheduling Redis change feed recovery", extra={"reason": reason})
        self._redis_recovery_task = asyncio.create_task(
            self._redis_recovery_runner(reason), name="change-feed-recovery"
        )

    async def _redis_recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            if delay:
                await asyncio.sleep(delay)
            try:
                await self._restart_redis(reason)
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis change feed recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._redis_recovery_task = None

    def _redis_channel(self, table: str) -> str:
        prefix = self._config.redis_prefix.rstrip(".")
        return f"{prefix}.{table}" if prefix else table

    # ------------------------------------------------------------------
    # Feed API
    # ------------------------------------------------------------------
    async def publish(self, event: ChangeEvent) -> None:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        channel = self._redis_channel(event.table)
        try:
            await self._redis.publish(channel, json.dumps(event.to_payload()))
        except _REDIS_PUBLISH_ERRORS as exc:
            self._trigger_redis_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published change event via Redis", extra={"channel": channel})

    async def subscribe(
        self, table: str, handler: ChangeHandler, *, room_id: str | None = None
    ) -> Subscription:
        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        channel = self._redis_channel(table)
        state = _RedisSubscriptionState(
            table=table, channel=channel, handler=handler, room_id=room_id
        )

        async def cleanup() -> None:
            await self._close_redis_state(state)

        subscription = Subscription(f"{channel}:{room_id}" if room_id else channel, cleanup, None)
        state.subscription = subscription
        self._redis_states.append(state)
        try:
            await self._attach_redis_reader(state)
        except Exception as exc:
            await self._close_redis_state(state)
            self._trigger_redis_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        return subscription


__all__ = [
    "BrokerConfig",
    "ChangeFeed",
    "ChangeHandler",
    "LocalChangeFeed",
    "RedisChangeFeed",
    "Subscription",
    "TransportUnavailableError",
]
