"""Ordered in-process event channels.

Components publish state changes through an :class:`EventEmitter` instead of
module level callback slots. Handlers run synchronously, in registration
order, at the moment the event is emitted, so two closely spaced events are
always observed in the order they were produced. Handlers returning an
awaitable are scheduled on the running loop and tracked until completion.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventEmitter:
    """Named synchronous event channels with optional async handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Future[Any]] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` and return a callable removing it again."""

        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
            except Exception:
                logger.exception("Event handler failed", extra={"event": event})
                continue
            if inspect.isawaitable(result):
                self._track(event, result)

    def _track(self, event: str, awaitable: Any) -> None:
        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)

        def finished(done: asyncio.Future[Any]) -> None:
            self._pending.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.error(
                    "Async event handler failed",
                    exc_info=exc,
                    extra={"event": event},
                )

        future.add_done_callback(finished)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._handlers.clear()


__all__ = ["EventEmitter", "Handler"]
