"""Single timer that ends an audio session after sustained silence."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_SILENCE_TIMEOUT = 30.0


class SilenceWatchdog:
    """Fire ``on_timeout`` once nobody has been unmuted for ``timeout`` seconds.

    At most one timer is pending at any time; :meth:`reset` always cancels the
    previous timer before scheduling the next one. When the timer expires and
    ``is_anyone_unmuted`` reports activity the watchdog re-arms for a fresh
    period instead of firing.
    """

    def __init__(
        self,
        *,
        is_anyone_unmuted: Callable[[], bool],
        on_timeout: Callable[[], Any],
        timeout: float = DEFAULT_SILENCE_TIMEOUT,
    ) -> None:
        if timeout <= 0:
            raise ValueError("Silence timeout must be positive")
        self._timeout = float(timeout)
        self._is_anyone_unmuted = is_anyone_unmuted
        self._on_timeout = on_timeout
        self._task: asyncio.Task[None] | None = None

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self) -> None:
        """Cancel any pending timer and start a new quiet period."""

        self.cancel()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="silence-watchdog"
        )

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        await asyncio.sleep(self._timeout)
        if asyncio.current_task() is not self._task:
            return
        self._task = None
        if self._is_anyone_unmuted():
            logger.debug("Silence timer expired while someone is unmuted; re-arming")
            self.reset()
            return
        logger.info("Silence timeout reached", extra={"timeout": self._timeout})
        try:
            self._on_timeout()
        except Exception:
            logger.exception("Silence timeout handler failed")


__all__ = ["DEFAULT_SILENCE_TIMEOUT", "SilenceWatchdog"]
