"""Coalesce bursts of triggers into one deferred action."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

Action = Callable[[], Union[Awaitable[Any], Any]]


class Debouncer:
    """Run an action once, ``delay`` seconds after the last ``schedule`` call.

    Scheduling and cancelling are synchronous on the event loop, so a burst of
    overlapping calls always leaves exactly one pending timer.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._running: Optional[asyncio.Future] = None
        self.logger = logger.getChild('debouncer')

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float, action: Action) -> None:
        """Cancel any pending action and run ``action`` after ``delay`` from now."""
        loop = self._loop or asyncio.get_event_loop()
        self.cancel()
        self._handle = loop.call_later(max(0.0, delay), self._fire, action)

    def cancel(self) -> None:
        """Drop the pending action, if any. A running action is not interrupted."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def wait_idle(self) -> None:
        """Wait for the most recently fired action to finish."""
        if self._running is not None:
            await asyncio.gather(self._running, return_exceptions=True)

    def _fire(self, action: Action) -> None:
        self._handle = None
        try:
            result = action()
        except Exception:
            self.logger.exception("Debounced action failed")
            return

        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            future.add_done_callback(self._log_failure)
            self._running = future

    def _log_failure(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("Debounced action failed: %s", exc, exc_info=exc)
