"""Cancellable fire-once timer for debounced auto-sync."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class DebounceTimer:
    """Arm/cancel/fire-once timer bound to the running event loop.

    Arming while already armed restarts the countdown, so a burst of
    ``arm()`` calls fires the callback once, ``delay`` seconds after the
    last call.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[object]]):
        """Initialize the timer.

        Args:
            delay: Seconds between the last arm() and the callback
            callback: Coroutine function run when the timer fires
        """
        self.delay = delay
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional["asyncio.Task[object]"] = None

    @property
    def pending(self) -> bool:
        """True while armed and not yet fired."""
        return self._handle is not None

    def arm(self) -> bool:
        """Start or restart the countdown.

        Returns:
            False if there is no running event loop to schedule on
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, debounce timer not armed")
            return False

        self.cancel()
        self._handle = loop.call_later(self.delay, self._fire)
        return True

    def cancel(self) -> None:
        """Cancel the countdown if armed; a running callback is not aborted."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self.callback())
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: "asyncio.Task[object]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Debounced callback failed: {error}")

    async def wait(self) -> None:
        """Wait for the callback started by the last fire, if any."""
        if self._task is not None:
            await asyncio.shield(self._task)
