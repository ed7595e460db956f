"""Coalescing scheduler: many signals, at most one action per window."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class CoalescingScheduler:
    """Run ``action`` at most once per fixed window of signals.

    The first ``signal()`` opens a window of ``window`` seconds; signals
    inside the window are absorbed. When the window closes the action runs
    once. A signal that arrives while the action is running opens a new
    window, so changes made during a refresh are not lost. Runs never
    overlap: a window that closes mid-run queues one more run after it.

    Args:
        action: Coroutine function to run.
        window: Window length in seconds.
    """

    def __init__(self, action: Callable[[], Awaitable[object]], window: float = 0.3):
        self._action = action
        self.window = window
        self._timer: asyncio.TimerHandle | None = None
        self._running: asyncio.Task | None = None
        self._rerun = False
        self.signals = 0
        self.runs = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def signal(self) -> None:
        self.signals += 1
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.window, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._running is not None and not self._running.done():
            # The in-progress run goes again once it finishes.
            self._rerun = True
            return
        self._running = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        while True:
            self._rerun = False
            self.runs += 1
            try:
                await self._action()
            except Exception:
                logger.exception("Coalesced action failed")
            if not self._rerun:
                return

    def cancel(self) -> None:
        """Drop a pending run. A run already in progress is left to finish."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def flush(self) -> None:
        """Run a pending action now and wait for any in-progress run."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()
        if self._running is not None:
            await self._running

    async def aclose(self) -> None:
        self.cancel()
        if self._running is not None and not self._running.done():
            self._running.cancel()
            try:
                await self._running
            except asyncio.CancelledError:
                pass
