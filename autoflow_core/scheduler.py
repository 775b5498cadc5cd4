"""
Cancellable periodic background tasks.

A :class:`PeriodicTask` calls a synchronous callback every *interval*
seconds on the running event loop until cancelled.  Cancellation is
synchronous: once :meth:`PeriodicTask.cancel` returns, the callback will
not run again, even if the sleep it was waiting on has already elapsed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger("autoflow.scheduler")


class PeriodicTask:
    """Runs ``callback()`` every ``interval`` seconds."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Any]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self._task is not None:
            raise RuntimeError(f"{self.name} already started")
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"autoflow-{self.name}"
        )
        logger.debug(f"{self.name} started (every {self.interval}s)")

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        """Await loop exit after :meth:`cancel`."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                break
            try:
                self._callback()
            except Exception:
                logger.exception(f"{self.name} tick failed")
            self.runs += 1
        logger.debug(f"{self.name} stopped after {self.runs} runs")
