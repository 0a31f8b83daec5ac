"""Coalescing of rapid successive changes into one delayed call."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Run ``action`` once after ``delay`` seconds of quiet.

    Each ``trigger`` cancels the pending run and schedules a new one with the
    latest arguments. Must be used from within a running event loop.
    """

    def __init__(self, delay: float, action: Callable[..., Awaitable[Any]]):
        self.delay = delay
        self._action = action
        self._task: asyncio.Task | None = None
        self._pending: tuple[tuple, dict] | None = None
        self._firing = False

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self, *args: Any, **kwargs: Any) -> None:
        self.cancel()
        self._pending = (args, kwargs)
        self._task = asyncio.get_running_loop().create_task(self._run_later())

    async def _run_later(self) -> None:
        await asyncio.sleep(self.delay)
        self._firing = True
        try:
            await self._fire()
        finally:
            self._firing = False

    async def _fire(self) -> None:
        if self._pending is None:
            return
        args, kwargs = self._pending
        self._pending = None
        try:
            await self._action(*args, **kwargs)
        except Exception as e:
            logger.error(f"Debounced call failed: {e}")

    async def flush(self) -> None:
        """Run a pending call immediately instead of waiting out the delay."""
        if self._task is not None and not self._task.done() and not self._firing:
            self._task.cancel()
        self._task = None
        await self._fire()

    def cancel(self) -> None:
        # An in-flight call is left to finish; only the waiting one is dropped
        if self._task is not None and not self._task.done() and not self._firing:
            self._task.cancel()
        self._task = None
        self._pending = None
