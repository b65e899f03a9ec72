"""
PeriodicTask — run an async callable on a fixed interval in a background task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Explicit lifecycle around an ``asyncio.Task`` that calls ``func`` every
    ``interval_seconds``.

    ``start()`` and ``stop()`` are idempotent.  A failing tick is logged and
    the loop keeps going.  ``stop()`` lets an in-flight tick finish for up to
    ``grace_seconds`` before cancelling it.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
        *,
        grace_seconds: float = 10.0,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._func = func
        self._grace = grace_seconds
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.debug("%s already running", self.name)
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name=self.name)
        logger.info("%s started (every %.0fs)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if not self.is_running:
            return
        task, self._task = self._task, None
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._grace)
        except asyncio.TimeoutError:
            logger.warning("%s did not finish within %.1fs, cancelling", self.name, self._grace)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("%s stopped", self.name)

    async def _loop(self, stop_event: asyncio.Event) -> None:
        if self._run_immediately:
            await self._tick()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self._func()
        except Exception:
            logger.exception("%s tick failed", self.name)
