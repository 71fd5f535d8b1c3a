"""Fixed-interval task runner with skip-if-still-running semantics.

A tick that arrives while the previous run is still in flight is dropped,
not queued, so at most one run of a job is ever active.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run *job* every *interval_s* seconds until :meth:`stop` is called."""

    def __init__(
        self,
        name: str,
        interval_s: float,
        job: Callable[[], Awaitable[object]],
    ) -> None:
        self.name = name
        self.interval_s = interval_s
        self._job = job
        self._ticker: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self.runs = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> None:
        if self.running:
            return
        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.debug("Periodic task %s started (every %.3fs)", self.name, self.interval_s)

    async def stop(self, wait_current: bool = True) -> None:
        """Stop ticking; optionally let an in-flight run finish."""
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        current, self._current = self._current, None
        if current is not None and not current.done():
            if not wait_current:
                current.cancel()
            try:
                await current
            except asyncio.CancelledError:
                pass
        logger.debug("Periodic task %s stopped", self.name)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            if self._current is not None and not self._current.done():
                self.skipped += 1
                logger.debug("%s: previous run still in flight, skipping tick", self.name)
                continue
            self.runs += 1
            self._current = asyncio.get_running_loop().create_task(self._run_once())

    async def _run_once(self) -> None:
        try:
            await self._job()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
