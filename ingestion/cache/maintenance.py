"""
Periodic cache maintenance.
"""

import asyncio
import logging
from typing import Optional

from .response_cache import ResponseCache

logger = logging.getLogger(__name__)


class CacheMaintenanceTask:
    """Runs ResponseCache.sweep on a fixed interval in the background."""

    def __init__(self, cache: ResponseCache, interval_seconds: Optional[float] = None):
        self.cache = cache
        self.interval_seconds = (interval_seconds if interval_seconds is not None
                                 else cache.config.sweep_interval_seconds)
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Cache maintenance started (interval={self.interval_seconds}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Cache maintenance stopped")

    async def run_once(self) -> int:
        deleted = await asyncio.to_thread(self.cache.sweep)
        self.runs += 1
        return deleted

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()
