"""
janitor.py: Periodic sweep of expired cache entries.

Not safety-critical: reads already treat expired entries as misses, the
janitor only reclaims the space. A failed sweep is logged and retried on
the next tick.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from travelcost.calculation.calculation_cache import CalculationCache
from travelcost.calculation.exceptions import CacheUnavailable

logger = logging.getLogger(__name__)


class CacheJanitor:
    def __init__(self, cache: CalculationCache, interval_seconds: float) -> None:
        self._cache = cache
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Idempotent: a second call with the same `now` returns 0."""
        evicted = await self._cache.sweep(now)
        logger.info("Cache sweep evicted %d expired entries", evicted)
        return evicted

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.evict_expired()
            except CacheUnavailable as exc:
                logger.warning("Cache sweep failed, retrying next interval: %s", exc.message)
            except Exception:
                logger.exception("Unexpected error in cache sweep, retrying next interval")

    def start(self) -> Optional[asyncio.Task]:
        if self.interval_seconds <= 0:
            logger.info("Cache janitor disabled (interval=%s)", self.interval_seconds)
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="cache-janitor")
            logger.info("Cache janitor started interval=%ss", self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Cache janitor stopped")
