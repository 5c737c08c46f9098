"""
calculation_cache.py: Fingerprint-keyed result cache with single-flight.

get_or_compute(fingerprint, compute_fn, index_keys):
  1. If a load for this fingerprint is already in flight, join it.
  2. Otherwise start ONE shared task that reads the backend (bounded retries),
     returns the entry on a hit within TTL, or runs compute_fn under the
     backend's compute lock and stores the result with its reverse-index keys.
  3. Every caller awaits the shared task through asyncio.shield(): a caller that
     is cancelled (client disconnect) stops waiting, the computation does not.
  4. A caller served without storing (hit, shared wait) registers its own
     index_keys on the existing entry, so invalidating any employee or
     subproject that maps onto this fingerprint still evicts it.

Single-flight holds per process through the in-flight task table and across
processes through backend.compute_lock() (a Redis lock for the Redis backend).

Degradation: when the backend stays unavailable after the retries the result
is computed directly and not stored. A failed store after a successful compute
is logged and the result returned. Caching never decides correctness.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

from travelcost.cache import CalculationCacheBackend, utcnow
from travelcost.calculation.exceptions import CacheUnavailable
from travelcost.calculation.schemas import CacheStats, CalculationCacheEntry, CalculationResult

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Awaitable[CalculationResult]]
Clock = Callable[[], datetime]


class CalculationCache:
    def __init__(
        self,
        backend: CalculationCacheBackend,
        ttl_seconds: int,
        read_retries: int = 2,
        retry_backoff_seconds: float = 0.05,
        clock: Clock = utcnow,
    ) -> None:
        self.backend = backend
        self.ttl = timedelta(seconds=ttl_seconds)
        self.read_retries = read_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.clock = clock
        self.stats = CacheStats()
        self._inflight: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_or_compute(
        self,
        fingerprint: str,
        compute_fn: ComputeFn,
        index_keys: Iterable[str] = (),
    ) -> CalculationResult:
        keys = tuple(index_keys)
        task = self._inflight.get(fingerprint)
        if task is None:
            task = asyncio.ensure_future(self._load(fingerprint, compute_fn, keys))
            self._inflight[fingerprint] = task
            task.add_done_callback(_release_when_done(self._inflight, fingerprint))
            return await asyncio.shield(task)

        self.stats.shared_waits += 1
        logger.debug("Joining in-flight calculation fingerprint=%s", fingerprint[:12])
        result = await asyncio.shield(task)
        await self._register(fingerprint, keys)
        return result

    def in_flight(self) -> int:
        return len(self._inflight)

    async def evict(self, fingerprint: str) -> bool:
        removed = await self.backend.evict(fingerprint)
        if removed:
            self.stats.evictions += 1
        return removed

    async def evict_index(self, index_key: str) -> int:
        removed = await self.backend.evict_index(index_key)
        self.stats.evictions += removed
        return removed

    async def sweep(self, now: Optional[datetime] = None) -> int:
        removed = await self.backend.sweep(now or self.clock())
        self.stats.evictions += removed
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _read(self, fingerprint: str) -> Optional[CalculationCacheEntry]:
        """Backend read with bounded retries. Raises CacheUnavailable when exhausted."""
        attempt = 0
        while True:
            try:
                return await self.backend.get(fingerprint)
            except CacheUnavailable:
                if attempt >= self.read_retries:
                    raise
                attempt += 1
                logger.debug(
                    "Cache read failed, retrying attempt=%d fingerprint=%s",
                    attempt,
                    fingerprint[:12],
                )
                await asyncio.sleep(self.retry_backoff_seconds * attempt)

    def _fresh(self, entry: Optional[CalculationCacheEntry]) -> bool:
        return entry is not None and not entry.is_expired(self.clock())

    async def _register(self, fingerprint: str, index_keys: tuple[str, ...]) -> None:
        """Attach the caller's index keys to an entry it did not store itself."""
        if not index_keys:
            return
        try:
            await self.backend.register(fingerprint, index_keys)
        except CacheUnavailable as exc:
            # An entry that cannot be indexed for this caller must not outlive the request
            logger.warning("Index registration failed fingerprint=%s: %s", fingerprint[:12], exc.message)
            try:
                await self.evict(fingerprint)
            except CacheUnavailable:
                logger.warning("Evict after failed registration also failed fingerprint=%s", fingerprint[:12])

    async def _hit(
        self, fingerprint: str, entry: CalculationCacheEntry, index_keys: tuple[str, ...]
    ) -> CalculationResult:
        self.stats.hits += 1
        logger.debug("Cache hit fingerprint=%s", fingerprint[:12])
        await self._register(fingerprint, index_keys)
        return entry.result

    async def _load(
        self,
        fingerprint: str,
        compute_fn: ComputeFn,
        index_keys: tuple[str, ...],
    ) -> CalculationResult:
        try:
            entry = await self._read(fingerprint)
        except CacheUnavailable as exc:
            self.stats.bypasses += 1
            logger.warning("Cache bypassed, computing directly: %s", exc.message)
            self.stats.computations += 1
            return await compute_fn()

        if self._fresh(entry):
            return await self._hit(fingerprint, entry, index_keys)
        if entry is not None:
            self.stats.expired_reads += 1
            logger.debug("Cache entry expired at read fingerprint=%s", fingerprint[:12])

        async with contextlib.AsyncExitStack() as stack:
            try:
                locked = await stack.enter_async_context(self.backend.compute_lock(fingerprint))
            except CacheUnavailable as exc:
                logger.warning("Compute lock unavailable fingerprint=%s: %s", fingerprint[:12], exc.message)
                locked = False
            if locked:
                # another worker may have stored it while this one waited for the lock
                try:
                    entry = await self.backend.get(fingerprint)
                except CacheUnavailable:
                    entry = None
                if self._fresh(entry):
                    return await self._hit(fingerprint, entry, index_keys)
            return await self._compute_and_store(fingerprint, compute_fn, index_keys)

    async def _compute_and_store(
        self,
        fingerprint: str,
        compute_fn: ComputeFn,
        index_keys: tuple[str, ...],
    ) -> CalculationResult:
        self.stats.misses += 1
        self.stats.computations += 1
        result = await compute_fn()

        created_at = self.clock()
        new_entry = CalculationCacheEntry(
            fingerprint=fingerprint,
            result=result,
            created_at=created_at,
            expires_at=created_at + self.ttl,
            index_keys=index_keys,
        )
        try:
            await self.backend.put(new_entry)
        except CacheUnavailable as exc:
            logger.warning("Cache store skipped fingerprint=%s: %s", fingerprint[:12], exc.message)
        else:
            logger.debug(
                "Cached fingerprint=%s expires_at=%s",
                fingerprint[:12],
                new_entry.expires_at.isoformat(),
            )
        return result


def _release_when_done(inflight: dict[str, asyncio.Task], fingerprint: str):
    """Done-callback: drop the in-flight slot and mark the task's exception as retrieved."""
    def _release(task: asyncio.Task) -> None:
        if inflight.get(fingerprint) is task:
            del inflight[fingerprint]
        if not task.cancelled():
            # Retrieve so an exception whose waiters all went away is not reported as unhandled.
            task.exception()
    return _release
