"""
cache.py: Storage backends for the calculation cache.

Namespace conventions (Redis backend):
  calc:entry:{fingerprint}   → CalculationCacheEntry JSON     TTL = entry lifetime
  calc:index:{index_key}     → SET of fingerprints            no TTL, pruned by sweep()
  calc:lock:{fingerprint}    → redis-py Lock token            held while one worker computes

index_key values are built by calculation/invalidation.py, e.g.
  employee:{employee_id}, subproject:{subproject_id}, project:{project_id},
  location:{lat,lon}

Design:
  - Backends only store and evict; hit/miss policy, expiry-at-read and
    single-flight live in calculation/calculation_cache.py
  - put() writes the entry AND its reverse-index memberships atomically
    (in-process: no await between the two; Redis: one MULTI/EXEC pipeline)
  - register() adds index keys to an entry that already exists, for callers
    served by a hit or a shared wait (another employee at the same location)
  - compute_lock() lets one worker compute a fingerprint while others wait,
    so the Redis backend keeps single-flight across processes
  - Every Redis failure is re-raised as CacheUnavailable so callers can degrade
  - Uses redis.asyncio (async client, part of redis-py 5.x: do NOT use aioredis separately)
  - Logs fingerprint prefixes and counts only: never coordinates
"""
from __future__ import annotations

import contextlib
import functools
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from travelcost.calculation.exceptions import CacheUnavailable
from travelcost.calculation.schemas import CalculationCacheEntry
from travelcost.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
ENTRY_PREFIX = "calc:entry"
INDEX_PREFIX = "calc:index"
LOCK_PREFIX = "calc:lock"
REGISTER_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_entry_key(fingerprint: str) -> str:
    """Build Redis key for a cached calculation: calc:entry:{fingerprint}"""
    return f"{ENTRY_PREFIX}:{fingerprint}"


def make_index_key(index_key: str) -> str:
    """Build Redis key for a reverse-index set: calc:index:{index_key}"""
    return f"{INDEX_PREFIX}:{index_key}"


def make_lock_key(fingerprint: str) -> str:
    """Build Redis key for the per-fingerprint compute lock: calc:lock:{fingerprint}"""
    return f"{LOCK_PREFIX}:{fingerprint}"


# ---------------------------------------------------------------------------
# Backend contract
# ---------------------------------------------------------------------------

class CalculationCacheBackend(ABC):
    """Fingerprint-keyed entry store with reverse-index sets."""

    @abstractmethod
    async def get(self, fingerprint: str) -> Optional[CalculationCacheEntry]:
        """Return the stored entry (expired or not) or None."""

    @abstractmethod
    async def put(self, entry: CalculationCacheEntry) -> None:
        """Store entry and add its fingerprint to every set in entry.index_keys, atomically."""

    @abstractmethod
    async def register(self, fingerprint: str, index_keys: Iterable[str]) -> bool:
        """
        Add fingerprint to every set in index_keys, but only while its entry
        exists. Returns False (and writes nothing) when there is no entry.
        """

    @abstractmethod
    async def evict(self, fingerprint: str) -> bool:
        """Remove one entry. Returns True if something was removed."""

    @abstractmethod
    async def evict_index(self, index_key: str) -> int:
        """Remove every entry registered under index_key and clear the set."""

    @abstractmethod
    async def index_members(self, index_key: str) -> set[str]:
        """
        Inspection helper: fingerprints currently registered under index_key.
        Not used on the calculation path.
        """

    def compute_lock(self, fingerprint: str) -> contextlib.AbstractAsyncContextManager[bool]:
        """
        Async context manager held while fingerprint is computed. Yields True
        when a cross-process lock was taken, in which case the caller must
        re-read the entry before computing. Single-process backends yield False.
        """
        return _no_lock()

    @abstractmethod
    async def sweep(self, now: datetime) -> int:
        """Remove entries with expires_at <= now. Never touches unexpired entries."""


@contextlib.asynccontextmanager
async def _no_lock() -> AsyncIterator[bool]:
    yield False


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------

class InMemoryCacheBackend(CalculationCacheBackend):
    """
    Dict-backed backend for a single process.

    None of the methods await between reading and mutating state, so each call
    is atomic with respect to other coroutines on the same event loop.
    The reverse index is lost on restart; entries then simply age out.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CalculationCacheEntry] = {}
        self._index: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _remove(self, fingerprint: str) -> bool:
        entry = self._entries.pop(fingerprint, None)
        if entry is None:
            return False
        for key in entry.index_keys:
            members = self._index.get(key)
            if members is not None:
                members.discard(fingerprint)
                if not members:
                    del self._index[key]
        return True

    async def get(self, fingerprint: str) -> Optional[CalculationCacheEntry]:
        return self._entries.get(fingerprint)

    async def put(self, entry: CalculationCacheEntry) -> None:
        self._remove(entry.fingerprint)
        for key in entry.index_keys:
            self._index.setdefault(key, set()).add(entry.fingerprint)
        self._entries[entry.fingerprint] = entry

    async def register(self, fingerprint: str, index_keys: Iterable[str]) -> bool:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return False
        added = tuple(key for key in dict.fromkeys(index_keys) if key not in entry.index_keys)
        if added:
            self._entries[fingerprint] = entry.model_copy(
                update={"index_keys": entry.index_keys + added}
            )
            for key in added:
                self._index.setdefault(key, set()).add(fingerprint)
        return True

    async def evict(self, fingerprint: str) -> bool:
        return self._remove(fingerprint)

    async def evict_index(self, index_key: str) -> int:
        members = self._index.pop(index_key, set())
        return sum(1 for fingerprint in members if self._remove(fingerprint))

    async def index_members(self, index_key: str) -> set[str]:
        return set(self._index.get(index_key, ()))

    async def sweep(self, now: datetime) -> int:
        expired = [fp for fp, entry in self._entries.items() if entry.expires_at <= now]
        return sum(1 for fingerprint in expired if self._remove(fingerprint))


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

def _translate_errors(operation: str):
    """Re-raise redis-py errors as CacheUnavailable."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except RedisError as exc:
                raise CacheUnavailable(operation, str(exc)) from exc
        return wrapper
    return decorator


class RedisCacheBackend(CalculationCacheBackend):
    """
    Shared backend for multi-process deployments.

    Entries carry a native Redis TTL matching expires_at, so Redis itself
    drops them; sweep() handles clock skew and prunes dangling index members.

    compute_lock() is a redis-py Lock per fingerprint. lock_timeout bounds how
    long a crashed worker can hold it; a waiter gives up after lock_wait and
    computes on its own rather than block the request.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        clock=utcnow,
        lock_timeout: float = 30.0,
        lock_wait: float = 10.0,
    ) -> None:
        self._client = client
        self._clock = clock
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait

    def _parse(self, fingerprint: str, raw: str) -> Optional[CalculationCacheEntry]:
        try:
            return CalculationCacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cache entry fingerprint=%s", fingerprint[:12])
            return None

    @_translate_errors("get")
    async def get(self, fingerprint: str) -> Optional[CalculationCacheEntry]:
        raw = await self._client.get(make_entry_key(fingerprint))
        if raw is None:
            return None
        entry = self._parse(fingerprint, raw)
        if entry is None:
            await self._client.delete(make_entry_key(fingerprint))
        return entry

    @_translate_errors("put")
    async def put(self, entry: CalculationCacheEntry) -> None:
        remaining = (entry.expires_at - self._clock()).total_seconds()
        ttl = max(1, math.ceil(remaining))
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(make_entry_key(entry.fingerprint), entry.model_dump_json(), ex=ttl)
            for key in entry.index_keys:
                pipe.sadd(make_index_key(key), entry.fingerprint)
            await pipe.execute()

    @_translate_errors("register")
    async def register(self, fingerprint: str, index_keys: Iterable[str]) -> bool:
        entry_key = make_entry_key(fingerprint)
        wanted = tuple(dict.fromkeys(index_keys))
        async with self._client.pipeline(transaction=True) as pipe:
            for _ in range(REGISTER_ATTEMPTS):
                try:
                    # WATCH: an evict or put between the read and EXEC aborts the write
                    await pipe.watch(entry_key)
                    raw = await pipe.get(entry_key)
                    entry = self._parse(fingerprint, raw) if raw is not None else None
                    if entry is None:
                        return False
                    added = tuple(key for key in wanted if key not in entry.index_keys)
                    if not added:
                        return True
                    updated = entry.model_copy(update={"index_keys": entry.index_keys + added})
                    pipe.multi()
                    pipe.set(entry_key, updated.model_dump_json(), keepttl=True)
                    for key in added:
                        pipe.sadd(make_index_key(key), fingerprint)
                    await pipe.execute()
                    return True
                except WatchError:
                    logger.debug("Entry changed during register, retrying fingerprint=%s", fingerprint[:12])
        raise CacheUnavailable("register", f"entry kept changing after {REGISTER_ATTEMPTS} attempts")

    @contextlib.asynccontextmanager
    async def compute_lock(self, fingerprint: str) -> AsyncIterator[bool]:
        lock = self._client.lock(
            make_lock_key(fingerprint),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_wait,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise CacheUnavailable("lock", str(exc)) from exc
        if not acquired:
            logger.warning("Compute lock wait exceeded, computing anyway fingerprint=%s", fingerprint[:12])
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await lock.release()
                except RedisError as exc:
                    # LockNotOwnedError once lock_timeout has passed; the key is already gone
                    logger.warning("Compute lock release failed fingerprint=%s: %s", fingerprint[:12], exc)

    @_translate_errors("evict")
    async def evict(self, fingerprint: str) -> bool:
        raw = await self._client.get(make_entry_key(fingerprint))
        if raw is None:
            return False
        entry = self._parse(fingerprint, raw)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(make_entry_key(fingerprint))
            for key in (entry.index_keys if entry else ()):
                pipe.srem(make_index_key(key), fingerprint)
            results = await pipe.execute()
        return bool(results[0])

    @_translate_errors("evict_index")
    async def evict_index(self, index_key: str) -> int:
        redis_key = make_index_key(index_key)
        members = await self._client.smembers(redis_key)
        if not members:
            return 0
        # SREM only the members read above: a fingerprint added concurrently
        # keeps its index membership together with its entry.
        async with self._client.pipeline(transaction=True) as pipe:
            for fingerprint in members:
                pipe.delete(make_entry_key(fingerprint))
            pipe.srem(redis_key, *members)
            results = await pipe.execute()
        return sum(int(deleted) for deleted in results[:-1])

    @_translate_errors("index_members")
    async def index_members(self, index_key: str) -> set[str]:
        return set(await self._client.smembers(make_index_key(index_key)))

    @_translate_errors("sweep")
    async def sweep(self, now: datetime) -> int:
        removed = 0
        async for key in self._client.scan_iter(match=f"{ENTRY_PREFIX}:*", count=500):
            raw = await self._client.get(key)
            if raw is None:
                continue
            fingerprint = key[len(ENTRY_PREFIX) + 1:]
            entry = self._parse(fingerprint, raw)
            if entry is None or entry.expires_at <= now:
                removed += await self._client.delete(key)

        pruned = 0
        async for index_key in self._client.scan_iter(match=f"{INDEX_PREFIX}:*", count=500):
            for fingerprint in await self._client.smembers(index_key):
                if not await self._client.exists(make_entry_key(fingerprint)):
                    pruned += await self._client.srem(index_key, fingerprint)
        if pruned:
            logger.info("Pruned %d dangling reverse-index members", pruned)
        return removed


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup. Verifies connectivity with PING.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client
