"""
Read-Through Cache - Raw provider payloads keyed by (chain, address, data kind).

============================================================
CONTRACT
============================================================
- Keys are immutable; values are replaced whole, never patched
- get_or_fetch() is atomic per key: concurrent misses on one key
  issue a single fetch, the rest wait and read its result
- Only successful fetches are stored; a failed fetch leaves the
  previous entry (if any) untouched

Stores:
- InMemoryCacheStore: process-local dict (default)
- SqlCacheStore: CacheRecord rows through the async Database

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from weakref import WeakValueDictionary

from .models import CacheEntry
from .storage.database import Database
from .storage.repository import CacheRepository


logger = logging.getLogger(__name__)


class CacheStore(ABC):
    """Keyed payload store with TTL and atomic get-or-fetch."""

    def __init__(self, ttl_seconds: float = 900.0) -> None:
        self.ttl_seconds = ttl_seconds
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()
        self._hits = 0
        self._misses = 0

    @abstractmethod
    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        """Stored entry, live or expired."""

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Insert or replace a whole entry."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry."""

    async def get_live(
        self,
        cache_key: str,
        now: Optional[datetime] = None,
    ) -> Optional[CacheEntry]:
        entry = await self.get(cache_key)
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def _lock_for(self, cache_key: str) -> asyncio.Lock:
        lock = self._locks.get(cache_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[cache_key] = lock
        return lock

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch: Callable[[], Awaitable[Any]],
    ) -> tuple[Any, bool]:
        """
        Return (payload, was_hit).

        A live entry is returned without calling `fetch`. Exceptions from
        `fetch` propagate and nothing is stored.
        """
        lock = self._lock_for(cache_key)
        async with lock:
            entry = await self.get_live(cache_key)
            if entry is not None:
                self._hits += 1
                logger.debug(f"[cache] Hit {cache_key} (age {entry.age_seconds():.0f}s)")
                return entry.payload, True

            self._misses += 1
            payload = await fetch()
            await self.put(CacheEntry(
                cache_key=cache_key,
                payload=payload,
                fetched_at=datetime.now(timezone.utc),
                ttl_seconds=self.ttl_seconds,
            ))
            return payload, False

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
            "ttl_seconds": self.ttl_seconds,
        }


class InMemoryCacheStore(CacheStore):
    """
    Process-local cache.

    Holds at most `max_entries` entries. When a put overflows it,
    expired entries are dropped first, then the oldest writes.
    """

    def __init__(self, ttl_seconds: float = 900.0, max_entries: int = 10_000) -> None:
        super().__init__(ttl_seconds)
        self.max_entries = max_entries
        self._entries: dict[str, CacheEntry] = {}
        self._evictions = 0

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        return self._entries.get(cache_key)

    async def put(self, entry: CacheEntry) -> None:
        # Re-insert so dict order stays oldest write first
        self._entries.pop(entry.cache_key, None)
        self._entries[entry.cache_key] = entry
        if len(self._entries) <= self.max_entries:
            return

        self._drop_expired(datetime.now(timezone.utc))
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._evictions += 1
            logger.debug(f"[cache] Evicted {oldest}")

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop expired entries; returns how many were dropped."""
        return self._drop_expired(now or datetime.now(timezone.utc))

    def _drop_expired(self, now: datetime) -> int:
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for cache_key in expired:
            del self._entries[cache_key]
        self._evictions += len(expired)
        return len(expired)

    async def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            **super().get_stats(),
            "cache_entries": len(self._entries),
            "cache_evictions": self._evictions,
        }

    def __len__(self) -> int:
        return len(self._entries)


class SqlCacheStore(CacheStore):
    """Cache persisted as CacheRecord rows."""

    def __init__(self, database: Database, ttl_seconds: float = 900.0) -> None:
        super().__init__(ttl_seconds)
        self.database = database

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        async with self.database.transaction() as session:
            return await CacheRepository(session).get(cache_key)

    async def put(self, entry: CacheEntry) -> None:
        async with self.database.transaction() as session:
            await CacheRepository(session).upsert(entry)

    async def clear(self) -> None:
        async with self.database.transaction() as session:
            await CacheRepository(session).clear()

    async def purge_expired(self) -> int:
        """Delete expired rows; returns how many were removed."""
        async with self.database.transaction() as session:
            removed = await CacheRepository(session).delete_expired(datetime.now(timezone.utc))
        if removed:
            logger.info(f"[cache] Purged {removed} expired entries")
        return removed
