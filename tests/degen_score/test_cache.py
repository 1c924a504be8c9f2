"""
Tests for the read-through cache.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from degen_score.cache import InMemoryCacheStore, SqlCacheStore
from degen_score.exceptions import RpcUnavailableError
from degen_score.models import CacheEntry


class TestInMemoryCacheStore:

    @pytest.mark.asyncio
    async def test_miss_then_hit(self):
        cache = InMemoryCacheStore(ttl_seconds=60)
        calls = []

        async def fetch():
            calls.append(1)
            return {"tx_count": 7}

        first, first_hit = await cache.get_or_fetch("k", fetch)
        second, second_hit = await cache.get_or_fetch("k", fetch)

        assert first == second == {"tx_count": 7}
        assert (first_hit, second_hit) == (False, True)
        assert len(calls) == 1
        assert cache.get_stats()["cache_hits"] == 1
        assert cache.get_stats()["cache_misses"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_fetch_once(self):
        cache = InMemoryCacheStore(ttl_seconds=60)
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return [1, 2, 3]

        results = await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(10)))

        assert len(calls) == 1
        assert all(payload == [1, 2, 3] for payload, _ in results)
        assert sum(1 for _, hit in results if not hit) == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_not_stored(self):
        cache = InMemoryCacheStore(ttl_seconds=60)

        async def failing():
            raise RpcUnavailableError("down")

        with pytest.raises(RpcUnavailableError):
            await cache.get_or_fetch("k", failing)
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_entry(self):
        cache = InMemoryCacheStore(ttl_seconds=60)
        stale = CacheEntry(
            cache_key="k",
            payload={"old": True},
            fetched_at=datetime.now(timezone.utc) - timedelta(seconds=120),
            ttl_seconds=60,
        )
        await cache.put(stale)

        async def failing():
            raise RpcUnavailableError("down")

        with pytest.raises(RpcUnavailableError):
            await cache.get_or_fetch("k", failing)
        assert (await cache.get("k")).payload == {"old": True}

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self):
        cache = InMemoryCacheStore(ttl_seconds=60)
        await cache.put(CacheEntry(
            cache_key="k",
            payload="old",
            fetched_at=datetime.now(timezone.utc) - timedelta(seconds=61),
            ttl_seconds=60,
        ))

        async def fetch():
            return "new"

        payload, hit = await cache.get_or_fetch("k", fetch)
        assert (payload, hit) == ("new", False)

    @pytest.mark.asyncio
    async def test_clear(self):
        cache = InMemoryCacheStore()

        async def fetch():
            return 1

        await cache.get_or_fetch("a", fetch)
        await cache.clear()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted_at_capacity(self):
        cache = InMemoryCacheStore(ttl_seconds=60, max_entries=2)
        now = datetime.now(timezone.utc)
        for key in ("a", "b", "c"):
            await cache.put(CacheEntry(cache_key=key, payload=key, fetched_at=now, ttl_seconds=60))

        assert len(cache) == 2
        assert await cache.get("a") is None
        assert (await cache.get("c")).payload == "c"
        assert cache.get_stats()["cache_evictions"] == 1

    @pytest.mark.asyncio
    async def test_expired_entries_evicted_before_live_ones(self):
        cache = InMemoryCacheStore(ttl_seconds=60, max_entries=2)
        now = datetime.now(timezone.utc)
        await cache.put(CacheEntry(cache_key="live", payload=1, fetched_at=now, ttl_seconds=60))
        await cache.put(CacheEntry(
            cache_key="stale", payload=2, fetched_at=now - timedelta(seconds=120), ttl_seconds=60,
        ))
        await cache.put(CacheEntry(cache_key="new", payload=3, fetched_at=now, ttl_seconds=60))

        assert await cache.get("stale") is None
        assert await cache.get("live") is not None
        assert await cache.get("new") is not None

    @pytest.mark.asyncio
    async def test_rewrite_refreshes_eviction_order(self):
        cache = InMemoryCacheStore(ttl_seconds=60, max_entries=2)
        now = datetime.now(timezone.utc)
        for key in ("a", "b", "a", "c"):
            await cache.put(CacheEntry(cache_key=key, payload=key, fetched_at=now, ttl_seconds=60))

        assert await cache.get("a") is not None
        assert await cache.get("b") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        cache = InMemoryCacheStore(ttl_seconds=60)
        now = datetime.now(timezone.utc)
        await cache.put(CacheEntry(cache_key="a", payload=1, fetched_at=now, ttl_seconds=60))
        await cache.put(CacheEntry(cache_key="b", payload=2, fetched_at=now, ttl_seconds=60))

        assert await cache.purge_expired(now + timedelta(seconds=30)) == 0
        assert await cache.purge_expired(now + timedelta(seconds=61)) == 2
        assert len(cache) == 0


class TestSqlCacheStore:

    @pytest.mark.asyncio
    async def test_round_trip_through_database(self, database):
        cache = SqlCacheStore(database, ttl_seconds=60)

        async def fetch():
            return {"logs": [{"block_number": 1, "topics": ["0xabc"]}]}

        payload, hit = await cache.get_or_fetch("key-1", fetch)
        cached, cached_hit = await cache.get_or_fetch("key-1", fetch)

        assert hit is False
        assert cached_hit is True
        assert cached == payload

        entry = await cache.get("key-1")
        assert entry.fetched_at.tzinfo is not None
        assert not entry.is_expired()

    @pytest.mark.asyncio
    async def test_put_replaces_whole_entry(self, database):
        cache = SqlCacheStore(database, ttl_seconds=60)
        now = datetime.now(timezone.utc)
        await cache.put(CacheEntry("k", {"a": 1, "b": 2}, now, 60))
        await cache.put(CacheEntry("k", {"c": 3}, now, 60))

        assert (await cache.get("k")).payload == {"c": 3}

    @pytest.mark.asyncio
    async def test_purge_expired(self, database):
        cache = SqlCacheStore(database, ttl_seconds=60)
        now = datetime.now(timezone.utc)
        await cache.put(CacheEntry("fresh", 1, now, 60))
        await cache.put(CacheEntry("stale", 2, now - timedelta(seconds=600), 60))

        assert await cache.purge_expired() == 1
        assert await cache.get("stale") is None
        assert await cache.get("fresh") is not None
