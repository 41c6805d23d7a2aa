"""Tests for the in-memory TTL cache."""

import pytest

from core.cache import CacheService
from models.cache import CacheEntry


class TestCacheEntry:

    def test_valid_strictly_before_ttl(self):
        entry = CacheEntry(key="k", value=1, stored_at=100.0, ttl=30.0)

        assert entry.is_valid(129.9)
        assert not entry.is_valid(130.0)
        assert entry.expires_at == 130.0


class TestCacheService:

    async def test_get_within_ttl(self, cache: CacheService, clock):
        cache.set("story:1", {"id": "1"}, ttl=10.0)
        await clock.advance(9.5)

        assert cache.get("story:1") == {"id": "1"}

    async def test_expired_entry_is_never_returned(self, cache: CacheService, clock):
        cache.set("story:1", {"id": "1"}, ttl=10.0)
        await clock.advance(10.0)

        assert cache.get("story:1") is None
        assert len(cache) == 0

    async def test_default_ttl_from_settings(self, cache: CacheService, clock, settings):
        cache.set("k", "v")
        await clock.advance(settings.cache_ttl - 1)
        assert cache.exists("k")

        await clock.advance(1)
        assert not cache.exists("k")

    def test_set_replaces_entry(self, cache: CacheService):
        cache.set("k", 1)
        cache.set("k", 2)

        assert cache.get("k") == 2
        assert len(cache) == 1

    def test_missing_key(self, cache: CacheService):
        assert cache.get("nope") is None
        assert cache.delete("nope") is False

    async def test_default_distinguishes_stored_none(self, cache: CacheService, clock):
        missing = object()
        cache.set("k", None, ttl=10.0)

        assert cache.get("k", missing) is None
        assert cache.get("nope", missing) is missing

        await clock.advance(10.0)
        assert cache.get("k", missing) is missing

    def test_delete(self, cache: CacheService):
        cache.set("k", 1)

        assert cache.delete("k") is True
        assert cache.get("k") is None

    def test_clear_pattern(self, cache: CacheService):
        cache.set("viewed_stories:u1", {"s1"})
        cache.set("viewed_stories:u2", {"s2"})
        cache.set("story:s1", {})

        assert cache.clear_pattern("viewed_stories:*") == 2
        assert cache.get("story:s1") == {}

    async def test_sweep_removes_only_expired(self, cache: CacheService, clock):
        cache.set("short", 1, ttl=5.0)
        cache.set("long", 2, ttl=60.0)
        await clock.advance(10.0)

        assert cache.sweep() == 1
        assert cache.stats()["keys"] == ["long"]

    async def test_periodic_sweep(self, cache: CacheService, clock, settings):
        await cache.startup()
        cache.set("k", 1, ttl=10.0)

        await clock.advance(settings.cache_sweep_interval + 1)

        assert len(cache) == 0
        await cache.shutdown()

    async def test_shutdown_clears(self, cache: CacheService):
        await cache.startup()
        cache.set("k", 1)
        await cache.shutdown()

        assert len(cache) == 0

    async def test_stats(self, cache: CacheService, clock):
        cache.set("a", 1)
        await clock.advance(5.0)
        cache.set("b", 2)

        stats = cache.stats()
        assert stats["size"] == 2
        assert stats["newest_stored_at"] - stats["oldest_stored_at"] == pytest.approx(5.0)
