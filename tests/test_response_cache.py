"""
Response Cache Tests
TTL freshness with frozen time and per-call CacheMode behaviour.
"""

import pytest

from quotestream.util.cache import CacheMode, ResponseCache, canonical_key


@pytest.mark.asyncio
@pytest.mark.deterministic
class TestResponseCache:

    async def test_fresh_entry_returned_until_ttl(self, deterministic_time):
        clock = deterministic_time
        cache = ResponseCache(ttl=10.0, clock=clock.time)

        await cache.put("k", b"body")
        clock.advance(9.9)
        assert cache.get("k") == b"body"

        clock.advance(0.2)
        assert cache.get("k") is None
        assert cache.stats()["expired_entries"] == 1

    async def test_refresh_replaces_entry(self, deterministic_time):
        clock = deterministic_time
        cache = ResponseCache(ttl=5.0, clock=clock.time)

        await cache.put("k", "old")
        clock.advance(6)
        await cache.put("k", "new")
        assert cache.get("k") == "new"

    async def test_disabled_without_ttl(self):
        cache = ResponseCache(ttl=None)
        await cache.put("k", "v")
        assert not cache.enabled
        assert cache.get("k") is None
        assert cache.stats()["total_entries"] == 0

    async def test_clear(self):
        cache = ResponseCache(ttl=60)
        await cache.put("a", 1)
        await cache.clear()
        assert cache.get("a") is None

    async def test_hit_miss_counters(self):
        cache = ResponseCache(ttl=60)
        cache.get("missing")
        await cache.put("a", 1)
        cache.get("a")
        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1


class TestCacheMode:

    def test_read_write_matrix(self):
        assert (CacheMode.DEFAULT.can_read, CacheMode.DEFAULT.can_write) == (True, True)
        assert (CacheMode.BYPASS.can_read, CacheMode.BYPASS.can_write) == (False, False)
        assert (CacheMode.REFRESH_FORCE.can_read, CacheMode.REFRESH_FORCE.can_write) == (False, True)
        assert (CacheMode.READ_ONLY.can_read, CacheMode.READ_ONLY.can_write) == (True, False)


class TestCanonicalKey:

    def test_param_order_and_crumb_ignored(self):
        a = canonical_key("get", "https://x/q", [("symbols", "AAPL"), ("crumb", "c1"), ("a", "1")])
        b = canonical_key("GET", "https://x/q", [("a", "1"), ("symbols", "AAPL"), ("crumb", "c2")])
        assert a == b == "GET https://x/q?a=1&symbols=AAPL"
