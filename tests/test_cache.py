"""Tests for the roster TTL cache."""

import asyncio

import pytest

from marketsync.cache import TTLCache, clamp_ttl


class TestClampTTL:
    def test_default_for_missing_or_invalid(self):
        assert clamp_ttl(None) == 60.0
        assert clamp_ttl(0) == 60.0
        assert clamp_ttl(-5) == 60.0
        assert clamp_ttl(float("nan")) == 60.0

    def test_bounds(self):
        assert clamp_ttl(1) == 5.0
        assert clamp_ttl(1000) == 300.0
        assert clamp_ttl(42) == 42


class TestTTLCache:
    def test_entries_expire(self, clock):
        cache = TTLCache(ttl=10, clock=clock)
        cache.put("u-1", ["a"])
        clock.advance(9)
        assert cache.get("u-1") == ["a"]
        clock.advance(2)
        assert cache.get("u-1") is None

    def test_invalidate(self, clock):
        cache = TTLCache(ttl=10, clock=clock)
        cache.put("u-1", 1)
        cache.put("u-2", 2)
        cache.invalidate("u-1")
        assert cache.get("u-1") is None
        assert cache.get("u-2") == 2
        cache.invalidate()
        assert cache.get("u-2") is None

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self, clock):
        cache = TTLCache(ttl=10, clock=clock)
        release = asyncio.Event()
        calls = []

        async def fetch():
            calls.append(1)
            await release.wait()
            return ["conv"]

        first = asyncio.create_task(cache.refresh("u-1", fetch))
        second = asyncio.create_task(cache.refresh("u-1", fetch))
        await asyncio.sleep(0)
        release.set()

        assert await first == ["conv"]
        assert await second == ["conv"]
        assert len(calls) == 1
        assert cache.get("u-1") == ["conv"]

    @pytest.mark.asyncio
    async def test_failed_refresh_stores_nothing(self, clock):
        cache = TTLCache(ttl=10, clock=clock)

        async def fetch():
            raise RuntimeError("offline")

        with pytest.raises(RuntimeError):
            await cache.refresh("u-1", fetch)
        assert cache.get("u-1") is None

        async def recovered():
            return ["ok"]

        assert await cache.refresh("u-1", recovered) == ["ok"]

    @pytest.mark.asyncio
    async def test_get_or_refresh_uses_snapshot(self, clock):
        cache = TTLCache(ttl=10, clock=clock)
        cache.put("u-1", ["cached"])

        async def fetch():
            raise AssertionError("should not fetch")

        assert await cache.get_or_refresh("u-1", fetch) == ["cached"]
