"""Per-key TTL snapshots with in-flight request coalescing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from . import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def clamp_ttl(ttl: float | None) -> float:
    if ttl is None or ttl != ttl or ttl <= 0:
        return config.ROSTER_CACHE_TTL_SECONDS
    return min(max(ttl, config.ROSTER_CACHE_MIN_TTL_SECONDS), config.ROSTER_CACHE_MAX_TTL_SECONDS)


class TTLCache(Generic[T]):
    """Snapshots keyed by user id.

    ``refresh`` shares one fetch between concurrent callers for the same
    key; the snapshot is stored only if the fetch succeeds.
    """

    def __init__(self, ttl: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = clamp_ttl(ttl)
        self._clock = clock
        self._entries: dict[str, tuple[float, T]] = {}
        self._in_flight: dict[str, asyncio.Future[T]] = {}

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: T):
        self._entries[key] = (self._clock() + self.ttl, value)

    def invalidate(self, key: str | None = None):
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    async def refresh(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        existing = self._in_flight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        self._in_flight[key] = future
        try:
            value = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a failure nobody shared is not reported as unhandled
            future.exception()
            raise
        else:
            self.put(key, value)
            future.set_result(value)
            return value
        finally:
            self._in_flight.pop(key, None)

    async def get_or_refresh(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        return await self.refresh(key, fetch)
