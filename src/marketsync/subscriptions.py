"""Push subscription lifecycle, one handle per (scope, key)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from enum import Enum

from .backend import Subscription

logger = logging.getLogger(__name__)

SubscriptionFactory = Callable[[], Awaitable[Subscription]]


class Scope(str, Enum):
    USER_CONVERSATIONS = "user-conversations"
    THREAD = "thread"
    USER_NOTIFICATIONS = "user-notifications"
    USER_FAVORITES = "user-favorites"


class SubscriptionRegistry:
    """Owns every open push subscription for one client session.

    Opening a (scope, key) that is already open closes the old handle
    first, and ``exclusive`` opens close every other key in the scope, so
    switching threads never accumulates channels. Open and close calls for
    a scope are serialised, which keeps that guarantee across awaits.
    Pass one registry to the surfaces that share a session.
    """

    def __init__(self):
        self._handles: dict[tuple[Scope, str], Subscription] = {}
        self._locks: dict[Scope, asyncio.Lock] = {}

    def _lock(self, scope: Scope) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        return lock

    async def _release(self, scope: Scope, key: str):
        handle = self._handles.pop((scope, key), None)
        if handle is None:
            return
        try:
            await handle.unsubscribe()
        except Exception:
            logger.warning("Failed to unsubscribe %s:%s", scope.value, key, exc_info=True)
        else:
            logger.debug("Closed %s:%s", scope.value, key)

    async def open(
        self,
        scope: Scope,
        key: str | None,
        factory: SubscriptionFactory,
        exclusive: bool = False,
    ) -> Subscription | None:
        if not key:
            return None

        async with self._lock(scope):
            if exclusive:
                for other in self.active(scope):
                    if other != key:
                        await self._release(scope, other)
            await self._release(scope, key)

            try:
                handle = await factory()
            except Exception:
                logger.warning("Failed to subscribe %s:%s", scope.value, key, exc_info=True)
                return None

            self._handles[(scope, key)] = handle
            logger.debug("Opened %s:%s", scope.value, key)
            return handle

    async def close(self, scope: Scope, key: str | None):
        if not key:
            return
        async with self._lock(scope):
            await self._release(scope, key)

    async def close_scope(self, scope: Scope):
        async with self._lock(scope):
            for key in self.active(scope):
                await self._release(scope, key)

    async def close_all(self):
        for scope in Scope:
            await self.close_scope(scope)

    def active(self, scope: Scope) -> list[str]:
        return [key for (s, key) in self._handles if s is scope]

    def is_open(self, scope: Scope, key: str) -> bool:
        return (scope, key) in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    @asynccontextmanager
    async def scoped(
        self, scope: Scope, key: str | None, factory: SubscriptionFactory, exclusive: bool = False
    ) -> AsyncIterator[Subscription | None]:
        """Hold a subscription for the duration of a block, released on every exit path."""
        handle = await self.open(scope, key, factory, exclusive=exclusive)
        try:
            yield handle
        finally:
            if handle is not None and self._handles.get((scope, key)) is handle:
                await self.close(scope, key)
