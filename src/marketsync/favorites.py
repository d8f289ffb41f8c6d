"""Saved listings: the favorites menu and its count badge."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from . import config
from .backend import MarketplaceBackend
from .counter import UnreadCounter
from .errors import NoticeBoard
from .models import ChangeEvent, Favorite
from .subscriptions import Scope, SubscriptionRegistry
from .tracker import MutationTracker

logger = logging.getLogger(__name__)


def clamp_limit(limit: int | None) -> int:
    if not limit:
        return config.FAVORITES_PAGE_SIZE
    return min(max(int(limit), 1), config.FAVORITES_MAX_LIMIT)


class FavoritesFeed:
    """Favorites list and count for one user.

    Adding or removing a favorite tracks the favorite id, so the push event
    for that same write is not counted a second time. Removal adjusts the
    count immediately and rolls back if the write fails. Push events move
    the count only when they change a fully loaded list; otherwise the
    count is refreshed from the backend.
    """

    def __init__(
        self,
        backend: MarketplaceBackend,
        registry: SubscriptionRegistry | None = None,
        notices: NoticeBoard | None = None,
        tracker: MutationTracker[str] | None = None,
    ):
        self._backend = backend
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.notices = notices if notices is not None else NoticeBoard()
        self.tracker: MutationTracker[str] = tracker if tracker is not None else MutationTracker()
        self.counter = UnreadCounter(backend.count_favorites, name="favorites")
        self.user_id: str | None = None
        self.visible = False
        self.loading = False
        self._items: list[Favorite] = []
        self.complete = False
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def items(self) -> list[Favorite]:
        return list(self._items)

    @property
    def count(self) -> int:
        return self.counter.value

    async def mount(self, user_id: str | None):
        if user_id and user_id == self.user_id:
            return
        if self.user_id is not None:
            await self.unmount()
        if not user_id:
            self.counter.reset()
            return

        self.user_id = user_id
        generation = self._generation
        await self.registry.open(
            Scope.USER_FAVORITES,
            user_id,
            lambda: self._backend.subscribe_to_favorites(user_id, self._on_event),
        )
        if generation == self._generation:
            await self.counter.refresh(user_id)

    async def unmount(self):
        user_id = self.user_id
        self._generation += 1
        self.user_id = None
        self._items = []
        self.complete = False
        self.loading = False
        self.counter.reset()
        self.tracker.clear()
        await self.registry.close(Scope.USER_FAVORITES, user_id)

    @asynccontextmanager
    async def mounted(self, user_id: str | None) -> AsyncIterator[FavoritesFeed]:
        await self.mount(user_id)
        try:
            yield self
        finally:
            await self.unmount()

    async def set_visible(self, visible: bool):
        self.visible = visible
        if visible:
            await self.load()

    async def refresh_count(self) -> int:
        return await self.counter.refresh(self.user_id)

    async def load(self, limit: int | None = None) -> list[Favorite]:
        user_id = self.user_id
        if not user_id:
            self._items = []
            return []

        limit = clamp_limit(limit)
        generation = self._generation
        self.loading = True
        try:
            items = await self._backend.list_favorites(user_id, limit)
        except Exception:
            if generation == self._generation:
                logger.warning("Failed to load favorites for %s", user_id, exc_info=True)
                self.notices.post("Unable to load favorites", "Please try again soon.")
                self.loading = False
            return self.items

        if generation == self._generation:
            self.loading = False
            self._items = items
            self.complete = len(items) < limit
        return self.items

    async def add(self, product_id: str) -> Favorite | None:
        user_id = self.user_id
        if not user_id:
            self.notices.post("Sign in to save listings", variant="default")
            return None
        if any(f.product_id == product_id for f in self._items):
            return next(f for f in self._items if f.product_id == product_id)

        try:
            favorite = await self._backend.add_favorite(user_id, product_id)
        except Exception:
            logger.warning("Failed to add favorite %s", product_id, exc_info=True)
            self.notices.post("Could not save listing", "Please try again.")
            return None

        if self.user_id != user_id:
            return favorite
        self.tracker.track(favorite.id)
        if all(f.id != favorite.id for f in self._items):
            self._items.insert(0, favorite)
        # The backend add is idempotent, so count from the source
        await self.counter.refresh(user_id)
        return favorite

    async def remove(self, favorite: Favorite) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        generation = self._generation

        before = self.items
        self._items = [f for f in self._items if f.id != favorite.id]
        self.counter.apply_delta(-1)
        self.tracker.track(favorite.id)

        try:
            await self._backend.remove_favorite(favorite.id, user_id)
        except Exception:
            logger.warning("Failed to remove favorite %s", favorite.id, exc_info=True)
            if generation != self._generation:
                return False
            self.tracker.discard(favorite.id)
            self._items = before
            self.counter.apply_delta(1)
            self.notices.post("Could not remove favorite", "Please try again.")
            return False
        return True

    def _on_event(self, favorite: Favorite, event: ChangeEvent):
        if not self.user_id or favorite.user_id != self.user_id:
            return
        if self.tracker.consume(favorite.id):
            return

        known = any(f.id == favorite.id for f in self._items)
        if event is ChangeEvent.DELETE:
            self._items = [f for f in self._items if f.id != favorite.id]
            delta = -1 if known else 0
        elif event is ChangeEvent.INSERT:
            if not known:
                self._items.insert(0, favorite)
            delta = 0 if known else 1
        else:
            return

        if not self.complete:
            # A partial or unloaded list cannot tell a redelivery from a new change
            self._spawn(self.counter.refresh(self.user_id))
        elif delta:
            self.counter.apply_delta(delta)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for count refreshes scheduled by push events."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
