"""The notification bell: recent notifications and their unread count."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from . import config
from .backend import MarketplaceBackend
from .counter import UnreadCounter
from .errors import NoticeBoard
from .models import ChangeEvent, ListingKind, Notification, NotificationType
from .subscriptions import Scope, SubscriptionRegistry
from .tracker import MutationTracker

logger = logging.getLogger(__name__)

LISTING_KIND_LABELS = {
    ListingKind.SOLD: "Listing you saved was sold",
    ListingKind.PRICE_UPDATED: "Price Updated",
    ListingKind.BACK_ONLINE: "Listing Back Online",
    ListingKind.LISTING_UPDATED: "Listing Updated",
}


def describe_listing_kind(kind: ListingKind) -> str:
    try:
        return LISTING_KIND_LABELS[kind]
    except KeyError:
        raise ValueError(f"Unhandled listing kind: {kind!r}") from None


def _newest_first(items: list[Notification]) -> list[Notification]:
    return sorted(items, key=lambda n: n.created_at, reverse=True)


class NotificationFeed:
    """Recent notifications for one user, kept live from the push channel."""

    def __init__(
        self,
        backend: MarketplaceBackend,
        registry: SubscriptionRegistry | None = None,
        notices: NoticeBoard | None = None,
        tracker: MutationTracker[str] | None = None,
        limit: int | None = None,
    ):
        self._backend = backend
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.notices = notices if notices is not None else NoticeBoard()
        self.tracker: MutationTracker[str] = tracker if tracker is not None else MutationTracker()
        self.counter = UnreadCounter(backend.count_unread_notifications, name="notifications")
        self.limit = limit or config.NOTIFICATION_PAGE_SIZE
        self.user_id: str | None = None
        self.loading = False
        self._items: list[Notification] = []
        self._generation = 0

    @property
    def items(self) -> list[Notification]:
        return list(self._items)

    def get(self, notification_id: str) -> Notification | None:
        for item in self._items:
            if item.id == notification_id:
                return item
        return None

    def listing_notifications(self) -> list[Notification]:
        return [n for n in self._items if n.type is NotificationType.LISTING]

    def _replace(self, notification: Notification):
        self._items = _newest_first([n for n in self._items if n.id != notification.id] + [notification])

    # -- lifecycle -------------------------------------------------------

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
            Scope.USER_NOTIFICATIONS,
            user_id,
            lambda: self._backend.subscribe_to_notifications(user_id, self._on_event),
        )
        if generation == self._generation:
            await self.counter.refresh(user_id)

    async def unmount(self):
        user_id = self.user_id
        self._generation += 1
        self.user_id = None
        self._items = []
        self.loading = False
        self.counter.reset()
        self.tracker.clear()
        await self.registry.close(Scope.USER_NOTIFICATIONS, user_id)

    @asynccontextmanager
    async def mounted(self, user_id: str | None) -> AsyncIterator[NotificationFeed]:
        await self.mount(user_id)
        try:
            yield self
        finally:
            await self.unmount()

    # -- loading ---------------------------------------------------------

    async def load(self, limit: int | None = None) -> list[Notification]:
        user_id = self.user_id
        if not user_id:
            self._items = []
            return []

        generation = self._generation
        self.loading = True
        try:
            items = await self._backend.fetch_notifications(user_id, limit or self.limit)
        except Exception:
            if generation == self._generation:
                logger.warning("Failed to load notifications for %s", user_id, exc_info=True)
                self.notices.post("Unable to fetch notifications", "Please try again shortly.")
                self.loading = False
            return self.items

        if generation != self._generation:
            return self.items
        self.loading = False
        self._items = _newest_first(items)
        await self.counter.refresh(user_id)
        return self.items

    # -- writes ----------------------------------------------------------

    async def mark_read(self, notification_id: str):
        user_id = self.user_id
        if not user_id:
            return
        generation = self._generation

        existing = self.get(notification_id)
        if existing is not None and not existing.is_read:
            self._replace(existing.model_copy(update={"is_read": True}))
            self.counter.apply_delta(-1)
            self.tracker.track(notification_id)

        try:
            await self._backend.mark_notification_read(notification_id, user_id)
        except Exception:
            logger.warning("Failed to mark notification %s read", notification_id, exc_info=True)
            if generation != self._generation:
                return
            self.tracker.discard(notification_id)
            if existing is not None:
                self._replace(existing)
            await self.counter.refresh(user_id)

    async def mark_all_read(self):
        user_id = self.user_id
        if not user_id:
            return
        generation = self._generation

        before = self.items
        unread_ids = [n.id for n in before if not n.is_read]
        self.tracker.track_many(unread_ids)
        self._items = [n.model_copy(update={"is_read": True}) if not n.is_read else n for n in before]
        self.counter.set(0)

        try:
            await self._backend.mark_all_notifications_read(user_id)
        except Exception:
            logger.warning("Failed to mark all notifications read for %s", user_id, exc_info=True)
            if generation != self._generation:
                return
            self.notices.post("Unable to update notifications", "Please try again shortly.")
            for notification_id in unread_ids:
                self.tracker.discard(notification_id)
            self._items = before
            await self.counter.refresh(user_id)

    # -- push ------------------------------------------------------------

    def _on_event(self, notification: Notification, event: ChangeEvent):
        if not self.user_id or notification.user_id != self.user_id:
            return

        previous = self.get(notification.id)
        if event is ChangeEvent.DELETE:
            self._items = [n for n in self._items if n.id != notification.id]
            if previous is not None and not previous.is_read:
                self.counter.apply_delta(-1)
            return

        self._replace(notification)

        if event is ChangeEvent.INSERT and not notification.is_read:
            if previous is None and not self.tracker.consume(notification.id):
                self.counter.apply_delta(1)
        elif event is ChangeEvent.UPDATE and notification.is_read:
            echo = self.tracker.consume(notification.id)
            if not echo and (previous is None or not previous.is_read):
                self.counter.apply_delta(-1)
