"""Paginated message history for one conversation."""

from __future__ import annotations

import logging
from datetime import datetime

from . import config
from .backend import MarketplaceBackend
from .errors import NoticeBoard
from .models import Message, Page
from .timing import timed

logger = logging.getLogger(__name__)


def _sort_batch(messages: list[Message]) -> list[Message]:
    """Order one fetched batch by (created_at, id), dropping repeated ids."""
    seen: set[str] = set()
    ordered: list[Message] = []
    for message in sorted(messages, key=lambda m: (m.created_at, m.id)):
        if message.id in seen:
            continue
        seen.add(message.id)
        ordered.append(message)
    return ordered


class MessageThread:
    """Visible window of one conversation's history.

    The first ``load_page`` replaces the window with the newest page, keeping
    live messages that arrived during the fetch but are not in the snapshot;
    ``load_page(before=cursor)`` prepends older history. Live messages are
    appended in arrival order and deduplicated by id. After ``close`` any
    load still in flight is discarded when it resolves.
    """

    def __init__(
        self,
        backend: MarketplaceBackend,
        conversation_id: str,
        notices: NoticeBoard | None = None,
        page_size: int | None = None,
    ):
        self._backend = backend
        self.conversation_id = conversation_id
        self.notices = notices if notices is not None else NoticeBoard()
        self.page_size = page_size or config.MESSAGE_PAGE_SIZE
        self._messages: list[Message] = []
        self._ids: set[str] = set()
        self._live_ids: set[str] = set()
        self.cursor: datetime | None = None
        self.has_more = False
        self.loading = False
        self.loaded = False
        self.closed = False
        self._generation = 0

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._messages)

    def _is_current(self, generation: int) -> bool:
        return not self.closed and generation == self._generation

    async def load_page(self, limit: int | None = None, before: datetime | None = None) -> Page | None:
        if self.closed:
            return None

        limit = limit or self.page_size
        generation = self._generation
        self.loading = True
        try:
            with timed("messages:fetch", has_before=before is not None) as meta:
                fetched = await self._backend.fetch_messages(self.conversation_id, limit, before)
                meta["count"] = len(fetched)
        except Exception:
            if not self._is_current(generation):
                return None
            logger.warning("Failed to load messages for %s", self.conversation_id, exc_info=True)
            self.notices.post("Unable to load messages", "Please try again.")
            return None
        finally:
            if self._is_current(generation):
                self.loading = False

        if not self._is_current(generation):
            logger.debug("Dropped stale page for %s", self.conversation_id)
            return None

        batch = _sort_batch(fetched)
        if before is None:
            batch_ids = {m.id for m in batch}
            live = [m for m in self._messages if m.id in self._live_ids and m.id not in batch_ids]
            self._messages = batch + live
            self._live_ids = {m.id for m in live}
            self.cursor = batch[0].created_at if batch else None
        else:
            older = [m for m in batch if m.id not in self._ids]
            self._messages = older + self._messages
            if batch:
                self.cursor = batch[0].created_at

        self._ids = {m.id for m in self._messages}
        self.has_more = len(fetched) >= limit
        self.loaded = True
        return Page(messages=batch, has_more=self.has_more, cursor=self.cursor)

    async def load_earlier(self) -> Page | None:
        if not self.has_more or self.cursor is None:
            return None
        return await self.load_page(before=self.cursor)

    def append_live(self, message: Message) -> bool:
        """Append a pushed or locally sent message unless its id is already here."""
        if self.closed or message.conversation_id != self.conversation_id:
            return False
        if message.id in self._ids:
            return False
        self._messages.append(message)
        self._ids.add(message.id)
        self._live_ids.add(message.id)
        return True

    def close(self):
        self.closed = True
        self._generation += 1
        self.loading = False
