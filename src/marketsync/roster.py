"""The viewer's ordered list of conversation summaries."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable

from . import config
from .backend import MarketplaceBackend
from .cache import TTLCache
from .errors import NoticeBoard
from .models import ConversationSummary, Message
from .timing import timed

logger = logging.getLogger(__name__)


def order_by_recent(conversations: Iterable[ConversationSummary]) -> list[ConversationSummary]:
    """Most recent first; equal timestamps keep their given order, undated ones go last."""
    items = list(conversations)
    dated = [c for c in items if c.last_message_at is not None]
    undated = [c for c in items if c.last_message_at is None]
    dated.sort(key=lambda c: c.last_message_at, reverse=True)
    return dated + undated


class ConversationRoster:
    """In-memory roster merged from list fetches, push events and local edits.

    Unknown conversations referenced by a push event are hydrated in the
    background and prepended when they resolve, unless the roster picked
    them up in the meantime. ``clear`` (logout, unmount) invalidates those
    tasks and any list fetch still in flight.
    """

    def __init__(
        self,
        backend: MarketplaceBackend,
        notices: NoticeBoard | None = None,
        cache: TTLCache[list[ConversationSummary]] | None = None,
    ):
        self._backend = backend
        self.notices = notices if notices is not None else NoticeBoard()
        self.cache: TTLCache[list[ConversationSummary]] = cache if cache is not None else TTLCache()
        self.user_id: str | None = None
        self.loading = False
        self._entries: list[ConversationSummary] = []
        self._hydrating: dict[str, int] = {}
        self._applied: OrderedDict[str, None] = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        self._generation = 0

    @property
    def entries(self) -> list[ConversationSummary]:
        return list(self._entries)

    @property
    def ids(self) -> list[str]:
        return [c.id for c in self._entries]

    def get(self, conversation_id: str) -> ConversationSummary | None:
        for entry in self._entries:
            if entry.id == conversation_id:
                return entry
        return None

    def __contains__(self, conversation_id: object) -> bool:
        return any(c.id == conversation_id for c in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def _index(self, conversation_id: str) -> int | None:
        for i, entry in enumerate(self._entries):
            if entry.id == conversation_id:
                return i
        return None

    def _touched(self):
        if self.user_id:
            self.cache.invalidate(self.user_id)

    # -- loading ---------------------------------------------------------

    async def _fetch(self, user_id: str) -> list[ConversationSummary]:
        with timed("conversations:fetch") as meta:
            results = await self._backend.list_conversations_for_user(user_id)
            meta["count"] = len(results)
        return results

    async def load_all(self, user_id: str | None, prefer_cache: bool = False) -> list[ConversationSummary]:
        if not user_id:
            self.clear()
            return []

        if user_id != self.user_id:
            self.clear()
            self.user_id = user_id

        if prefer_cache:
            cached = self.cache.get(user_id)
            if cached is not None:
                self._entries = order_by_recent(cached)
                return self.entries

        generation = self._generation
        self.loading = True
        try:
            results = await self.cache.refresh(user_id, lambda: self._fetch(user_id))
        except Exception:
            if generation != self._generation:
                return self.entries
            logger.warning("Failed to load conversations for %s", user_id, exc_info=True)
            self.notices.post("Unable to load conversations", "Please try again soon.")
            return self.entries
        finally:
            if generation == self._generation:
                self.loading = False

        if generation != self._generation:
            logger.debug("Dropped stale roster for %s", user_id)
            return self.entries

        self._entries = order_by_recent(results)
        return self.entries

    def prefetch(self, user_id: str) -> asyncio.Task | None:
        """Warm the cache for ``user_id`` without touching the visible roster."""
        if not user_id or self.cache.get(user_id) is not None:
            return None

        async def _warm():
            try:
                await self.cache.refresh(user_id, lambda: self._fetch(user_id))
            except Exception:
                logger.warning("Failed to prefetch conversations for %s", user_id, exc_info=True)

        return self._spawn(_warm())

    # -- push and local updates -----------------------------------------

    def apply_incoming_message(
        self,
        message: Message,
        *,
        suppressed: bool = False,
        focused_conversation_id: str | None = None,
    ) -> bool:
        """Fold a pushed message into the roster.

        Returns True when the message counts as new unread for the viewer:
        not our own echo, not in the conversation being looked at, and not
        a redelivery of a message already applied.
        """
        if not self._remember(message.id):
            logger.debug("Ignored redelivered message %s", message.id)
            return False

        flag_unread = not suppressed and message.conversation_id != focused_conversation_id
        index = self._index(message.conversation_id)

        if index is None:
            self._hydrate(message.conversation_id, 1 if flag_unread else 0)
            return flag_unread

        existing = self._entries[index]
        if flag_unread:
            unread = existing.unread_count + 1
        elif suppressed:
            unread = existing.unread_count
        else:
            unread = 0

        newer = existing.last_message_at is None or message.created_at >= existing.last_message_at
        update = {"has_unread": unread > 0, "unread_count": unread}
        if newer:
            update.update(last_message=message.content, last_message_at=message.created_at)

        updated = existing.model_copy(update=update)
        if newer:
            del self._entries[index]
            self._entries.insert(0, updated)
        else:
            self._entries[index] = updated
        self._touched()
        return flag_unread

    def _remember(self, message_id: str) -> bool:
        """Record ``message_id``; False if it was already applied."""
        if message_id in self._applied:
            self._applied.move_to_end(message_id)
            return False
        self._applied[message_id] = None
        while len(self._applied) > config.APPLIED_MESSAGE_MEMORY:
            self._applied.popitem(last=False)
        return True

    def apply_outgoing_message(self, message: Message):
        """Optimistically reflect a message the viewer just sent."""
        self.apply_incoming_message(message, suppressed=True)

    def mark_read(self, conversation_id: str) -> int:
        """Zero the entry's unread state; returns how many were unread."""
        index = self._index(conversation_id)
        if index is None:
            return 0
        existing = self._entries[index]
        if existing.unread_count == 0 and not existing.has_unread:
            return 0
        self._entries[index] = existing.model_copy(update={"has_unread": False, "unread_count": 0})
        self._touched()
        return existing.unread_count

    def remove(self, conversation_id: str) -> ConversationSummary | None:
        index = self._index(conversation_id)
        self._hydrating.pop(conversation_id, None)
        if index is None:
            return None
        self._touched()
        return self._entries.pop(index)

    def restore(self, summary: ConversationSummary):
        """Put back an entry removed optimistically."""
        if summary.id in self:
            return
        self._entries = order_by_recent([summary, *self._entries])

    # -- hydration -------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _hydrate(self, conversation_id: str, unread: int):
        if conversation_id in self._hydrating:
            self._hydrating[conversation_id] += unread
            return
        self._hydrating[conversation_id] = unread
        self._spawn(self._hydrate_one(conversation_id, self._generation))

    async def _hydrate_one(self, conversation_id: str, generation: int):
        try:
            summary = await self._backend.fetch_conversation(conversation_id)
        except Exception:
            if generation == self._generation:
                logger.warning("Failed to hydrate conversation %s from realtime message", conversation_id, exc_info=True)
                self._hydrating.pop(conversation_id, None)
            return

        if generation != self._generation:
            return
        unread = self._hydrating.pop(conversation_id, None)
        if summary is None or unread is None or conversation_id in self:
            return

        self._entries.insert(0, summary.model_copy(update={"has_unread": unread > 0, "unread_count": unread}))
        self._touched()

    async def drain(self):
        """Wait for background hydration and prefetch tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self):
        self._generation += 1
        self._entries = []
        self._hydrating.clear()
        self._applied.clear()
        self.loading = False
        for task in list(self._tasks):
            task.cancel()
