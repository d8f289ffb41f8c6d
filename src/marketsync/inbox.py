"""The messages surface: roster, active thread and unread badge for one viewer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from . import config
from .backend import MarketplaceBackend
from .cache import TTLCache
from .counter import UnreadCounter
from .errors import NoticeBoard, ValidationError
from .models import ConversationSummary, Message
from .roster import ConversationRoster
from .subscriptions import Scope, SubscriptionRegistry
from .thread import MessageThread
from .tracker import MutationTracker

logger = logging.getLogger(__name__)


def validate_message_content(content: str | None) -> str:
    """Trim and check a draft before it is sent."""
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty.")
    if len(text) > config.SEND_MAX_LENGTH:
        raise ValidationError("Message is too long.")
    return text


class Inbox:
    """Keeps one viewer's conversations, open thread and unread count in step.

    Data flow: ``mount`` opens the viewer's incoming-message channel and
    fetches the authoritative unread count. Pushed messages update the
    roster and bump the count unless they are echoes of our own sends or
    belong to the thread on screen. ``open_thread`` swaps the thread-scoped
    channel, loads the newest page and marks the conversation read.

    Every public coroutine swallows backend failures: they are logged,
    surfaced as a notice where the user should know, and leave the last
    known state in place.
    """

    def __init__(
        self,
        backend: MarketplaceBackend,
        registry: SubscriptionRegistry | None = None,
        notices: NoticeBoard | None = None,
        tracker: MutationTracker[str] | None = None,
        cache: TTLCache[list[ConversationSummary]] | None = None,
        page_size: int | None = None,
    ):
        self._backend = backend
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.notices = notices if notices is not None else NoticeBoard()
        self.tracker: MutationTracker[str] = tracker if tracker is not None else MutationTracker()
        self.counter = UnreadCounter(backend.count_unread_messages, name="messages")
        self.roster = ConversationRoster(backend, self.notices, cache)
        self.page_size = page_size
        self.thread: MessageThread | None = None
        self.user_id: str | None = None
        self.visible = False
        self.sending = False
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()

    # -- lifecycle -------------------------------------------------------

    @property
    def active_conversation_id(self) -> str | None:
        return self.thread.conversation_id if self.thread is not None else None

    @property
    def focused_conversation_id(self) -> str | None:
        return self.active_conversation_id if self.visible else None

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
            Scope.USER_CONVERSATIONS,
            user_id,
            lambda: self._backend.subscribe_to_incoming_messages(user_id, self._on_incoming),
        )
        if generation != self._generation:
            return
        await self.counter.refresh(user_id)
        if self.visible and generation == self._generation:
            await self.roster.load_all(user_id)

    async def unmount(self):
        user_id = self.user_id
        self._generation += 1
        self.user_id = None
        thread, self.thread = self.thread, None
        if thread is not None:
            thread.close()
        self.roster.clear()
        self.counter.reset()
        self.tracker.clear()
        for task in list(self._tasks):
            task.cancel()

        await self.registry.close_scope(Scope.THREAD)
        await self.registry.close(Scope.USER_CONVERSATIONS, user_id)

    @asynccontextmanager
    async def mounted(self, user_id: str | None) -> AsyncIterator[Inbox]:
        await self.mount(user_id)
        try:
            yield self
        finally:
            await self.unmount()

    async def set_visible(self, visible: bool):
        """Show or hide the surface; hiding drops the open thread."""
        self.visible = visible
        if not visible:
            await self.close_thread()
            return
        if self.user_id:
            await self.roster.load_all(self.user_id)

    async def refresh_unread(self) -> int:
        return await self.counter.refresh(self.user_id)

    # -- threads ---------------------------------------------------------

    async def open_thread(self, conversation_id: str) -> MessageThread | None:
        user_id = self.user_id
        if not user_id:
            return None

        previous = self.thread
        if previous is not None:
            previous.close()

        thread = MessageThread(self._backend, conversation_id, self.notices, self.page_size)
        self.thread = thread
        await self.registry.open(
            Scope.THREAD,
            conversation_id,
            lambda: self._backend.subscribe_to_conversation(
                conversation_id, lambda message: self._on_thread_message(thread, message)
            ),
            exclusive=True,
        )
        if self.thread is not thread:
            return None

        page = await thread.load_page()
        if page is None or self.thread is not thread:
            return thread

        await self.mark_read(conversation_id)
        return thread

    async def load_earlier(self) -> bool:
        thread = self.thread
        if thread is None:
            return False
        return await thread.load_earlier() is not None

    async def close_thread(self):
        thread, self.thread = self.thread, None
        if thread is None:
            return
        thread.close()
        await self.registry.close(Scope.THREAD, thread.conversation_id)

    async def start_conversation(
        self, seller_id: str, buyer_id: str, product_id: str | None = None
    ) -> MessageThread | None:
        try:
            conversation_id = await self._backend.get_or_create_conversation(seller_id, buyer_id, product_id)
        except Exception:
            logger.warning("Failed to open conversation", exc_info=True)
            self.notices.post("Unable to open conversation", "Please try again.")
            return None
        return await self.open_thread(conversation_id)

    # -- writes ----------------------------------------------------------

    async def mark_read(self, conversation_id: str):
        user_id = self.user_id
        if not user_id:
            return
        generation = self._generation

        cleared = self.roster.mark_read(conversation_id)
        if cleared:
            self.counter.apply_delta(-cleared)

        try:
            await self._backend.mark_conversation_read(conversation_id, user_id)
        except Exception:
            logger.warning("Failed to mark conversation %s read", conversation_id, exc_info=True)

        if generation == self._generation:
            await self.counter.refresh(user_id)

    async def _counterpart(self, conversation_id: str) -> ConversationSummary | None:
        summary = self.roster.get(conversation_id)
        if summary is not None:
            return summary
        try:
            return await self._backend.fetch_conversation(conversation_id)
        except Exception:
            logger.warning("Failed to load conversation %s", conversation_id, exc_info=True)
            return None

    async def send(self, content: str) -> Message | None:
        thread = self.thread
        user_id = self.user_id
        if thread is None or not user_id or self.sending:
            return None

        try:
            text = validate_message_content(content)
        except ValidationError as exc:
            self.notices.post("Message not sent", str(exc))
            return None

        self.sending = True
        try:
            summary = await self._counterpart(thread.conversation_id)
            if summary is None:
                self.notices.post("Message not sent", "Conversation is no longer available.")
                return None
            message = await self._backend.send_message(
                thread.conversation_id,
                user_id,
                summary.counterpart_id(user_id),
                text,
                product_id=summary.product_id,
            )
        except Exception:
            logger.warning("Failed to send message", exc_info=True)
            self.notices.post("Message not sent", "Please try again.")
            return None
        finally:
            self.sending = False

        self.tracker.track(message.id)
        if self.thread is thread:
            thread.append_live(message)
        if self.user_id == user_id:
            self.roster.apply_outgoing_message(message)
        return message

    async def delete_conversation(self, conversation_id: str) -> bool:
        user_id = self.user_id
        if not user_id:
            return False
        try:
            await self._backend.delete_conversation(conversation_id)
        except Exception:
            logger.warning("Failed to delete conversation %s", conversation_id, exc_info=True)
            self.notices.post("Could not delete conversation", "Please try again.")
            return False

        removed = self.roster.remove(conversation_id)
        if self.active_conversation_id == conversation_id:
            await self.close_thread()
        if removed is not None and removed.unread_count and self.user_id == user_id:
            await self.counter.refresh(user_id)
        return True

    # -- push handlers ---------------------------------------------------

    def _on_incoming(self, message: Message):
        if not self.user_id:
            return
        suppressed = self.tracker.consume(message.id)
        flagged = self.roster.apply_incoming_message(
            message,
            suppressed=suppressed,
            focused_conversation_id=self.focused_conversation_id,
        )
        if flagged:
            self.counter.apply_delta(1)

    def _on_thread_message(self, thread: MessageThread, message: Message):
        if thread is not self.thread or thread.closed:
            return
        echo = self.tracker.consume(message.id)
        inserted = thread.append_live(message)
        if echo or not inserted:
            return
        if message.receiver_id == self.user_id and message.conversation_id == self.focused_conversation_id:
            self._spawn(self._mark_seen(message.conversation_id, self._generation))

    async def _mark_seen(self, conversation_id: str, generation: int):
        user_id = self.user_id
        if not user_id or generation != self._generation:
            return
        try:
            await self._backend.mark_conversation_read(conversation_id, user_id)
        except Exception:
            logger.warning("Failed to mark message read", exc_info=True)
            return
        if generation == self._generation:
            await self.counter.refresh(user_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self):
        """Wait for background work (hydration, read receipts) to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.roster.drain()
