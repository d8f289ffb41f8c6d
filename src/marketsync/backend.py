"""The contract marketsync expects from the hosted store and its push channel.

Push delivery is at-least-once and unordered relative to query responses.
Handlers are plain callables invoked on the event loop; anything async
they need to do must be scheduled by the caller.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Protocol, runtime_checkable

from .models import ChangeEvent, ConversationSummary, Favorite, Message, Notification

MessageHandler = Callable[[Message], None]
NotificationHandler = Callable[[Notification, ChangeEvent], None]
FavoriteHandler = Callable[[Favorite, ChangeEvent], None]


@runtime_checkable
class Subscription(Protocol):
    async def unsubscribe(self) -> None:
        """Stop delivery. Safe to call more than once."""
        ...


class MarketplaceBackend(Protocol):
    # Conversations and messages
    async def list_conversations_for_user(self, user_id: str) -> list[ConversationSummary]: ...

    async def fetch_conversation(self, conversation_id: str) -> ConversationSummary | None: ...

    async def get_or_create_conversation(
        self, seller_id: str, buyer_id: str, product_id: str | None = None
    ) -> str: ...

    async def fetch_messages(
        self, conversation_id: str, limit: int, before: datetime | None = None
    ) -> list[Message]: ...

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        product_id: str | None = None,
    ) -> Message: ...

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def count_unread_messages(self, user_id: str) -> int: ...

    async def subscribe_to_incoming_messages(
        self, user_id: str, on_message: MessageHandler
    ) -> Subscription: ...

    async def subscribe_to_conversation(
        self, conversation_id: str, on_message: MessageHandler
    ) -> Subscription: ...

    # Notifications
    async def fetch_notifications(self, user_id: str, limit: int) -> list[Notification]: ...

    async def count_unread_notifications(self, user_id: str) -> int: ...

    async def mark_notification_read(self, notification_id: str, user_id: str) -> None: ...

    async def mark_all_notifications_read(self, user_id: str) -> None: ...

    async def subscribe_to_notifications(
        self, user_id: str, on_event: NotificationHandler
    ) -> Subscription: ...

    # Favorites
    async def list_favorites(self, user_id: str, limit: int) -> list[Favorite]: ...

    async def count_favorites(self, user_id: str) -> int: ...

    async def add_favorite(self, user_id: str, product_id: str) -> Favorite: ...

    async def remove_favorite(self, favorite_id: str, user_id: str) -> None: ...

    async def subscribe_to_favorites(
        self, user_id: str, on_event: FavoriteHandler
    ) -> Subscription: ...
