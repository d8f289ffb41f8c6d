"""SQLite-backed marketplace store with an in-process push hub.

This is the local stand-in for the hosted database: it implements
``MarketplaceBackend`` over one SQLite file and publishes row changes to
subscribers the way the realtime channel does, asynchronously and after
the write has returned.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .backend import FavoriteHandler, MessageHandler, NotificationHandler
from .errors import BackendError, NotFoundError
from .models import ChangeEvent, ConversationSummary, Favorite, Message, Notification
from .rows import (
    conversation_from_row,
    decode_rows,
    favorite_from_row,
    format_timestamp,
    message_from_row,
    notification_from_row,
)

logger = logging.getLogger(__name__)

RowPredicate = Callable[[dict[str, Any]], bool]
RowHandler = Callable[[dict[str, Any], ChangeEvent], None]


class HubSubscription:
    """Handle for one hub channel."""

    def __init__(self, hub: PushHub, channel_id: int, name: str):
        self._hub = hub
        self.channel_id = channel_id
        self.name = name

    @property
    def active(self) -> bool:
        return self.channel_id in self._hub._channels

    async def unsubscribe(self) -> None:
        self._hub._channels.pop(self.channel_id, None)


class PushHub:
    """Delivers row changes to channels whose filter matches.

    Delivery is scheduled on the running loop, never inline with the
    write, and is skipped if the channel was closed in the meantime.
    """

    def __init__(self):
        self._channels: dict[int, tuple[str, str, RowPredicate, RowHandler]] = {}
        self._next_id = 0

    def subscribe(self, name: str, table: str, predicate: RowPredicate, handler: RowHandler) -> HubSubscription:
        self._next_id += 1
        self._channels[self._next_id] = (name, table, predicate, handler)
        logger.debug("Opened channel %s (%s)", name, self._next_id)
        return HubSubscription(self, self._next_id, name)

    def channel_names(self) -> list[str]:
        return [name for name, _, _, _ in self._channels.values()]

    def publish(self, table: str, row: dict[str, Any], event: ChangeEvent):
        targets = [
            channel_id
            for channel_id, (_, channel_table, predicate, _) in self._channels.items()
            if channel_table == table and predicate(row)
        ]
        if not targets:
            return

        loop = asyncio.get_running_loop()
        for channel_id in targets:
            loop.call_soon(self._deliver, channel_id, dict(row), event)

    def _deliver(self, channel_id: int, row: dict[str, Any], event: ChangeEvent):
        channel = self._channels.get(channel_id)
        if channel is None:
            return
        name, _, _, handler = channel
        try:
            handler(row, event)
        except Exception:
            logger.warning("Push handler on channel %s failed", name, exc_info=True)


class MarketplaceStore:
    """SQLite-backed storage for conversations, messages, notifications and favorites."""

    def __init__(self, db_path: Path | str, hub: PushHub | None = None):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.hub = hub or PushHub()
        self._last_ts: datetime | None = None
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                full_name TEXT,
                avatar_url TEXT
            );

            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                price REAL,
                currency TEXT
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                product_id TEXT,
                seller_id TEXT NOT NULL,
                buyer_id TEXT NOT NULL,
                last_message TEXT,
                last_message_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_conversations_parties
                ON conversations(seller_id, buyer_id, IFNULL(product_id, ''));

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                sender_id TEXT,
                receiver_id TEXT,
                product_id TEXT,
                content TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conv_created
                ON messages(conversation_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_messages_receiver_unread
                ON messages(receiver_id, is_read);

            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                related_id TEXT,
                title TEXT NOT NULL,
                content TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                meta TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_notifications_user
                ON notifications(user_id, created_at);

            CREATE TABLE IF NOT EXISTS favorites (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                product_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, product_id)
            );
        """)
        self.conn.commit()

    # -- helpers ---------------------------------------------------------

    def _now(self) -> datetime:
        """Current time, strictly increasing across calls."""
        now = datetime.now(timezone.utc)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise BackendError(str(exc)) from exc

    def _user_row(self, user_id: str | None) -> dict | None:
        if not user_id:
            return None
        row = self._execute("SELECT id, full_name, avatar_url FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else {"id": user_id}

    def _product_row(self, product_id: str | None) -> dict | None:
        if not product_id:
            return None
        row = self._execute(
            "SELECT id, title, price, currency FROM products WHERE id = ?", (product_id,)
        ).fetchone()
        return dict(row) if row else None

    def _conversation_row(self, row: sqlite3.Row, viewer_id: str | None = None) -> dict:
        data = dict(row)
        data["product"] = self._product_row(data.get("product_id"))
        data["seller"] = self._user_row(data["seller_id"])
        data["buyer"] = self._user_row(data["buyer_id"])
        if viewer_id:
            data["unread_count"] = self._execute(
                """SELECT COUNT(*) FROM messages
                   WHERE conversation_id = ? AND receiver_id = ? AND is_read = 0""",
                (data["id"], viewer_id),
            ).fetchone()[0]
        return data

    @staticmethod
    def _notification_row(row: sqlite3.Row) -> dict:
        data = dict(row)
        data["meta"] = json.loads(data["meta"]) if data.get("meta") else {}
        return data

    # -- seeding (sync, used by the importer) ----------------------------

    def upsert_user(self, user_id: str, full_name: str | None = None, avatar_url: str | None = None):
        self._execute(
            "INSERT OR REPLACE INTO users (id, full_name, avatar_url) VALUES (?, ?, ?)",
            (user_id, full_name, avatar_url),
        )
        self.conn.commit()

    def upsert_product(self, product_id: str, title: str, price: float | None = None, currency: str | None = None):
        self._execute(
            "INSERT OR REPLACE INTO products (id, title, price, currency) VALUES (?, ?, ?, ?)",
            (product_id, title, price, currency),
        )
        self.conn.commit()

    def conversation_exists(self, conversation_id: str) -> bool:
        row = self._execute("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return row is not None

    def insert_conversation(self, conv: ConversationSummary, replace: bool = False):
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        created = conv.updated_at or conv.last_message_at or self._now()
        self._execute(
            f"""{verb} INTO conversations (id, product_id, seller_id, buyer_id,
                last_message, last_message_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                conv.id,
                conv.product_id,
                conv.seller_id,
                conv.buyer_id,
                conv.last_message,
                format_timestamp(conv.last_message_at) if conv.last_message_at else None,
                format_timestamp(created),
                format_timestamp(conv.updated_at) if conv.updated_at else None,
            ),
        )
        self.conn.commit()

    def insert_message(self, msg: Message, replace: bool = False):
        """Store a message without publishing or touching the conversation."""
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        self._execute(
            f"""{verb} INTO messages (id, conversation_id, sender_id, receiver_id,
                product_id, content, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                msg.id,
                msg.conversation_id,
                msg.sender_id,
                msg.receiver_id,
                msg.product_id,
                msg.content,
                int(msg.is_read),
                format_timestamp(msg.created_at),
            ),
        )
        self.conn.commit()

    def insert_notification(self, notification: Notification, replace: bool = False):
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        self._execute(
            f"""{verb} INTO notifications (id, user_id, type, related_id, title,
                content, is_read, created_at, meta)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                notification.id,
                notification.user_id,
                notification.type.value,
                notification.related_id,
                notification.title,
                notification.content,
                int(notification.is_read),
                format_timestamp(notification.created_at),
                json.dumps(notification.meta) if notification.meta else None,
            ),
        )
        self.conn.commit()

    def insert_favorite(self, favorite: Favorite, replace: bool = False):
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        self._execute(
            f"""{verb} INTO favorites (id, user_id, product_id, created_at)
                VALUES (?, ?, ?, ?)""",
            (favorite.id, favorite.user_id, favorite.product_id, format_timestamp(favorite.created_at)),
        )
        self.conn.commit()

    # -- conversations ---------------------------------------------------

    async def list_conversations_for_user(self, user_id: str) -> list[ConversationSummary]:
        rows = self._execute(
            """SELECT * FROM conversations
               WHERE seller_id = ? OR buyer_id = ?
               ORDER BY last_message_at IS NULL, last_message_at DESC""",
            (user_id, user_id),
        ).fetchall()
        return decode_rows((self._conversation_row(r, user_id) for r in rows), conversation_from_row)

    async def fetch_conversation(
        self, conversation_id: str, viewer_id: str | None = None
    ) -> ConversationSummary | None:
        row = self._execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if not row:
            return None
        return conversation_from_row(self._conversation_row(row, viewer_id))

    async def get_or_create_conversation(
        self, seller_id: str, buyer_id: str, product_id: str | None = None
    ) -> str:
        row = self._execute(
            """SELECT id FROM conversations
               WHERE seller_id = ? AND buyer_id = ? AND IFNULL(product_id, '') = IFNULL(?, '')""",
            (seller_id, buyer_id, product_id),
        ).fetchone()
        if row:
            return row["id"]

        conversation_id = uuid.uuid4().hex
        now = format_timestamp(self._now())
        self._execute(
            """INSERT INTO conversations (id, product_id, seller_id, buyer_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (conversation_id, product_id, seller_id, buyer_id, now, now),
        )
        self.conn.commit()
        return conversation_id

    async def delete_conversation(self, conversation_id: str) -> None:
        cur = self._execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        self.conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"Conversation not found: {conversation_id}")

    # -- messages --------------------------------------------------------

    async def fetch_messages(
        self, conversation_id: str, limit: int, before: datetime | None = None
    ) -> list[Message]:
        if before is not None:
            rows = self._execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ? AND created_at < ?
                   ORDER BY created_at DESC, id DESC
                   LIMIT ?""",
                (conversation_id, format_timestamp(before), limit),
            ).fetchall()
        else:
            rows = self._execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ?
                   ORDER BY created_at DESC, id DESC
                   LIMIT ?""",
                (conversation_id, limit),
            ).fetchall()

        # Newest page first from SQL, returned oldest-to-newest
        return decode_rows((dict(r) for r in reversed(rows)), message_from_row)

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        product_id: str | None = None,
    ) -> Message:
        if not self.conversation_exists(conversation_id):
            raise NotFoundError(f"Conversation not found: {conversation_id}")

        message = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            product_id=product_id,
            content=content,
            is_read=False,
            created_at=self._now(),
        )
        self.insert_message(message)

        stamp = format_timestamp(message.created_at)
        self._execute(
            """UPDATE conversations SET last_message = ?, last_message_at = ?, updated_at = ?
               WHERE id = ?""",
            (content, stamp, stamp, conversation_id),
        )
        self.conn.commit()
        self.hub.publish("messages", message.model_dump(mode="json"), ChangeEvent.INSERT)

        notification = Notification(
            id=uuid.uuid4().hex,
            user_id=receiver_id,
            type="message",
            related_id=conversation_id,
            title="New message",
            content=content[:140],
            created_at=message.created_at,
        )
        self.insert_notification(notification)
        self.hub.publish("notifications", notification.model_dump(mode="json"), ChangeEvent.INSERT)
        return message

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> None:
        rows = self._execute(
            """SELECT * FROM messages
               WHERE conversation_id = ? AND receiver_id = ? AND is_read = 0""",
            (conversation_id, user_id),
        ).fetchall()
        if not rows:
            return
        self._execute(
            """UPDATE messages SET is_read = 1
               WHERE conversation_id = ? AND receiver_id = ? AND is_read = 0""",
            (conversation_id, user_id),
        )
        self.conn.commit()
        for row in rows:
            data = dict(row)
            data["is_read"] = 1
            self.hub.publish("messages", data, ChangeEvent.UPDATE)

    async def count_unread_messages(self, user_id: str) -> int:
        return self._execute(
            "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND is_read = 0", (user_id,)
        ).fetchone()[0]

    async def subscribe_to_incoming_messages(self, user_id: str, on_message: MessageHandler) -> HubSubscription:
        return self.hub.subscribe(
            f"inbox-{user_id}",
            "messages",
            lambda row: row.get("receiver_id") == user_id,
            _inserts_only(on_message),
        )

    async def subscribe_to_conversation(self, conversation_id: str, on_message: MessageHandler) -> HubSubscription:
        return self.hub.subscribe(
            f"conversation-{conversation_id}",
            "messages",
            lambda row: row.get("conversation_id") == conversation_id,
            _inserts_only(on_message),
        )

    # -- notifications ---------------------------------------------------

    async def fetch_notifications(self, user_id: str, limit: int) -> list[Notification]:
        rows = self._execute(
            """SELECT * FROM notifications WHERE user_id = ?
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        return decode_rows((self._notification_row(r) for r in rows), notification_from_row)

    async def count_unread_notifications(self, user_id: str) -> int:
        return self._execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
        ).fetchone()[0]

    async def mark_notification_read(self, notification_id: str, user_id: str) -> None:
        row = self._execute(
            "SELECT * FROM notifications WHERE id = ? AND user_id = ?", (notification_id, user_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Notification not found: {notification_id}")
        if row["is_read"]:
            return
        self._execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
        self.conn.commit()
        data = self._notification_row(row)
        data["is_read"] = 1
        self.hub.publish("notifications", data, ChangeEvent.UPDATE)

    async def mark_all_notifications_read(self, user_id: str) -> None:
        rows = self._execute(
            "SELECT * FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
        ).fetchall()
        self._execute(
            "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,)
        )
        self.conn.commit()
        for row in rows:
            data = self._notification_row(row)
            data["is_read"] = 1
            self.hub.publish("notifications", data, ChangeEvent.UPDATE)

    def create_notification(self, notification: Notification):
        """Insert a server-side notification and publish it (trigger stand-in)."""
        self.insert_notification(notification)
        self.hub.publish("notifications", notification.model_dump(mode="json"), ChangeEvent.INSERT)

    async def subscribe_to_notifications(self, user_id: str, on_event: NotificationHandler) -> HubSubscription:
        def handle(row: dict[str, Any], event: ChangeEvent):
            on_event(notification_from_row(row), event)

        return self.hub.subscribe(
            f"notifications-{user_id}",
            "notifications",
            lambda row: row.get("user_id") == user_id,
            handle,
        )

    # -- favorites -------------------------------------------------------

    async def list_favorites(self, user_id: str, limit: int) -> list[Favorite]:
        rows = self._execute(
            """SELECT * FROM favorites WHERE user_id = ?
               ORDER BY created_at DESC LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        items = []
        for r in rows:
            data = dict(r)
            data["product"] = self._product_row(data["product_id"])
            items.append(data)
        return decode_rows(items, favorite_from_row)

    async def count_favorites(self, user_id: str) -> int:
        return self._execute("SELECT COUNT(*) FROM favorites WHERE user_id = ?", (user_id,)).fetchone()[0]

    async def add_favorite(self, user_id: str, product_id: str) -> Favorite:
        row = self._execute(
            "SELECT * FROM favorites WHERE user_id = ? AND product_id = ?", (user_id, product_id)
        ).fetchone()
        if row:
            return favorite_from_row(dict(row))

        favorite = Favorite(
            id=uuid.uuid4().hex,
            user_id=user_id,
            product_id=product_id,
            created_at=self._now(),
        )
        self.insert_favorite(favorite)
        self.hub.publish("favorites", favorite.model_dump(mode="json"), ChangeEvent.INSERT)
        return favorite

    async def remove_favorite(self, favorite_id: str, user_id: str) -> None:
        row = self._execute(
            "SELECT * FROM favorites WHERE id = ? AND user_id = ?", (favorite_id, user_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Favorite not found: {favorite_id}")
        self._execute("DELETE FROM favorites WHERE id = ?", (favorite_id,))
        self.conn.commit()
        self.hub.publish("favorites", dict(row), ChangeEvent.DELETE)

    async def subscribe_to_favorites(self, user_id: str, on_event: FavoriteHandler) -> HubSubscription:
        def handle(row: dict[str, Any], event: ChangeEvent):
            on_event(favorite_from_row(row), event)

        return self.hub.subscribe(
            f"favorites-{user_id}",
            "favorites",
            lambda row: row.get("user_id") == user_id,
            handle,
        )

    # -- stats -----------------------------------------------------------

    def get_stats(self) -> dict:
        """Row counts per table."""
        counts = {}
        for table in ("users", "products", "conversations", "messages", "notifications", "favorites"):
            counts[table] = self._execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        unread = self._execute("SELECT COUNT(*) FROM messages WHERE is_read = 0").fetchone()[0]
        latest = self._execute("SELECT MAX(created_at) FROM messages").fetchone()[0]
        counts["unread_messages"] = unread
        counts["latest_message_at"] = _format_day(latest)
        return counts

    def close(self):
        self.conn.close()


def _inserts_only(on_message: MessageHandler) -> RowHandler:
    def handle(row: dict[str, Any], event: ChangeEvent):
        if event is ChangeEvent.INSERT:
            on_message(message_from_row(row))

    return handle


def _format_day(value: str | None) -> str | None:
    if value is None:
        return None
    return datetime.fromisoformat(value).strftime("%Y-%m-%d")
