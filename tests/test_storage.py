"""Tests for the SQLite store and its push hub."""

from datetime import timedelta

import pytest

from conftest import BASE_TIME, BUYER, OTHER_BUYER, SELLER, add_conversation, add_messages, settle
from marketsync.errors import BackendError, NotFoundError
from marketsync.models import ChangeEvent, Favorite, Notification
from marketsync.storage import PushHub


class TestPushHub:
    @pytest.mark.asyncio
    async def test_delivery_is_deferred_and_filtered(self):
        hub = PushHub()
        seen = []
        hub.subscribe("mine", "messages", lambda row: row["to"] == "a", lambda row, event: seen.append((row, event)))

        hub.publish("messages", {"to": "a"}, ChangeEvent.INSERT)
        hub.publish("messages", {"to": "b"}, ChangeEvent.INSERT)
        hub.publish("favorites", {"to": "a"}, ChangeEvent.INSERT)
        assert seen == []

        await settle()
        assert seen == [({"to": "a"}, ChangeEvent.INSERT)]

    @pytest.mark.asyncio
    async def test_closed_channel_gets_nothing(self):
        hub = PushHub()
        seen = []
        handle = hub.subscribe("mine", "messages", lambda row: True, lambda row, event: seen.append(row))

        hub.publish("messages", {"id": 1}, ChangeEvent.INSERT)
        await handle.unsubscribe()
        await settle()

        assert seen == []
        assert handle.active is False
        assert hub.channel_names() == []

    @pytest.mark.asyncio
    async def test_handler_error_is_logged(self, caplog):
        hub = PushHub()

        def broken(row, event):
            raise RuntimeError("boom")

        hub.subscribe("fragile", "messages", lambda row: True, broken)
        hub.publish("messages", {}, ChangeEvent.INSERT)
        await settle()
        assert "Push handler on channel fragile failed" in caplog.text


class TestConversations:
    @pytest.mark.asyncio
    async def test_list_orders_recent_first_with_undated_last(self, store):
        add_conversation(store, "c-undated")
        add_conversation(store, "c-old", buyer=OTHER_BUYER, last_message_at=BASE_TIME)
        add_conversation(store, "c-new", product_id="p-1", last_message_at=BASE_TIME + timedelta(hours=1))

        conversations = await store.list_conversations_for_user(SELLER)
        assert [c.id for c in conversations] == ["c-new", "c-old", "c-undated"]
        assert conversations[0].product.title == "Road bike"
        assert conversations[0].buyer.full_name == "Bea Buyer"

        assert [c.id for c in await store.list_conversations_for_user(OTHER_BUYER)] == ["c-old"]

    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, store):
        first = await store.get_or_create_conversation(SELLER, BUYER, "p-1")
        again = await store.get_or_create_conversation(SELLER, BUYER, "p-1")
        other = await store.get_or_create_conversation(SELLER, BUYER)
        assert first == again
        assert other != first

    @pytest.mark.asyncio
    async def test_fetch_conversation_with_viewer_unread(self, store):
        add_conversation(store, "c-1")
        add_messages(store, "c-1", 2)

        assert (await store.fetch_conversation("c-1", SELLER)).unread_count == 2
        assert (await store.fetch_conversation("c-1", BUYER)).unread_count == 0
        assert await store.fetch_conversation("c-missing") is None

    @pytest.mark.asyncio
    async def test_delete_cascades_to_messages(self, store):
        add_conversation(store, "c-1")
        add_messages(store, "c-1", 4)

        await store.delete_conversation("c-1")
        assert await store.count_unread_messages(SELLER) == 0
        with pytest.raises(NotFoundError):
            await store.delete_conversation("c-1")


class TestMessages:
    @pytest.mark.asyncio
    async def test_fetch_pages_are_ascending(self, store):
        add_conversation(store, "c-1")
        seeded = add_messages(store, "c-1", 10)

        newest = await store.fetch_messages("c-1", 4)
        assert [m.id for m in newest] == [m.id for m in seeded[6:]]

        older = await store.fetch_messages("c-1", 4, before=newest[0].created_at)
        assert [m.id for m in older] == [m.id for m in seeded[2:6]]

    @pytest.mark.asyncio
    async def test_send_updates_conversation_and_publishes(self, store):
        add_conversation(store, "c-1")
        received = []
        await store.subscribe_to_incoming_messages(SELLER, received.append)
        await store.subscribe_to_incoming_messages(BUYER, lambda m: pytest.fail("wrong receiver"))

        message = await store.send_message("c-1", BUYER, SELLER, "offer: 200?")
        await settle()

        assert [m.id for m in received] == [message.id]
        conv = await store.fetch_conversation("c-1", SELLER)
        assert conv.last_message == "offer: 200?"
        assert conv.last_message_at == message.created_at
        assert conv.unread_count == 1
        assert await store.count_unread_notifications(SELLER) == 1

    @pytest.mark.asyncio
    async def test_send_to_missing_conversation(self, store):
        with pytest.raises(NotFoundError):
            await store.send_message("c-missing", BUYER, SELLER, "hello")

    @pytest.mark.asyncio
    async def test_send_timestamps_strictly_increase(self, store):
        add_conversation(store, "c-1")
        sent = [await store.send_message("c-1", BUYER, SELLER, f"m{i}") for i in range(5)]
        stamps = [m.created_at for m in sent]
        assert stamps == sorted(set(stamps))

    @pytest.mark.asyncio
    async def test_mark_read_publishes_updates_not_inserts(self, store):
        add_conversation(store, "c-1")
        add_messages(store, "c-1", 3)
        thread_events = []
        await store.subscribe_to_conversation("c-1", thread_events.append)
        raw = []
        store.hub.subscribe("raw", "messages", lambda row: True, lambda row, event: raw.append(event))

        await store.mark_conversation_read("c-1", SELLER)
        await settle()

        assert await store.count_unread_messages(SELLER) == 0
        assert thread_events == []
        assert raw == [ChangeEvent.UPDATE] * 3

    def test_duplicate_insert_is_backend_error(self, store):
        add_conversation(store, "c-1")
        with pytest.raises(BackendError):
            add_conversation(store, "c-1")


class TestNotificationsAndFavorites:
    @pytest.mark.asyncio
    async def test_notification_meta_round_trips(self, store):
        store.insert_notification(
            Notification(
                id="n-1",
                user_id=SELLER,
                type="listing",
                title="Heads up",
                created_at=BASE_TIME,
                meta={"kind": "back_online", "product_id": "p-1"},
            )
        )
        [fetched] = await store.fetch_notifications(SELLER, 10)
        assert fetched.meta["product_id"] == "p-1"
        assert fetched.listing_kind.value == "back_online"

    @pytest.mark.asyncio
    async def test_mark_missing_notification(self, store):
        with pytest.raises(NotFoundError):
            await store.mark_notification_read("n-missing", SELLER)

    @pytest.mark.asyncio
    async def test_add_favorite_is_idempotent(self, store):
        first = await store.add_favorite(BUYER, "p-1")
        again = await store.add_favorite(BUYER, "p-1")
        assert first.id == again.id
        assert await store.count_favorites(BUYER) == 1

    @pytest.mark.asyncio
    async def test_remove_favorite_checks_owner(self, store):
        store.insert_favorite(Favorite(id="f-1", user_id=BUYER, product_id="p-1", created_at=BASE_TIME))
        with pytest.raises(NotFoundError):
            await store.remove_favorite("f-1", OTHER_BUYER)
        await store.remove_favorite("f-1", BUYER)
        assert await store.count_favorites(BUYER) == 0


class TestStats:
    def test_counts(self, store):
        add_conversation(store, "c-1")
        add_messages(store, "c-1", 3)
        stats = store.get_stats()
        assert stats["users"] == 3
        assert stats["products"] == 1
        assert stats["messages"] == 3
        assert stats["unread_messages"] == 3
        assert stats["latest_message_at"] == "2025-01-01"
