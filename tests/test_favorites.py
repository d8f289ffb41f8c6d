"""Tests for the favorites feed."""

from datetime import timedelta

import pytest

from conftest import BASE_TIME, BUYER, FailingBackend, settle
from marketsync.favorites import FavoritesFeed, clamp_limit
from marketsync.models import ChangeEvent, Favorite


@pytest.fixture
def seeded(store):
    store.upsert_product("p-2", "Tent", 80.0, "USD")
    store.upsert_product("p-3", "Kayak")
    store.insert_favorite(Favorite(id="f-1", user_id=BUYER, product_id="p-1", created_at=BASE_TIME))
    store.insert_favorite(
        Favorite(id="f-2", user_id=BUYER, product_id="p-2", created_at=BASE_TIME + timedelta(minutes=1))
    )
    return store


async def visible_feed(backend):
    feed = FavoritesFeed(backend)
    await feed.mount(BUYER)
    await feed.set_visible(True)
    return feed


class TestClampLimit:
    def test_bounds(self):
        assert clamp_limit(None) == 30
        assert clamp_limit(0) == 30
        assert clamp_limit(-4) == 1
        assert clamp_limit(500) == 60
        assert clamp_limit(12) == 12


class TestLoad:
    @pytest.mark.asyncio
    async def test_mount_counts_and_visible_loads(self, seeded):
        feed = await visible_feed(seeded)
        assert feed.count == 2
        assert [f.id for f in feed.items] == ["f-2", "f-1"]
        assert feed.items[0].product.title == "Tent"

    @pytest.mark.asyncio
    async def test_load_failure_posts_notice(self, seeded):
        feed = FavoritesFeed(FailingBackend(seeded, "list_favorites"))
        await feed.mount(BUYER)
        assert await feed.load() == []
        assert feed.notices.titles == ["Unable to load favorites"]


class TestMutations:
    @pytest.mark.asyncio
    async def test_add_is_counted_once(self, seeded):
        feed = await visible_feed(seeded)
        favorite = await feed.add("p-3")
        await settle()

        assert feed.count == 3
        assert feed.items[0].id == favorite.id

    @pytest.mark.asyncio
    async def test_add_existing_does_not_inflate_count(self, seeded):
        feed = FavoritesFeed(seeded)
        await feed.mount(BUYER)

        favorite = await feed.add("p-1")
        await settle()
        assert favorite.id == "f-1"
        assert feed.count == 2

    @pytest.mark.asyncio
    async def test_add_requires_user(self, seeded):
        feed = FavoritesFeed(seeded)
        assert await feed.add("p-3") is None
        assert feed.notices.titles == ["Sign in to save listings"]

    @pytest.mark.asyncio
    async def test_remove_echo_is_not_double_counted(self, seeded):
        feed = await visible_feed(seeded)
        target = feed.items[0]

        assert await feed.remove(target) is True
        await settle()

        assert feed.count == 1
        assert [f.id for f in feed.items] == ["f-1"]
        assert await seeded.count_favorites(BUYER) == 1

    @pytest.mark.asyncio
    async def test_remove_failure_rolls_back(self, seeded):
        feed = await visible_feed(FailingBackend(seeded, "remove_favorite"))
        target = feed.items[0]

        assert await feed.remove(target) is False
        assert feed.count == 2
        assert [f.id for f in feed.items] == ["f-2", "f-1"]
        assert feed.notices.titles == ["Could not remove favorite"]


class TestPush:
    @pytest.mark.asyncio
    async def test_remote_add_and_remove(self, seeded):
        feed = await visible_feed(seeded)
        other_device = FavoritesFeed(seeded)
        await other_device.mount(BUYER)

        added = await other_device.add("p-3")
        await settle()
        assert feed.count == 3
        assert feed.items[0].id == added.id

        await other_device.remove(added)
        await settle()
        assert feed.count == 2
        assert all(f.id != added.id for f in feed.items)
        assert other_device.count == 2

    @pytest.mark.asyncio
    async def test_redelivered_events_count_once(self, seeded):
        feed = await visible_feed(seeded)
        remote = Favorite(id="f-3", user_id=BUYER, product_id="p-3", created_at=BASE_TIME + timedelta(minutes=5))

        feed._on_event(remote, ChangeEvent.INSERT)
        feed._on_event(remote, ChangeEvent.INSERT)
        assert [f.id for f in feed.items] == ["f-3", "f-2", "f-1"]
        assert feed.count == 3

        feed._on_event(remote, ChangeEvent.DELETE)
        feed._on_event(remote, ChangeEvent.DELETE)
        assert [f.id for f in feed.items] == ["f-2", "f-1"]
        assert feed.count == 2

    @pytest.mark.asyncio
    async def test_unloaded_feed_refreshes_count_on_push(self, seeded):
        feed = FavoritesFeed(seeded)
        await feed.mount(BUYER)
        seeded.insert_favorite(
            Favorite(id="f-3", user_id=BUYER, product_id="p-3", created_at=BASE_TIME + timedelta(minutes=5))
        )
        remote = Favorite(id="f-3", user_id=BUYER, product_id="p-3", created_at=BASE_TIME + timedelta(minutes=5))

        feed._on_event(remote, ChangeEvent.INSERT)
        feed._on_event(remote, ChangeEvent.INSERT)
        await feed.drain()
        assert feed.count == await seeded.count_favorites(BUYER) == 3

    @pytest.mark.asyncio
    async def test_unmount_closes_channel(self, seeded):
        feed = await visible_feed(seeded)
        await feed.unmount()
        assert seeded.hub.channel_names() == []
        assert feed.count == 0
