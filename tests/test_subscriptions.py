"""Tests for SubscriptionRegistry."""

import pytest

from marketsync.subscriptions import Scope, SubscriptionRegistry


class FakeHandle:
    def __init__(self, name, fail=False):
        self.name = name
        self.fail = fail
        self.closed = 0

    async def unsubscribe(self):
        self.closed += 1
        if self.fail:
            raise RuntimeError("channel gone")


def factory_for(name, created, fail_unsubscribe=False):
    async def factory():
        handle = FakeHandle(name, fail=fail_unsubscribe)
        created.append(handle)
        return handle

    return factory


class TestOpenClose:
    @pytest.mark.asyncio
    async def test_reopening_key_closes_previous_handle(self):
        registry = SubscriptionRegistry()
        created = []

        await registry.open(Scope.USER_CONVERSATIONS, "u-1", factory_for("a", created))
        await registry.open(Scope.USER_CONVERSATIONS, "u-1", factory_for("b", created))

        assert [h.closed for h in created] == [1, 0]
        assert registry.active(Scope.USER_CONVERSATIONS) == ["u-1"]
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_exclusive_switch_keeps_one_thread_open(self):
        registry = SubscriptionRegistry()
        created = []

        for cid in ["c-1", "c-2", "c-3", "c-2"]:
            await registry.open(Scope.THREAD, cid, factory_for(cid, created), exclusive=True)
            assert len(registry.active(Scope.THREAD)) == 1

        assert registry.active(Scope.THREAD) == ["c-2"]
        assert sum(1 for h in created if h.closed == 0) == 1

    @pytest.mark.asyncio
    async def test_non_exclusive_keys_coexist(self):
        registry = SubscriptionRegistry()
        created = []
        await registry.open(Scope.THREAD, "c-1", factory_for("c-1", created))
        await registry.open(Scope.THREAD, "c-2", factory_for("c-2", created))
        assert sorted(registry.active(Scope.THREAD)) == ["c-1", "c-2"]

    @pytest.mark.asyncio
    async def test_empty_key_opens_nothing(self):
        registry = SubscriptionRegistry()
        created = []
        assert await registry.open(Scope.USER_NOTIFICATIONS, None, factory_for("x", created)) is None
        assert await registry.open(Scope.USER_NOTIFICATIONS, "", factory_for("x", created)) is None
        assert created == []

    @pytest.mark.asyncio
    async def test_factory_failure_is_logged(self, caplog):
        registry = SubscriptionRegistry()

        async def broken():
            raise RuntimeError("refused")

        assert await registry.open(Scope.USER_FAVORITES, "u-1", broken) is None
        assert not registry.is_open(Scope.USER_FAVORITES, "u-1")
        assert "Failed to subscribe user-favorites:u-1" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe_failure_still_forgets_handle(self, caplog):
        registry = SubscriptionRegistry()
        created = []
        await registry.open(Scope.THREAD, "c-1", factory_for("c-1", created, fail_unsubscribe=True))

        await registry.close(Scope.THREAD, "c-1")
        assert not registry.is_open(Scope.THREAD, "c-1")
        assert "Failed to unsubscribe thread:c-1" in caplog.text

    @pytest.mark.asyncio
    async def test_close_all(self):
        registry = SubscriptionRegistry()
        created = []
        await registry.open(Scope.USER_CONVERSATIONS, "u-1", factory_for("a", created))
        await registry.open(Scope.THREAD, "c-1", factory_for("b", created))
        await registry.open(Scope.USER_NOTIFICATIONS, "u-1", factory_for("c", created))

        await registry.close_all()
        assert len(registry) == 0
        assert all(h.closed == 1 for h in created)


class TestScoped:
    @pytest.mark.asyncio
    async def test_released_on_exception(self):
        registry = SubscriptionRegistry()
        created = []

        with pytest.raises(ValueError):
            async with registry.scoped(Scope.THREAD, "c-1", factory_for("c-1", created)) as handle:
                assert handle is created[0]
                raise ValueError("boom")

        assert created[0].closed == 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_replaced_handle_is_left_alone(self):
        registry = SubscriptionRegistry()
        created = []

        async with registry.scoped(Scope.THREAD, "c-1", factory_for("old", created)):
            await registry.open(Scope.THREAD, "c-1", factory_for("new", created))

        assert registry.is_open(Scope.THREAD, "c-1")
        assert [h.closed for h in created] == [1, 0]
