"""
Shared pytest fixtures for the marketsync test suite.

Push delivery in the local store is scheduled on the event loop, so tests
call ``settle()`` after a write to let echoes and background tasks run.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from marketsync.errors import BackendError
from marketsync.models import ConversationSummary, Message
from marketsync.storage import MarketplaceStore

SELLER = "seller-1"
BUYER = "buyer-1"
OTHER_BUYER = "buyer-2"

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 10):
    """Let call_soon deliveries and spawned tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class GatedBackend:
    """Wraps a backend; message fetches for gated conversations wait for release."""

    def __init__(self, inner):
        self._inner = inner
        self.gates: dict[str, asyncio.Event] = {}
        self.fetch_calls: list[str] = []

    def gate(self, conversation_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[conversation_id] = event
        return event

    async def fetch_messages(self, conversation_id, limit, before=None):
        self.fetch_calls.append(conversation_id)
        gate = self.gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        return await self._inner.fetch_messages(conversation_id, limit, before)

    def __getattr__(self, name):
        return getattr(self._inner, name)


class FailingBackend:
    """Wraps a backend; the named operations raise BackendError."""

    def __init__(self, inner, *failing: str):
        self._inner = inner
        self.failing = set(failing)

    def __getattr__(self, name):
        if name in self.failing:

            async def _fail(*args, **kwargs):
                raise BackendError(f"{name} unavailable")

            return _fail
        return getattr(self._inner, name)


def add_conversation(
    store: MarketplaceStore,
    conversation_id: str,
    seller: str = SELLER,
    buyer: str = BUYER,
    product_id: str | None = None,
    last_message_at: datetime | None = None,
) -> ConversationSummary:
    conv = ConversationSummary(
        id=conversation_id,
        seller_id=seller,
        buyer_id=buyer,
        product_id=product_id,
        last_message_at=last_message_at,
    )
    store.insert_conversation(conv)
    return conv


def add_messages(
    store: MarketplaceStore,
    conversation_id: str,
    count: int,
    sender: str = BUYER,
    receiver: str = SELLER,
    start: datetime = BASE_TIME,
    is_read: bool = False,
) -> list[Message]:
    messages = []
    for i in range(count):
        msg = Message(
            id=f"{conversation_id}-m{i:04d}",
            conversation_id=conversation_id,
            sender_id=sender,
            receiver_id=receiver,
            content=f"message {i}",
            is_read=is_read,
            created_at=start + timedelta(seconds=i),
        )
        store.insert_message(msg)
        messages.append(msg)
    if messages:
        last = messages[-1]
        store.conn.execute(
            "UPDATE conversations SET last_message = ?, last_message_at = ? WHERE id = ?",
            (last.content, last.created_at.isoformat(timespec="microseconds"), conversation_id),
        )
        store.conn.commit()
    return messages


@pytest.fixture
def store(tmp_path):
    s = MarketplaceStore(tmp_path / "marketplace.db")
    s.upsert_user(SELLER, "Sam Seller")
    s.upsert_user(BUYER, "Bea Buyer")
    s.upsert_user(OTHER_BUYER, "Otto Other")
    s.upsert_product("p-1", "Road bike", 250.0, "USD")
    yield s
    s.close()


@pytest.fixture
def clock():
    return ManualClock()
