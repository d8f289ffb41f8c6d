"""Unread counters: authoritative refresh plus best-effort deltas."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from . import config

logger = logging.getLogger(__name__)

CountFetcher = Callable[[str], Awaitable[int]]


class UnreadCounter:
    """A non-negative count for one (user, scope).

    The value is a projection: ``refresh`` replaces it with the backend's
    count, ``apply_delta`` nudges it between refreshes. Fetch failures keep
    the last value, since a stale badge is better than a broken one.
    """

    def __init__(self, fetch_count: CountFetcher, name: str = "unread"):
        self._fetch_count = fetch_count
        self.name = name
        self._value = 0
        self._listeners: list[Callable[[int], None]] = []
        self._generation = 0

    @property
    def value(self) -> int:
        return self._value

    @property
    def badge(self) -> str:
        if self._value <= 0:
            return ""
        if self._value > config.BADGE_CAP:
            return f"{config.BADGE_CAP}+"
        return str(self._value)

    def on_change(self, listener: Callable[[int], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def set(self, value: int):
        value = max(0, int(value))
        if value == self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.warning("Counter listener for %s failed", self.name, exc_info=True)

    def apply_delta(self, delta: int):
        self.set(self._value + delta)

    def reset(self):
        """Invalidate in-flight refreshes and zero the value (logout/unmount)."""
        self._generation += 1
        self.set(0)

    async def refresh(self, user_id: str | None) -> int:
        if not user_id:
            self.reset()
            return 0

        generation = self._generation
        try:
            count = await self._fetch_count(user_id)
        except Exception:
            logger.warning("Failed to count %s for %s", self.name, user_id, exc_info=True)
            return self._value

        if generation != self._generation:
            logger.debug("Dropped stale %s count for %s", self.name, user_id)
            return self._value
        self.set(count)
        return self._value
