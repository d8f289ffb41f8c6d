"""Recognise push echoes of the local user's own optimistic writes."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from . import config

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class MutationTracker(Generic[K]):
    """Short-lived set of ids the local user just mutated.

    A surface calls ``track`` right after applying a write optimistically.
    When the matching push event arrives, ``consume`` returns True once and
    the surface skips the count delta for it. Entries older than the window
    are dropped, so a missed echo cannot suppress a later genuine event
    forever. Correctness depends on the push channel echoing within the
    window; an echo that arrives later is counted twice until the next
    authoritative refresh.
    """

    def __init__(self, window: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.window = config.ECHO_WINDOW_SECONDS if window is None else window
        self._clock = clock
        self._expires: dict[K, float] = {}

    def _purge(self, now: float):
        expired = [key for key, deadline in self._expires.items() if deadline <= now]
        for key in expired:
            del self._expires[key]

    def track(self, key: K):
        now = self._clock()
        self._purge(now)
        self._expires[key] = now + self.window

    def track_many(self, keys):
        for key in keys:
            self.track(key)

    def consume(self, key: K) -> bool:
        """Return True (and forget the id) if this event is our own echo."""
        now = self._clock()
        self._purge(now)
        if key in self._expires:
            del self._expires[key]
            logger.debug("Suppressed echo for %s", key)
            return True
        return False

    def discard(self, key: K):
        self._expires.pop(key, None)

    def clear(self):
        self._expires.clear()

    def __contains__(self, key: object) -> bool:
        now = self._clock()
        deadline = self._expires.get(key)  # type: ignore[arg-type]
        return deadline is not None and deadline > now

    def __len__(self) -> int:
        self._purge(self._clock())
        return len(self._expires)
