"""Exceptions and user-facing notices."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class MarketsyncError(Exception):
    """Base class for marketsync errors."""


class BackendError(MarketsyncError):
    """The store or its transport failed."""


class NotFoundError(BackendError):
    pass


class ValidationError(MarketsyncError):
    """Input rejected before it reached the backend."""


class Notice(BaseModel):
    """A dismissible, non-blocking message for the user."""

    title: str
    description: str | None = None
    variant: Literal["default", "destructive"] = "destructive"


class NoticeBoard:
    """Collects notices posted by the sync surfaces.

    Nothing here is fatal: a surface that fails posts a notice and keeps
    its last known state. Listeners let a UI render toasts as they arrive.
    """

    def __init__(self):
        self._notices: list[Notice] = []
        self._listeners: list[Callable[[Notice], None]] = []

    def post(self, title: str, description: str | None = None, variant: str = "destructive") -> Notice:
        notice = Notice(title=title, description=description, variant=variant)
        self._notices.append(notice)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.warning("Notice listener failed", exc_info=True)
        return notice

    def dismiss(self, notice: Notice):
        try:
            self._notices.remove(notice)
        except ValueError:
            pass

    def clear(self):
        self._notices.clear()

    def subscribe(self, listener: Callable[[Notice], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    @property
    def titles(self) -> list[str]:
        return [n.title for n in self._notices]

    def __iter__(self) -> Iterator[Notice]:
        return iter(list(self._notices))

    def __len__(self) -> int:
        return len(self._notices)
