"""Opt-in timing logs for chat operations."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from . import config

logger = logging.getLogger(__name__)


def timing_enabled() -> bool:
    return config.CHAT_TIMING


def log_timing(label: str, ms: float, **meta: Any):
    if not timing_enabled():
        return
    payload = {"ms": round(ms)}
    payload.update(meta)
    logger.info("[chat-timing] %s %s", label, payload)


@contextmanager
def timed(label: str, **meta: Any) -> Iterator[dict[str, Any]]:
    """Time a block and log it when timing is enabled.

    The yielded dict can be filled with extra fields (counts, status)
    before the block exits. Failed blocks are logged as ``<label>:error``.
    """
    extra: dict[str, Any] = dict(meta)
    if not timing_enabled():
        yield extra
        return

    started = time.perf_counter()
    try:
        yield extra
    except BaseException:
        log_timing(f"{label}:error", (time.perf_counter() - started) * 1000, **extra)
        raise
    log_timing(label, (time.perf_counter() - started) * 1000, **extra)
