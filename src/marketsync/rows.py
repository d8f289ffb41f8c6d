"""Decode snake_case backend rows into marketsync models.

Rows come from the store's query API and from push payloads. Both go
through here so the rest of the package only ever sees typed models.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, TypeVar

from .models import (
    ConversationSummary,
    Favorite,
    ListingKind,
    Message,
    Notification,
    NotificationType,
    ParticipantPreview,
    ProductPreview,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Titles used by notification triggers that predate meta.kind
_LEGACY_LISTING_TITLES = {
    "Listing you saved was sold": ListingKind.SOLD,
    "Price Updated": ListingKind.PRICE_UPDATED,
    "Listing Back Online": ListingKind.BACK_ONLINE,
    "Listing Updated": ListingKind.LISTING_UPDATED,
}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string or datetime, treating naive values as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_timestamp(ts: datetime) -> str:
    """Fixed-width UTC form, so stored values compare correctly as text."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _price(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _product(row: dict[str, Any] | None) -> ProductPreview | None:
    if not row or not row.get("id"):
        return None
    return ProductPreview(
        id=row["id"],
        title=row.get("title") or "Untitled",
        price=_price(row.get("price")),
        currency=row.get("currency") or "IQD",
    )


def _participant(row: dict[str, Any] | None) -> ParticipantPreview | None:
    if not row or not row.get("id"):
        return None
    return ParticipantPreview(
        id=row["id"],
        full_name=row.get("full_name"),
        avatar_url=row.get("avatar_url"),
    )


def message_from_row(row: dict[str, Any]) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row.get("sender_id"),
        receiver_id=row.get("receiver_id"),
        product_id=row.get("product_id"),
        content=row.get("content") or "",
        is_read=bool(row.get("is_read")),
        created_at=parse_timestamp(row["created_at"]),
    )


def conversation_from_row(row: dict[str, Any]) -> ConversationSummary:
    unread = int(row.get("unread_count") or 0)
    return ConversationSummary(
        id=row["id"],
        product_id=row.get("product_id"),
        seller_id=row["seller_id"],
        buyer_id=row["buyer_id"],
        last_message=row.get("last_message"),
        last_message_at=parse_timestamp(row.get("last_message_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
        has_unread=bool(row.get("has_unread")) or unread > 0,
        unread_count=unread,
        product=_product(row.get("product")),
        seller=_participant(row.get("seller")),
        buyer=_participant(row.get("buyer")),
    )


def decode_notification_type(value: Any) -> NotificationType:
    try:
        return NotificationType(str(value))
    except ValueError:
        return NotificationType.SYSTEM


def decode_listing_kind(
    notification_type: NotificationType, meta: dict[str, Any], title: str
) -> ListingKind | None:
    """Resolve the listing sub-kind from meta, falling back to legacy titles."""
    if notification_type is not NotificationType.LISTING:
        return None
    raw = meta.get("kind") if isinstance(meta, dict) else None
    if raw is not None:
        try:
            return ListingKind(str(raw))
        except ValueError:
            logger.debug("Unknown listing kind %r, falling back to title", raw)
    if title in _LEGACY_LISTING_TITLES:
        return _LEGACY_LISTING_TITLES[title]
    if "sold" in title.lower():
        return ListingKind.SOLD
    return None


def notification_from_row(row: dict[str, Any]) -> Notification:
    ntype = decode_notification_type(row.get("type") or "system")
    title = row.get("title") or "Notification"
    meta = row.get("meta") if isinstance(row.get("meta"), dict) else {}
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=ntype,
        related_id=row.get("related_id"),
        title=title,
        content=row.get("content"),
        is_read=bool(row.get("is_read")),
        created_at=parse_timestamp(row["created_at"]),
        meta=meta,
        listing_kind=decode_listing_kind(ntype, meta, title),
    )


def favorite_from_row(row: dict[str, Any]) -> Favorite:
    return Favorite(
        id=row["id"],
        product_id=row["product_id"],
        user_id=row["user_id"],
        created_at=parse_timestamp(row["created_at"]),
        product=_product(row.get("product")),
    )


def decode_rows(rows: Iterable[dict[str, Any]], decode: Callable[[dict[str, Any]], T]) -> list[T]:
    """Decode a batch, skipping rows that fail instead of failing the batch."""
    decoded: list[T] = []

    for row in rows:
        try:
            decoded.append(decode(row))
        except Exception:
            row_id = row.get("id", "unknown") if isinstance(row, dict) else "unknown"
            logger.warning("Failed to decode row '%s'", row_id, exc_info=True)

    return decoded
