"""Data models for conversations, messages, notifications and favorites."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class NotificationType(str, Enum):
    LISTING = "listing"
    MESSAGE = "message"
    REVIEW = "review"
    SYSTEM = "system"


class ListingKind(str, Enum):
    SOLD = "sold"
    PRICE_UPDATED = "price_updated"
    BACK_ONLINE = "back_online"
    LISTING_UPDATED = "listing_updated"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str | None = None
    receiver_id: str | None = None
    product_id: str | None = None
    content: str = ""
    is_read: bool = False
    created_at: datetime


class ProductPreview(BaseModel):
    id: str
    title: str = "Untitled"
    price: float | None = None
    currency: str | None = None


class ParticipantPreview(BaseModel):
    id: str
    full_name: str | None = None
    avatar_url: str | None = None


class ConversationSummary(BaseModel):
    """One roster entry. Unread fields are relative to the viewer who fetched it."""

    id: str
    product_id: str | None = None
    seller_id: str
    buyer_id: str
    last_message: str | None = None
    last_message_at: datetime | None = None
    updated_at: datetime | None = None
    has_unread: bool = False
    unread_count: int = 0
    product: ProductPreview | None = None
    seller: ParticipantPreview | None = None
    buyer: ParticipantPreview | None = None

    @model_validator(mode="after")
    def _sync_unread(self) -> ConversationSummary:
        # has_unread <=> unread_count > 0; a bare flag counts as one message
        if self.unread_count < 0:
            self.unread_count = 0
        if self.unread_count > 0:
            self.has_unread = True
        elif self.has_unread:
            self.unread_count = 1
        return self

    def counterpart_id(self, viewer_id: str) -> str:
        return self.buyer_id if self.seller_id == viewer_id else self.seller_id

    def counterpart(self, viewer_id: str) -> ParticipantPreview | None:
        return self.buyer if self.seller_id == viewer_id else self.seller


class Notification(BaseModel):
    id: str
    user_id: str
    type: NotificationType = NotificationType.SYSTEM
    related_id: str | None = None
    title: str = "Notification"
    content: str | None = None
    is_read: bool = False
    created_at: datetime
    meta: dict[str, Any] = Field(default_factory=dict)
    listing_kind: ListingKind | None = None


class Favorite(BaseModel):
    id: str
    product_id: str
    user_id: str
    created_at: datetime
    product: ProductPreview | None = None


class Page(BaseModel):
    """A page of thread history as applied to the cache."""

    messages: list[Message] = []
    has_more: bool = False
    cursor: datetime | None = None
