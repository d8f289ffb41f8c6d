"""marketsync: realtime conversation and notification sync for a marketplace client."""

__version__ = "0.1.0"

from .counter import UnreadCounter
from .errors import BackendError, MarketsyncError, Notice, NoticeBoard, NotFoundError, ValidationError
from .favorites import FavoritesFeed
from .inbox import Inbox
from .models import (
    ChangeEvent,
    ConversationSummary,
    Favorite,
    ListingKind,
    Message,
    Notification,
    NotificationType,
)
from .notifications import NotificationFeed
from .roster import ConversationRoster
from .subscriptions import Scope, SubscriptionRegistry
from .thread import MessageThread
from .tracker import MutationTracker

__all__ = [
    "BackendError",
    "ChangeEvent",
    "ConversationRoster",
    "ConversationSummary",
    "Favorite",
    "FavoritesFeed",
    "Inbox",
    "ListingKind",
    "MarketsyncError",
    "Message",
    "MessageThread",
    "MutationTracker",
    "NotFoundError",
    "Notice",
    "NoticeBoard",
    "Notification",
    "NotificationFeed",
    "NotificationType",
    "Scope",
    "SubscriptionRegistry",
    "UnreadCounter",
    "ValidationError",
]
