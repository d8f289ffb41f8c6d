"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory for the local store, overridable with MARKETSYNC_DATA_DIR
DATA_DIR = Path(
    os.environ.get("MARKETSYNC_DATA_DIR", str(Path.home() / ".marketsync"))
)

# Database paths
SQLITE_PATH = DATA_DIR / "marketplace.db"

# Echo suppression window for optimistic mutations (seconds)
ECHO_WINDOW_SECONDS = float(os.environ.get("MARKETSYNC_ECHO_WINDOW_SECONDS", "2.0"))

# Page sizes
MESSAGE_PAGE_SIZE = 60
NOTIFICATION_PAGE_SIZE = 25
FAVORITES_PAGE_SIZE = 30
FAVORITES_MAX_LIMIT = 60

# Conversation roster cache
ROSTER_CACHE_TTL_SECONDS = 60.0
ROSTER_CACHE_MIN_TTL_SECONDS = 5.0
ROSTER_CACHE_MAX_TTL_SECONDS = 5 * 60.0

# Sending
SEND_MAX_LENGTH = 1000

# Recently applied incoming message ids kept per roster for redelivery checks
APPLIED_MESSAGE_MEMORY = 500

# Badges show "9+" above this
BADGE_CAP = 9

# Timing logs for chat operations
CHAT_TIMING = os.environ.get("MARKETSYNC_CHAT_TIMING") == "1"
