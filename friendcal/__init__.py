"""friendcal - recurring event expansion and friend calendar synchronization.

Expands recurring events into concrete instances inside a query window, and
fetches, caches, merges and keeps fresh the calendars of a viewer's friends.
"""

__version__ = "0.1.0"

from .access_gate import FriendAccessGate, HttpPermissionProvider, PermissionProvider
from .config import FRIEND_COLOR_PALETTE, SyncSettings, parse_env_file
from .event_merger import EventMerger, canonical_id, friend_color
from .exceptions import (
    AuthExpiredError,
    CacheCorruptionError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    ForbiddenError,
    FriendCalendarError,
    InvalidRecurrenceRule,
    NetworkError,
    NotFoundError,
    PermissionDenied,
)
from .fallback_store import PersistentFallbackStore
from .fetcher import NetworkFetcher
from .logging_config import configure_logging, get_logging_status
from .models import (
    CacheEntry,
    EventInstance,
    EventSource,
    ExpansionOptions,
    ExternalFeedSource,
    FriendCalendarEvent,
    FriendCalendarFeed,
    FriendProfile,
    FriendRole,
    FriendshipStatus,
    FriendSource,
    LocalSource,
    MasterEvent,
    PermissionSnapshot,
    RawFeedEvent,
    SyncMetadata,
    SyncState,
)
from .recurrence_expander import (
    AGGREGATE_MAX_INSTANCES,
    MultiEventExpansionCoordinator,
    RecurrenceExpander,
    build_coordinator,
)
from .service import FriendCalendarService
from .window_cache import WindowedCache, make_window_key

__all__ = [
    "AGGREGATE_MAX_INSTANCES",
    "FRIEND_COLOR_PALETTE",
    "AuthExpiredError",
    "CacheCorruptionError",
    "CacheEntry",
    "EventInstance",
    "EventMerger",
    "EventSource",
    "ExpansionOptions",
    "ExternalFeedSource",
    "FetchCancelledError",
    "FetchError",
    "FetchTimeoutError",
    "ForbiddenError",
    "FriendAccessGate",
    "FriendCalendarError",
    "FriendCalendarEvent",
    "FriendCalendarFeed",
    "FriendCalendarService",
    "FriendProfile",
    "FriendRole",
    "FriendSource",
    "FriendshipStatus",
    "HttpPermissionProvider",
    "InvalidRecurrenceRule",
    "LocalSource",
    "MasterEvent",
    "MultiEventExpansionCoordinator",
    "NetworkError",
    "NetworkFetcher",
    "NotFoundError",
    "PermissionDenied",
    "PermissionProvider",
    "PersistentFallbackStore",
    "RawFeedEvent",
    "RecurrenceExpander",
    "SyncMetadata",
    "SyncSettings",
    "SyncState",
    "WindowedCache",
    "build_coordinator",
    "canonical_id",
    "configure_logging",
    "friend_color",
    "get_logging_status",
    "make_window_key",
    "parse_env_file",
]
