"""Exception hierarchy for friend calendar sync and recurrence expansion.

Fetch errors carry a ``retryable`` flag so the retry loop in the fetcher can
decide without inspecting status codes a second time.
"""

from typing import Optional


class FriendCalendarError(Exception):
    """Base exception for all friendcal errors."""


class InvalidRecurrenceRule(FriendCalendarError, ValueError):
    """Recurrence grammar could not be parsed.

    Callers degrade the affected event to a single occurrence instead of
    aborting sibling expansions.
    """

    def __init__(self, rule: Optional[str], event_id: Optional[str] = None, reason: str = ""):
        self.rule = rule
        self.event_id = event_id
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid recurrence rule {rule!r} for event {event_id}{detail}")


class PermissionDenied(FriendCalendarError):
    """Viewer has no access to the owner's calendar.

    Surfaced to callers as an empty result, not as a fault.
    """

    def __init__(self, viewer_id: str, owner_id: str):
        self.viewer_id = viewer_id
        self.owner_id = owner_id
        super().__init__(f"Viewer {viewer_id} has no calendar access to {owner_id}")


class FetchError(FriendCalendarError):
    """Base exception for remote feed fetch failures."""

    retryable = False

    def __init__(self, message: str, owner_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.owner_id = owner_id
        self.status_code = status_code


class NetworkError(FetchError):
    """Transient transport failure or 5xx-equivalent response."""

    retryable = True


class FetchTimeoutError(NetworkError):
    """Request timed out."""


class AuthExpiredError(FetchError):
    """Credential rejected (HTTP 401)."""


class ForbiddenError(FetchError):
    """Access forbidden by the feed service (HTTP 403)."""


class NotFoundError(FetchError):
    """Owner or feed not found (HTTP 404)."""


class FetchCancelledError(FetchError):
    """Request was superseded by a newer request for the same owner, or by a purge."""


class CacheCorruptionError(FriendCalendarError):
    """Durable cache payload could not be decoded. Always treated as a miss."""

    def __init__(self, owner_id: str, window_key: str, reason: str = ""):
        self.owner_id = owner_id
        self.window_key = window_key
        super().__init__(f"Corrupt cache record for {owner_id} [{window_key}]: {reason}")
