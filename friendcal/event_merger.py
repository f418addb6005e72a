"""Event merging and deduplication for friend calendar feeds.

Collapses records that describe the same logical event, keeping the most
recently modified copy and filling its gaps from the others, then annotates
every survivor with its friend provenance and display color.
"""

import logging
from typing import Optional

from .config import FRIEND_COLOR_PALETTE
from .models import FriendCalendarEvent, FriendSource, RawFeedEvent
from .timezone_utils import format_utc

logger = logging.getLogger(__name__)

# Fields copied from a losing duplicate when the winner lacks them
BACKFILL_FIELDS = (
    "title",
    "description",
    "color",
    "location",
    "attendees",
    "external_id",
    "timezone",
    "last_modified",
)


def _to_int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def string_hash(text: str) -> int:
    """JavaScript-compatible string hash (``hash = c + ((hash << 5) - hash)``).

    Iterates UTF-16 code units and applies ToInt32 to the shift operand, so
    the result matches what a browser computes for the same id.
    """
    units = text.encode("utf-16-le")
    value = 0
    for i in range(0, len(units), 2):
        code_unit = int.from_bytes(units[i : i + 2], "little")
        shifted = _to_int32(_to_int32(value) << 5)
        value = code_unit + shifted - value
    return value


def friend_color(owner_id: str, palette: tuple[str, ...] = FRIEND_COLOR_PALETTE) -> str:
    """Stable display color for an owner."""
    return palette[abs(string_hash(owner_id)) % len(palette)]


def feed_id_for(owner_id: str) -> str:
    return f"friend-{owner_id}"


def canonical_id(event: RawFeedEvent) -> str:
    """Deduplication key: external id if present, else local id.

    Expanded instances are suffixed with their start so that occurrences of
    one series never collide with each other.
    """
    if event.original_event_id is not None and event.instance_start is not None:
        base = event.external_id or event.original_event_id
        return f"{base}:{format_utc(event.instance_start)}"
    return event.external_id or event.id


def _is_empty(value: object) -> bool:
    return value is None or value == "" or value == []


class EventMerger:
    """Deduplicates and colorizes raw events pulled from one owner's feed."""

    def merge(
        self,
        owner_id: str,
        raw_events: list[RawFeedEvent],
        display_name: str = "Friend",
        feed_name: Optional[str] = None,
    ) -> list[FriendCalendarEvent]:
        """Merge raw records into friend calendar events.

        Args:
            owner_id: Friend whose feed the records came from
            raw_events: Records in feed order, possibly with duplicates
            display_name: Friend display name for annotation
            feed_name: Feed name, defaults to "<display_name>'s Calendar"

        Returns:
            One event per canonical identity, sorted by start then identity
        """
        winners: dict[str, RawFeedEvent] = {}
        duplicates = 0

        for event in raw_events:
            key = canonical_id(event)
            current = winners.get(key)
            if current is None:
                winners[key] = event
                continue
            duplicates += 1
            if self.is_newer(event, current):
                winners[key] = self._backfill(event, current)
            else:
                winners[key] = self._backfill(current, event)

        if duplicates:
            logger.debug("Merged %d duplicate records for %s", duplicates, owner_id)

        color = friend_color(owner_id)
        feed_id = feed_id_for(owner_id)
        feed_name = feed_name or f"{display_name}'s Calendar"

        merged = [
            self._annotate(key, event, owner_id, display_name, feed_id, feed_name, color)
            for key, event in winners.items()
        ]
        merged.sort(key=lambda e: (e.start_time, e.canonical_event_id))
        return merged

    @staticmethod
    def is_newer(candidate: RawFeedEvent, current: RawFeedEvent) -> bool:
        """True if candidate should replace current; ties keep the first seen."""
        if candidate.last_modified != current.last_modified:
            if current.last_modified is None:
                return True
            if candidate.last_modified is None:
                return False
            return candidate.last_modified > current.last_modified
        return candidate.sequence > current.sequence

    @staticmethod
    def _backfill(winner: RawFeedEvent, loser: RawFeedEvent) -> RawFeedEvent:
        updates = {
            field: getattr(loser, field)
            for field in BACKFILL_FIELDS
            if _is_empty(getattr(winner, field)) and not _is_empty(getattr(loser, field))
        }
        return winner.model_copy(update=updates) if updates else winner

    @staticmethod
    def _annotate(
        key: str,
        event: RawFeedEvent,
        owner_id: str,
        display_name: str,
        feed_id: str,
        feed_name: str,
        color: str,
    ) -> FriendCalendarEvent:
        return FriendCalendarEvent(
            id=event.id,
            title=event.title,
            description=event.description,
            start_time=event.start_time,
            end_time=event.end_time,
            timezone=event.timezone,
            is_all_day=event.is_all_day,
            color=color,
            location=event.location,
            attendees=event.attendees,
            friend_user_id=owner_id,
            friend_display_name=display_name,
            feed_id=feed_id,
            feed_name=feed_name,
            source=FriendSource(friend_user_id=owner_id, feed_id=feed_id),
            canonical_event_id=key,
            original_event_id=event.original_event_id or event.id,
            is_recurring_instance=event.original_event_id is not None,
            sequence=event.sequence,
            last_modified=event.last_modified,
        )
