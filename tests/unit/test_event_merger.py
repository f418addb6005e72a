"""Unit tests for friendcal.event_merger."""

from datetime import UTC, datetime, timedelta

import pytest

from friendcal.config import FRIEND_COLOR_PALETTE
from friendcal.event_merger import EventMerger, canonical_id, friend_color, string_hash
from friendcal.models import EventInstance, MasterEvent, RawFeedEvent

pytestmark = [pytest.mark.unit, pytest.mark.fast]

START = datetime(2025, 1, 2, 10, 0, tzinfo=UTC)


def raw(event_id: str, start: datetime = START, **extra) -> RawFeedEvent:
    return RawFeedEvent(id=event_id, start_time=start, end_time=start + timedelta(hours=1), **extra)


class TestEventMerger:
    """Tests for deduplication and annotation."""

    def setup_method(self) -> None:
        self.merger = EventMerger()

    def test_merge_when_external_ids_match_then_single_event(self) -> None:
        events = [
            raw("local-1", title="Dinner", external_id="g-123"),
            raw("local-2", title="Dinner", external_id="g-123"),
        ]

        merged = self.merger.merge("alice", events, display_name="Alice")

        assert len(merged) == 1
        assert merged[0].canonical_event_id == "g-123"
        assert merged[0].id == "local-1"

    def test_merge_when_duplicate_newer_then_newer_wins_and_gaps_backfilled(self) -> None:
        older = raw(
            "evt-1",
            title="Old title",
            location="Cafe",
            attendees=["bob@example.com"],
            last_modified=datetime(2025, 1, 1, tzinfo=UTC),
        )
        newer = raw("evt-1", title="New title", last_modified=datetime(2025, 1, 1, 12, tzinfo=UTC))

        merged = self.merger.merge("alice", [older, newer])

        assert len(merged) == 1
        assert merged[0].title == "New title"
        assert merged[0].location == "Cafe"
        assert merged[0].attendees == ["bob@example.com"]

    def test_merge_when_modified_missing_then_record_with_timestamp_wins(self) -> None:
        stamped = raw("evt-1", title="Stamped", last_modified=datetime(2024, 1, 1, tzinfo=UTC))
        unstamped = raw("evt-1", title="Unstamped")

        assert self.merger.merge("alice", [unstamped, stamped])[0].title == "Stamped"
        assert self.merger.merge("alice", [stamped, unstamped])[0].title == "Stamped"

    def test_merge_when_timestamps_tie_then_higher_sequence_wins(self) -> None:
        first = raw("evt-1", title="Seq 1", sequence=1)
        second = raw("evt-1", title="Seq 3", sequence=3)

        assert self.merger.merge("alice", [first, second])[0].title == "Seq 3"

    def test_merge_when_fully_tied_then_first_seen_wins(self) -> None:
        first = raw("evt-1", title="First")
        second = raw("evt-1", title="Second", description="Only here")

        merged = self.merger.merge("alice", [first, second])

        assert merged[0].title == "First"
        assert merged[0].description == "Only here"

    def test_merge_annotates_friend_provenance(self) -> None:
        merged = self.merger.merge("alice", [raw("evt-1")], display_name="Alice")

        event = merged[0]
        assert event.is_from_friend is True
        assert event.friend_user_id == "alice"
        assert event.friend_display_name == "Alice"
        assert event.feed_id == "friend-alice"
        assert event.feed_name == "Alice's Calendar"
        assert event.source.kind == "friend"
        assert event.source.friend_user_id == "alice"
        assert event.color == friend_color("alice")

    def test_merge_sorts_by_start_then_identity(self) -> None:
        events = [
            raw("c", start=START + timedelta(hours=2)),
            raw("b", start=START),
            raw("a", start=START),
        ]

        merged = self.merger.merge("alice", events)

        assert [e.id for e in merged] == ["a", "b", "c"]

    def test_merge_keeps_expanded_instances_of_one_series_apart(self) -> None:
        series = raw("series", recurrence_rule="FREQ=DAILY;COUNT=2", external_id="g-9")
        master = MasterEvent(id="series", start=START, end=START + timedelta(hours=1))
        instances = [
            series.to_instance(EventInstance.from_occurrence(master, START + timedelta(days=d)))
            for d in range(2)
        ]

        merged = self.merger.merge("alice", instances)

        assert [e.canonical_event_id for e in merged] == [
            "g-9:2025-01-02T10:00:00Z",
            "g-9:2025-01-03T10:00:00Z",
        ]
        assert all(e.is_recurring_instance for e in merged)
        assert all(e.original_event_id == "series" for e in merged)


def test_canonical_id_prefers_external_id() -> None:
    assert canonical_id(raw("local", external_id="ext")) == "ext"
    assert canonical_id(raw("local")) == "local"


def test_string_hash_matches_javascript_values() -> None:
    assert string_hash("a") == 97
    assert string_hash("ab") == 3105
    assert string_hash("abc") == 96354


def test_string_hash_when_id_long_then_shift_wraps_like_int32() -> None:
    # "user-1234567890" overflows 32 bits inside the shift
    value = string_hash("user-1234567890")

    assert -(2**36) < value < 2**36
    assert string_hash("user-1234567890") == value


def test_friend_color_is_stable_and_from_palette() -> None:
    assert friend_color("abc") == "#EC4899"
    assert friend_color("a") == FRIEND_COLOR_PALETTE[1]
    for owner in ("alice", "bob", "4f9c2a7e-0000-4000-8000-000000000000"):
        assert friend_color(owner) in FRIEND_COLOR_PALETTE
        assert friend_color(owner) == friend_color(owner)
