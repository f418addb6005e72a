"""Unit tests for friendcal models and time helpers."""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from friendcal.models import (
    CacheEntry,
    EventInstance,
    EventSource,
    ExternalFeedSource,
    FriendProfile,
    FriendRole,
    LocalSource,
    MasterEvent,
    PermissionSnapshot,
    RawFeedEvent,
)
from friendcal.timezone_utils import (
    ensure_utc,
    format_utc,
    now_utc,
    parse_iso_datetime,
    resolve_zone,
    truncate_to_minute,
)

pytestmark = [pytest.mark.unit, pytest.mark.fast]


class TestRawFeedEvent:
    def test_validate_when_camel_case_wire_record_then_fields_populated(self) -> None:
        event = RawFeedEvent.model_validate(
            {
                "id": "evt-1",
                "startTime": "2025-01-01T05:00:00-05:00",
                "endTime": "2025-01-01T11:00:00Z",
                "isAllDay": False,
                "externalId": "g-1",
                "recurrenceRule": "FREQ=DAILY",
                "exceptionDates": ["2025-01-02T10:00:00Z"],
                "lastModified": "2025-01-01T00:00:00Z",
            }
        )

        assert event.start_time == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        assert event.external_id == "g-1"
        assert event.is_recurring is True
        assert event.exception_dates == [datetime(2025, 1, 2, 10, 0, tzinfo=UTC)]

    def test_validate_when_basic_format_and_date_only_timestamps_then_parsed_as_utc(self) -> None:
        event = RawFeedEvent.model_validate(
            {
                "id": "evt-1",
                "startTime": "20250101T100000Z",
                "endTime": "2025-01-01T12:00:00+02:00",
                "exceptionDates": ["2025-01-03", datetime(2025, 1, 4, 10, tzinfo=UTC)],
            }
        )

        assert event.start_time == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        assert event.end_time == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        assert event.exception_dates == [
            datetime(2025, 1, 3, tzinfo=UTC),
            datetime(2025, 1, 4, 10, tzinfo=UTC),
        ]

    @pytest.mark.parametrize("field", ["startTime", "lastModified"])
    def test_validate_when_timestamp_unparseable_then_error(self, field) -> None:
        payload = {"id": "evt-1", "startTime": "2025-01-01T10:00:00Z", "endTime": "2025-01-01T11:00:00Z"}
        payload[field] = "next tuesday"

        with pytest.raises(ValidationError):
            RawFeedEvent.model_validate(payload)

    def test_validate_when_start_missing_then_error(self) -> None:
        with pytest.raises(ValidationError):
            RawFeedEvent.model_validate({"id": "evt-1", "endTime": "2025-01-01T11:00:00Z"})

    def test_to_instance_carries_series_identity(self) -> None:
        start = datetime(2025, 1, 1, 10, tzinfo=UTC)
        series = RawFeedEvent(
            id="s", start_time=start, end_time=start + timedelta(minutes=30), recurrence_rule="FREQ=DAILY"
        )
        occurrence = EventInstance.from_occurrence(series.to_master_event(), start + timedelta(days=1))

        instance = series.to_instance(occurrence)

        assert instance.id == "s:2025-01-02T10:00:00Z"
        assert instance.end_time - instance.start_time == timedelta(minutes=30)
        assert instance.original_event_id == "s"
        assert instance.is_recurring is False


def test_master_event_naive_datetimes_are_treated_as_utc() -> None:
    master = MasterEvent(id="m", start=datetime(2025, 1, 1, 10), end=datetime(2025, 1, 1, 11))

    assert master.start.tzinfo is UTC
    assert master.duration == timedelta(hours=1)
    assert master.is_recurring is False


def test_master_event_string_timestamps_are_parsed_to_utc() -> None:
    master = MasterEvent(
        id="m",
        start="2025-01-01T05:00:00-05:00",
        end="2025-01-01T11:00:00Z",
        exception_dates=["2025-01-02T05:00:00-05:00"],
    )

    assert master.start == datetime(2025, 1, 1, 10, tzinfo=UTC)
    assert master.exception_dates == {datetime(2025, 1, 2, 10, tzinfo=UTC)}


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"kind": "local"}, LocalSource),
        ({"kind": "external", "feed_id": "g"}, ExternalFeedSource),
    ],
)
def test_event_source_discriminates_on_kind(payload, expected) -> None:
    assert isinstance(TypeAdapter(EventSource).validate_python(payload), expected)


def test_event_source_when_kind_unknown_then_error() -> None:
    with pytest.raises(ValidationError):
        TypeAdapter(EventSource).validate_python({"kind": "carrier-pigeon"})


@pytest.mark.parametrize(
    ("permission", "role"),
    [("viewer", FriendRole.VIEWER), ("owner", FriendRole.OWNER), ("admin", None), (None, None)],
)
def test_permission_snapshot_role(permission, role) -> None:
    assert PermissionSnapshot(hasAccess=True, permission=permission).role == role


def test_friend_profile_display_name_fallbacks() -> None:
    assert FriendProfile(id="1", firstName="Alice", lastName="Smith").display_name == "Alice"
    assert FriendProfile(id="2", lastName="Smith").display_name == "Smith"
    assert FriendProfile(id="3").display_name == "Friend"


def test_cache_entry_freshness_is_strictly_younger_than_ttl() -> None:
    written = datetime(2025, 1, 1, 10, tzinfo=UTC)
    entry = CacheEntry(owner_id="a", window_key="w", written_at=written)
    ttl = timedelta(minutes=15)

    assert entry.is_fresh(written + timedelta(minutes=14, seconds=59), ttl) is True
    assert entry.is_fresh(written + ttl, ttl) is False


class TestTimezoneUtils:
    def test_now_utc_when_override_set_then_fixed(self, monkeypatch) -> None:
        monkeypatch.setenv("FRIENDCAL_TEST_TIME", "2025-03-01T08:30:00Z")

        assert now_utc() == datetime(2025, 3, 1, 8, 30, tzinfo=UTC)

    def test_now_utc_when_override_invalid_then_real_time(self, monkeypatch) -> None:
        monkeypatch.setenv("FRIENDCAL_TEST_TIME", "yesterday-ish")

        assert now_utc().year >= 2025

    def test_ensure_utc_converts_offsets(self) -> None:
        local = datetime(2025, 1, 1, 12, tzinfo=timezone(timedelta(hours=2)))

        assert ensure_utc(local) == datetime(2025, 1, 1, 10, tzinfo=UTC)

    def test_parse_iso_datetime_accepts_z_suffix(self) -> None:
        assert parse_iso_datetime("2025-01-01T10:00:00Z") == datetime(2025, 1, 1, 10, tzinfo=UTC)

    def test_parse_iso_datetime_when_garbage_then_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_iso_datetime("not-a-date")

    def test_format_and_truncate(self) -> None:
        dt = datetime(2025, 1, 1, 10, 5, 42, 123, tzinfo=UTC)

        assert format_utc(dt) == "2025-01-01T10:05:42Z"
        assert truncate_to_minute(dt) == datetime(2025, 1, 1, 10, 5, tzinfo=UTC)

    def test_resolve_zone_when_unknown_then_none(self) -> None:
        assert resolve_zone("Mars/Olympus_Mons") is None
        assert resolve_zone(None) is None
        assert resolve_zone("Europe/Berlin").key == "Europe/Berlin"
