"""Time helpers for friendcal: UTC normalization, parsing and test clock override."""

from __future__ import annotations

import datetime
import logging
import os
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

TEST_TIME_ENV = "FRIENDCAL_TEST_TIME"


def now_utc() -> datetime.datetime:
    """Return current UTC time with tzinfo.

    Can be overridden for testing via the FRIENDCAL_TEST_TIME environment variable.
    Format: ISO 8601 datetime string (e.g., "2025-01-01T10:00:00Z")
    """
    test_time = os.environ.get(TEST_TIME_ENV)
    if test_time:
        try:
            return ensure_utc(date_parser.isoparse(test_time))
        except (ValueError, OverflowError) as e:
            logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV, test_time, e)

    return datetime.datetime.now(datetime.UTC)


def ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    """Convert an aware datetime to UTC; naive datetimes are assumed to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.UTC)
    return dt.astimezone(datetime.UTC)


def parse_iso_datetime(value: str | datetime.datetime) -> datetime.datetime:
    """Parse an ISO-8601 string (with 'Z' or an offset) into an aware UTC datetime.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp
    """
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    return ensure_utc(date_parser.isoparse(value.strip()))


def format_utc(dt: datetime.datetime) -> str:
    """Format as a second-resolution UTC string, e.g. 2025-01-01T10:00:00Z."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def truncate_to_minute(dt: datetime.datetime) -> datetime.datetime:
    return ensure_utc(dt).replace(second=0, microsecond=0)


@lru_cache(maxsize=64)
def resolve_zone(name: str | None) -> ZoneInfo | None:
    """Resolve an IANA timezone name, returning None for empty or unknown names."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.debug("Unknown timezone %r, falling back to UTC", name)
        return None
