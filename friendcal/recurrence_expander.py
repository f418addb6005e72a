"""Recurrence expansion for friend calendar events.

Turns a master event with an RRULE and exception timestamps into concrete
instances inside a finite query window, and runs that expansion over many
events under a shared aggregate instance ceiling.
"""

import asyncio
import logging
import re
from collections.abc import Callable, Iterable, Iterator
from datetime import date, datetime, timedelta
from typing import Any, Optional, Union

from cachetools import TTLCache
from dateutil.rrule import rrule, rruleset, rrulestr

from .config import SyncSettings
from .exceptions import InvalidRecurrenceRule
from .models import EventInstance, ExpansionOptions, MasterEvent
from .timezone_utils import ensure_utc, now_utc, resolve_zone

logger = logging.getLogger(__name__)

AGGREGATE_MAX_INSTANCES = 5000

# UNTIL values without a trailing Z (floating date or date-time)
_FLOATING_UNTIL = re.compile(r"UNTIL=(\d{8})(T\d{6})?(?=;|$)", re.IGNORECASE)

_RULE_PARSE_ERRORS = (ValueError, KeyError, TypeError, AttributeError, OverflowError, IndexError)

ParsedRule = Union[rrule, rruleset]


def _validate_window(window_start: datetime, window_end: datetime) -> tuple[datetime, datetime]:
    if window_start is None or window_end is None:
        raise ValueError("Expansion requires a finite window (start and end)")
    start = ensure_utc(window_start)
    end = ensure_utc(window_end)
    if end < start:
        raise ValueError(f"Window end {end.isoformat()} is before start {start.isoformat()}")
    return start, end


class ExpansionCache(TTLCache):
    """TTLCache that counts entries dropped by expiry or LRU eviction."""

    def __init__(self, maxsize: int, ttl: float, timer: Callable[[], float]):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self.evicted = 0

    def popitem(self) -> tuple[Any, Any]:
        item = super().popitem()
        self.evicted += 1
        return item

    def expire(self, time: Optional[float] = None) -> list[tuple[Any, Any]]:
        expired = super().expire(time)
        self.evicted += len(expired)
        return expired

    def clear(self) -> None:
        # Explicit clears are not evictions
        evicted = self.evicted
        super().clear()
        self.evicted = evicted


class RecurrenceExpander:
    """Expands one master event into EventInstances for a window.

    Occurrences are generated in the event's own timezone so that wall-clock
    time is kept across DST transitions, and reported in UTC.
    """

    def __init__(self, settings: Any = None, clock: Callable[[], datetime] = now_utc):
        """Initialize expander with configuration settings.

        Args:
            settings: SyncSettings or any object exposing its attributes
            clock: Time source for expansion-cache expiry
        """
        config = settings if isinstance(settings, SyncSettings) else SyncSettings.from_settings(settings)
        self.max_instances_per_event = config.max_instances_per_event
        self.cache_max_size = config.expansion_cache_size
        self.cache_ttl = config.expansion_cache_ttl
        self._clock = clock

        self._cache = ExpansionCache(
            maxsize=max(1, self.cache_max_size),
            ttl=self.cache_ttl.total_seconds(),
            timer=lambda: self._clock().timestamp(),
        )
        self._pruned_count = 0

        logger.debug(
            "RecurrenceExpander initialized: max_instances_per_event=%s, cache_size=%d, cache_ttl=%s",
            self.max_instances_per_event,
            self.cache_max_size,
            self.cache_ttl,
        )

    # Core expansion

    def expand(
        self,
        event: MasterEvent,
        window_start: datetime,
        window_end: datetime,
        options: Optional[ExpansionOptions] = None,
    ) -> list[EventInstance]:
        """Expand a master event into ordered instances inside the window.

        Args:
            event: Master event, recurring or not
            window_start: Inclusive window start (finite)
            window_end: Inclusive window end (finite)
            options: Exception handling and per-event instance limit

        Returns:
            Instances ordered by start; a non-recurring event yields at most one

        Raises:
            InvalidRecurrenceRule: If the recurrence grammar is malformed
            ValueError: If the window is not finite or is inverted
        """
        options = options or ExpansionOptions()
        start, end = _validate_window(window_start, window_end)

        if not event.is_recurring:
            return self.expand_as_single(event, start, end)

        limit = options.max_instances if options.max_instances is not None else self.max_instances_per_event
        cache_key = self._cache_key(event, start, end, options.include_exceptions, limit)
        cached = self._cache_get(cache_key)
        if cached is not None:
            return list(cached)

        rule = self.parse_rule(event.recurrence_rule or "", self._anchor(event), event.id)
        excluded = self._exception_keys(event) if options.include_exceptions else set()

        instances: list[EventInstance] = []
        skipped = 0
        for occurrence in self._occurrences(rule, start, end):
            if limit is not None and len(instances) >= limit:
                logger.debug("Expansion of %s limited to %d instances", event.id, limit)
                break
            if excluded and self._exception_key(occurrence, event.is_all_day) in excluded:
                skipped += 1
                continue
            instances.append(EventInstance.from_occurrence(event, occurrence))

        logger.debug(
            "Expanded event %s: %d instances in window, %d removed by exceptions",
            event.id,
            len(instances),
            skipped,
        )
        self._cache_put(cache_key, instances)
        return list(instances)

    def expand_as_single(
        self, event: MasterEvent, window_start: datetime, window_end: datetime
    ) -> list[EventInstance]:
        """Non-recurring treatment: the original occurrence if it starts inside the window."""
        start, end = _validate_window(window_start, window_end)
        if start <= event.start <= end:
            return [EventInstance.from_occurrence(event, event.start)]
        return []

    def _occurrences(self, rule: ParsedRule, start: datetime, end: datetime) -> Iterator[datetime]:
        for occurrence in rule.xafter(start, inc=True):
            if not isinstance(occurrence, datetime):
                continue
            occurrence = ensure_utc(occurrence)
            if occurrence > end:
                return
            if occurrence >= start:
                yield occurrence

    # Rule handling

    def is_recurring_event(self, event: MasterEvent) -> bool:
        return event.is_recurring

    def parse_rule(
        self, rule_text: str, dtstart: datetime, event_id: Optional[str] = None
    ) -> ParsedRule:
        """Parse RRULE text anchored at dtstart.

        Accepts "FREQ=DAILY;COUNT=5" as well as "RRULE:FREQ=DAILY;COUNT=5".

        Raises:
            InvalidRecurrenceRule: If the grammar is rejected
        """
        text = (rule_text or "").strip()
        if not text:
            raise InvalidRecurrenceRule(rule_text, event_id, "empty rule")
        if "FREQ=" not in text.upper():
            raise InvalidRecurrenceRule(rule_text, event_id, "missing FREQ")

        if dtstart.tzinfo is not None:
            text = _FLOATING_UNTIL.sub(self._until_to_utc, text)

        try:
            return rrulestr(text, dtstart=dtstart)
        except _RULE_PARSE_ERRORS as e:
            raise InvalidRecurrenceRule(rule_text, event_id, str(e)) from e

    def validate_rule(self, rule_text: str) -> bool:
        try:
            self.parse_rule(rule_text, now_utc())
        except InvalidRecurrenceRule:
            return False
        return True

    @staticmethod
    def _until_to_utc(match: re.Match) -> str:
        day, time_part = match.group(1), match.group(2)
        return f"UNTIL={day}{time_part or 'T235959'}Z"

    def _anchor(self, event: MasterEvent) -> datetime:
        zone = resolve_zone(event.timezone)
        if zone is None:
            return event.start
        return event.start.astimezone(zone)

    # Exceptions

    @staticmethod
    def _exception_key(value: datetime, is_all_day: bool) -> Union[datetime, date]:
        value = ensure_utc(value)
        return value.date() if is_all_day else value

    def _exception_keys(self, event: MasterEvent) -> set[Union[datetime, date]]:
        keys: set[Union[datetime, date]] = set()
        for exdate in event.exception_dates:
            if not isinstance(exdate, datetime):
                logger.warning("Skipping invalid exception date %r on event %s", exdate, event.id)
                continue
            keys.add(self._exception_key(exdate, event.is_all_day))
        return keys

    # Expansion cache

    def _cache_key(
        self,
        event: MasterEvent,
        start: datetime,
        end: datetime,
        include_exceptions: bool,
        limit: Optional[int],
    ) -> tuple:
        return (
            event.id,
            event.recurrence_rule,
            event.sequence,
            event.last_modified,
            event.start,
            event.end,
            event.timezone,
            event.is_all_day,
            frozenset(event.exception_dates),
            start,
            end,
            include_exceptions,
            limit,
        )

    def _cache_get(self, key: tuple) -> Optional[list[EventInstance]]:
        return self._cache.get(key)

    def _cache_put(self, key: tuple, instances: list[EventInstance]) -> None:
        if self.cache_max_size <= 0:
            return
        self._cache[key] = list(instances)

    def prune_cache(self, before: datetime) -> int:
        """Drop cached expansions whose window ended before the given time."""
        before = ensure_utc(before)
        stale = [key for key in list(self._cache.keys()) if key[10] < before]
        for key in stale:
            self._cache.pop(key, None)
        self._pruned_count += len(stale)
        return len(stale)

    def clear_cache(self, event_id: Optional[str] = None) -> None:
        if event_id is None:
            self._cache.clear()
            return
        for key in [key for key in list(self._cache.keys()) if key[0] == event_id]:
            self._cache.pop(key, None)

    def get_cache_stats(self) -> dict[str, int]:
        return {
            "size": len(self._cache),
            "max_size": self.cache_max_size,
            "pruned": self._pruned_count + self._cache.evicted,
        }


class MultiEventExpansionCoordinator:
    """Runs the expander over many events under one aggregate instance ceiling.

    Events are processed in caller order. Once the running total reaches the
    ceiling, the event being processed is cut to fill it exactly and every
    later event is skipped. Exactly one warning is logged per truncating call.
    """

    def __init__(
        self,
        expander: Optional[RecurrenceExpander] = None,
        aggregate_max_instances: int = AGGREGATE_MAX_INSTANCES,
    ):
        self.expander = expander or RecurrenceExpander()
        self.aggregate_max_instances = aggregate_max_instances
        self.last_truncated = False

    def expand_multiple(
        self,
        events: Iterable[MasterEvent],
        window_start: datetime,
        window_end: datetime,
        options: Optional[ExpansionOptions] = None,
    ) -> dict[str, list[EventInstance]]:
        """Expand every event; returns event id -> instances in input order."""
        start, end = _validate_window(window_start, window_end)
        options = options or ExpansionOptions()
        results: dict[str, list[EventInstance]] = {}
        total = 0
        truncated = False

        for event in events:
            added, cut = self._expand_within_budget(event, start, end, options, total)
            results.setdefault(event.id, []).extend(added)
            total += len(added)
            truncated = truncated or cut

        self._finish(truncated, total)
        return results

    async def expand_multiple_async(
        self,
        events: Iterable[MasterEvent],
        window_start: datetime,
        window_end: datetime,
        options: Optional[ExpansionOptions] = None,
    ) -> dict[str, list[EventInstance]]:
        """Same as expand_multiple, yielding to the event loop between events."""
        start, end = _validate_window(window_start, window_end)
        options = options or ExpansionOptions()
        results: dict[str, list[EventInstance]] = {}
        total = 0
        truncated = False

        for event in events:
            added, cut = self._expand_within_budget(event, start, end, options, total)
            results.setdefault(event.id, []).extend(added)
            total += len(added)
            truncated = truncated or cut
            await asyncio.sleep(0)

        self._finish(truncated, total)
        return results

    def _expand_within_budget(
        self,
        event: MasterEvent,
        start: datetime,
        end: datetime,
        options: ExpansionOptions,
        total: int,
    ) -> tuple[list[EventInstance], bool]:
        remaining = self.aggregate_max_instances - total
        if remaining <= 0:
            # Skipped entirely; expand one instance only to know whether anything was lost
            return [], bool(self._expand_isolated(event, start, end, options, 1))

        per_event = options.max_instances
        if per_event is None:
            per_event = self.expander.max_instances_per_event
        lookahead = remaining + 1 if per_event is None else min(per_event, remaining + 1)

        instances = self._expand_isolated(event, start, end, options, lookahead)
        if len(instances) > remaining:
            return instances[:remaining], True
        return instances, False

    def _expand_isolated(
        self,
        event: MasterEvent,
        start: datetime,
        end: datetime,
        options: ExpansionOptions,
        limit: int,
    ) -> list[EventInstance]:
        bounded = options.model_copy(update={"max_instances": limit})
        try:
            return self.expander.expand(event, start, end, bounded)
        except InvalidRecurrenceRule as e:
            logger.warning("Degrading event %s to a single occurrence: %s", event.id, e)
            return self.expander.expand_as_single(event, start, end)[:limit]
        except Exception:
            logger.exception("Recurrence expansion failed for event %s", event.id)
            return []

    def _finish(self, truncated: bool, total: int) -> None:
        self.last_truncated = truncated
        if truncated:
            logger.warning(
                "Aggregate recurrence instances exceeded %d. Results truncated.",
                self.aggregate_max_instances,
            )
        else:
            logger.debug("Multi-event expansion produced %d instances", total)


def build_coordinator(settings: Any = None, clock: Callable[[], datetime] = now_utc) -> MultiEventExpansionCoordinator:
    """Create an expander and coordinator pair from settings."""
    config = settings if isinstance(settings, SyncSettings) else SyncSettings.from_settings(settings)
    return MultiEventExpansionCoordinator(
        RecurrenceExpander(config, clock=clock),
        aggregate_max_instances=config.aggregate_max_instances,
    )


def expansion_horizon(reference: datetime, days: int) -> tuple[datetime, datetime]:
    """Symmetric window of +/- days around a reference time."""
    reference = ensure_utc(reference)
    return reference - timedelta(days=days), reference + timedelta(days=days)
