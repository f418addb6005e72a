"""Friend calendar synchronization service.

Coordinates permission checks, the two cache layers, remote fetches and
recurrence expansion for one viewer. Every dependency is injected so tests can
construct an isolated instance; nothing here is a module-level singleton.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from .access_gate import FriendAccessGate, HttpPermissionProvider, PermissionProvider
from .config import SyncSettings
from .event_merger import EventMerger, feed_id_for, friend_color
from .exceptions import (
    FetchCancelledError,
    FetchError,
    InvalidRecurrenceRule,
    NetworkError,
    PermissionDenied,
)
from .fallback_store import PersistentFallbackStore
from .fetcher import NetworkFetcher
from .logging_config import owner_context
from .models import (
    CacheEntry,
    EventInstance,
    ExpansionOptions,
    FriendCalendarEvent,
    FriendCalendarFeed,
    FriendProfile,
    MasterEvent,
    RawFeedEvent,
    SyncMetadata,
    SyncState,
)
from .recurrence_expander import (
    MultiEventExpansionCoordinator,
    RecurrenceExpander,
    expansion_horizon,
)
from .timezone_utils import ensure_utc, now_utc
from .window_cache import WindowedCache, make_window_key

logger = logging.getLogger(__name__)


class FriendCalendarService:
    """Fetches, caches and keeps fresh the calendars of a viewer's friends.

    Example:
        async with FriendCalendarService("viewer-1", settings) as service:
            events = await service.fetch_friend_events("friend-7", start, end)

            # Later, when the friend revokes access
            await service.on_permission_change("friend-7", False)
    """

    def __init__(
        self,
        viewer_id: str,
        settings: Any = None,
        *,
        permission_provider: Optional[PermissionProvider] = None,
        access_gate: Optional[FriendAccessGate] = None,
        fetcher: Optional[NetworkFetcher] = None,
        window_cache: Optional[WindowedCache] = None,
        fallback_store: Optional[PersistentFallbackStore] = None,
        expander: Optional[RecurrenceExpander] = None,
        merger: Optional[EventMerger] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        """Initialize the service.

        Args:
            viewer_id: User whose view of friends' calendars this service builds
            settings: SyncSettings or any object exposing its attributes
            permission_provider: Live permission source (HTTP provider if omitted)
            access_gate: Prebuilt gate; overrides permission_provider
            fetcher: Remote feed fetcher
            window_cache: In-memory cache
            fallback_store: Durable cache
            expander: Recurrence expander
            merger: Event merger
            clock: Time source for TTLs and sync metadata
        """
        self.viewer_id = viewer_id
        self.settings = settings if isinstance(settings, SyncSettings) else SyncSettings.from_settings(settings)
        self._clock = clock

        self._owned_provider: Optional[HttpPermissionProvider] = None
        if access_gate is None:
            if permission_provider is None:
                self._owned_provider = HttpPermissionProvider(self.settings)
                permission_provider = self._owned_provider
            access_gate = FriendAccessGate(viewer_id, permission_provider)
        self.access_gate = access_gate

        self.fetcher = fetcher or NetworkFetcher(self.settings)
        self.window_cache = window_cache or WindowedCache(self.settings.cache_ttl, clock=clock)
        self.fallback_store = fallback_store or PersistentFallbackStore(self.settings.database_path)
        self.expander = expander or RecurrenceExpander(self.settings, clock=clock)
        self.coordinator = MultiEventExpansionCoordinator(
            self.expander, self.settings.aggregate_max_instances
        )
        self.merger = merger or EventMerger()

        self._feeds: dict[str, FriendCalendarFeed] = {}
        self._profiles: dict[str, FriendProfile] = {}
        self._metadata: dict[str, SyncMetadata] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Bumped by purge; results fetched under an older generation are dropped
        self._generations: dict[str, int] = {}
        # Bumped by every fetch; only the latest request may write the cache
        self._request_seq: dict[str, int] = {}
        self._background: dict[str, asyncio.Task] = {}
        self._closed = False

        self.access_gate.add_revocation_listener(self._handle_revocation)

    async def __aenter__(self) -> "FriendCalendarService":
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel background refreshes and release owned clients."""
        if self._closed:
            return
        self._closed = True

        tasks = list(self._background.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

        await self.fetcher.close()
        if self._owned_provider is not None:
            await self._owned_provider.close()
        self.access_gate.remove_revocation_listener(self._handle_revocation)
        logger.debug("Friend calendar service closed for viewer %s", self.viewer_id)

    def _lock(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = self._locks[owner_id] = asyncio.Lock()
        return lock

    # Reads

    async def fetch_friend_events(
        self, owner_id: str, window_start: datetime, window_end: datetime
    ) -> list[FriendCalendarEvent]:
        """Return a friend's events overlapping the window.

        Serves fresh in-memory data first, then durable data (refreshing it in
        the background), and only then waits on the network.

        Raises:
            AuthExpiredError, ForbiddenError, NotFoundError: Non-retryable fetch failures
            ValueError: If the window is inverted
        """
        start, end = ensure_utc(window_start), ensure_utc(window_end)
        if end < start:
            raise ValueError("Window end is before start")

        with owner_context(owner_id):
            try:
                await self.access_gate.require_access(owner_id)
            except PermissionDenied as e:
                logger.debug("%s; returning no events", e)
                return []

            key = make_window_key(start, end)
            async with self._lock(owner_id):
                entry = self.window_cache.get(owner_id, key)
                if entry is None:
                    entry = await self.fallback_store.load(owner_id, key)
                    if entry is not None and entry.is_fresh(self._clock(), self.window_cache.ttl):
                        self.window_cache.store(entry)
                    elif entry is not None:
                        logger.debug("Serving stale fallback data for %s [%s]", owner_id, key)
                        self._schedule_refresh(owner_id, start, end)
            if entry is not None:
                return list(entry.events)

            return await self._fetch_and_store(owner_id, start, end)

    async def fetch_friends_events(
        self, owner_ids: Iterable[str], window_start: datetime, window_end: datetime
    ) -> dict[str, list[FriendCalendarEvent]]:
        """Fetch several friends concurrently; one friend's failure yields [] for that friend only."""
        owner_ids = list(owner_ids)
        results = await asyncio.gather(
            *(self.fetch_friend_events(owner, window_start, window_end) for owner in owner_ids),
            return_exceptions=True,
        )
        merged: dict[str, list[FriendCalendarEvent]] = {}
        for owner_id, result in zip(owner_ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("Fetching events for %s failed: %s", owner_id, result)
                merged[owner_id] = []
            else:
                merged[owner_id] = result
        return merged

    async def refresh_friend_events(self, owner_id: str) -> list[FriendCalendarEvent]:
        """Drop the owner's in-memory windows and fetch now +/- the refresh window."""
        if not await self.access_gate.can_view(owner_id):
            return []

        async with self._lock(owner_id):
            dropped = self.window_cache.purge(owner_id)
        logger.debug("Refreshing %s, dropped %d in-memory windows", owner_id, dropped)

        start, end = expansion_horizon(self._clock(), self.settings.refresh_window_days)
        return await self._fetch_and_store(owner_id, start, end)

    # Fetch pipeline

    async def _fetch_and_store(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        raise_transient: bool = False,
    ) -> list[FriendCalendarEvent]:
        metadata = self._get_metadata(owner_id)
        metadata.state = SyncState.FETCHING
        metadata.last_attempt_at = self._clock()

        with owner_context(owner_id):
            try:
                return await self._sync_window(owner_id, start, end, raise_transient)
            finally:
                # Cancellation and unexpected errors must not leave the owner FETCHING
                if metadata.state == SyncState.FETCHING:
                    metadata.state = SyncState.IDLE

    async def _sync_window(
        self, owner_id: str, start: datetime, end: datetime, raise_transient: bool
    ) -> list[FriendCalendarEvent]:
        key = make_window_key(start, end)
        generation = self._generations.get(owner_id, 0)
        seq = self._request_seq[owner_id] = self._request_seq.get(owner_id, 0) + 1

        try:
            records = await self.fetcher.fetch_window(owner_id, start, end)
        except FetchCancelledError:
            logger.debug("Fetch for %s was superseded; serving cached data", owner_id)
            return await self._cached_events(owner_id, key)
        except NetworkError as e:
            self._record_failure(owner_id, e)
            if raise_transient:
                raise
            logger.warning("Sync for %s failed, serving cached data: %s", owner_id, e)
            return await self._cached_events(owner_id, key)
        except FetchError as e:
            self._record_failure(owner_id, e)
            raise

        events = await self._build_events(owner_id, records, start, end)

        async with self._lock(owner_id):
            if self._generations.get(owner_id, 0) != generation:
                logger.debug("Dropping fetch result for %s: cache purged mid-flight", owner_id)
                return []
            if self._request_seq.get(owner_id) != seq:
                logger.debug("Not caching fetch result for %s: newer request started", owner_id)
                return events

            entry = self.window_cache.put(owner_id, key, events)
            await self.fallback_store.save(entry)
            self._record_success(owner_id)

        logger.debug("Synced %d events for %s [%s]", len(events), owner_id, key)
        return events

    async def _build_events(
        self,
        owner_id: str,
        records: list[dict[str, Any]],
        start: datetime,
        end: datetime,
    ) -> list[FriendCalendarEvent]:
        raw_events: list[RawFeedEvent] = []
        for record in records:
            try:
                raw_events.append(RawFeedEvent.model_validate(record))
            except ValidationError as e:
                logger.warning(
                    "Skipping invalid record %r from %s: %d validation errors",
                    record.get("id"),
                    owner_id,
                    e.error_count(),
                )

        singles = [
            event for event in raw_events
            if not event.is_recurring and start <= event.start_time <= end
        ]

        masters: dict[str, RawFeedEvent] = {}
        for event in raw_events:
            if not event.is_recurring:
                continue
            current = masters.get(event.id)
            if current is None or EventMerger.is_newer(event, current):
                masters[event.id] = event

        expanded: list[RawFeedEvent] = []
        if masters:
            instances = await self.coordinator.expand_multiple_async(
                [event.to_master_event() for event in masters.values()], start, end
            )
            for event_id, occurrences in instances.items():
                expanded.extend(masters[event_id].to_instance(instance) for instance in occurrences)

        profile = self._profiles.get(owner_id)
        feed = self._feeds.get(owner_id)
        return self.merger.merge(
            owner_id,
            singles + expanded,
            display_name=profile.display_name if profile else "Friend",
            feed_name=feed.name if feed else None,
        )

    async def _cached_events(self, owner_id: str, window_key: str) -> list[FriendCalendarEvent]:
        """Best available data for a window regardless of age, or []."""
        async with self._lock(owner_id):
            entry: Optional[CacheEntry] = self.window_cache.peek(owner_id, window_key)
            if entry is None:
                entry = await self.fallback_store.load(owner_id, window_key)
        return list(entry.events) if entry is not None else []

    # Background refresh

    def _schedule_refresh(self, owner_id: str, start: datetime, end: datetime) -> None:
        existing = self._background.get(owner_id)
        if existing is not None and not existing.done():
            return
        if self._closed:
            return

        task = asyncio.create_task(
            self._background_refresh(owner_id, start, end), name=f"friendcal-refresh-{owner_id}"
        )
        self._background[owner_id] = task
        task.add_done_callback(lambda t, owner=owner_id: self._background_done(owner, t))

    async def _background_refresh(self, owner_id: str, start: datetime, end: datetime) -> None:
        try:
            await self._fetch_and_store(owner_id, start, end, raise_transient=True)
        except FetchError as e:
            logger.error("Background refresh for %s failed: %s", owner_id, e)
        except Exception:
            logger.exception("Background refresh for %s failed", owner_id)

    def _background_done(self, owner_id: str, task: asyncio.Task) -> None:
        if self._background.get(owner_id) is task:
            del self._background[owner_id]

    def background_refresh_pending(self, owner_id: str) -> bool:
        task = self._background.get(owner_id)
        return task is not None and not task.done()

    async def wait_for_background_refreshes(self) -> None:
        tasks = [task for task in self._background.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Purge and permissions

    async def purge_friend_cache(self, owner_id: str) -> int:
        """Empty both cache layers for an owner and stop its pending work.

        Runs under the owner lock, so no read for this owner can observe a
        partially purged state.

        Returns:
            Number of durable records removed
        """
        with owner_context(owner_id):
            async with self._lock(owner_id):
                metadata = self._get_metadata(owner_id)
                metadata.state = SyncState.PURGED
                self._generations[owner_id] = self._generations.get(owner_id, 0) + 1

                self.window_cache.purge(owner_id)
                self.fetcher.cancel(owner_id)
                task = self._background.pop(owner_id, None)
                if task is not None and not task.done():
                    task.cancel()
                self.expander.clear_cache()

                try:
                    removed = await self.fallback_store.purge_all(owner_id)
                finally:
                    self._metadata[owner_id] = SyncMetadata(owner_id=owner_id, state=SyncState.IDLE)

            logger.info("Purged cached calendar data for %s (%d durable records)", owner_id, removed)
        return removed

    async def _handle_revocation(self, owner_id: str) -> None:
        await self.purge_friend_cache(owner_id)
        if self._feeds.pop(owner_id, None) is not None:
            logger.info("Removed friend feed %s", feed_id_for(owner_id))

    async def on_permission_change(self, owner_id: str, has_access: bool) -> None:
        await self.access_gate.on_permission_change(owner_id, has_access)

    async def can_view_friend_calendar(self, owner_id: str) -> bool:
        return await self.access_gate.can_view(owner_id)

    async def get_friends_with_calendar_access(self) -> list[FriendProfile]:
        return await self.access_gate.list_friends_with_access()

    # Feeds

    def create_friend_feed(self, friend: FriendProfile) -> FriendCalendarFeed:
        """Register a feed for a friend, named after their display name."""
        feed = FriendCalendarFeed(
            id=feed_id_for(friend.id),
            name=f"{friend.display_name}'s Calendar",
            friend_user_id=friend.id,
            color=friend_color(friend.id),
        )
        self._feeds[friend.id] = feed
        self._profiles[friend.id] = friend
        return feed

    async def sync_friend_calendar(self, friend: FriendProfile) -> Optional[FriendCalendarFeed]:
        """Create the friend's feed if the viewer currently has access, else None."""
        if not await self.access_gate.can_view(friend.id):
            logger.info("Not syncing %s: no calendar access", friend.id)
            return None
        return self.create_friend_feed(friend)

    async def unsync_friend_calendar(self, owner_id: str) -> None:
        self._feeds.pop(owner_id, None)
        self._profiles.pop(owner_id, None)
        await self.purge_friend_cache(owner_id)

    def get_feed(self, owner_id: str) -> Optional[FriendCalendarFeed]:
        return self._feeds.get(owner_id)

    def get_feeds(self) -> list[FriendCalendarFeed]:
        return list(self._feeds.values())

    # Sync status

    def _get_metadata(self, owner_id: str) -> SyncMetadata:
        metadata = self._metadata.get(owner_id)
        if metadata is None:
            metadata = self._metadata[owner_id] = SyncMetadata(owner_id=owner_id)
        return metadata

    def _record_success(self, owner_id: str) -> None:
        now = self._clock()
        metadata = self._get_metadata(owner_id)
        metadata.last_success_at = now
        metadata.last_error = None
        metadata.last_outcome = SyncState.SUCCEEDED
        metadata.state = SyncState.IDLE

        feed = self._feeds.get(owner_id)
        if feed is not None:
            feed.last_sync_at = now
            feed.sync_error = None

    def _record_failure(self, owner_id: str, error: Exception) -> None:
        metadata = self._get_metadata(owner_id)
        metadata.last_error = str(error)
        metadata.last_outcome = SyncState.FAILED
        metadata.state = SyncState.IDLE

        feed = self._feeds.get(owner_id)
        if feed is not None:
            feed.sync_error = str(error)

    def get_sync_status(self, owner_id: str) -> SyncMetadata:
        return self._get_metadata(owner_id).model_copy()

    def get_sync_state(self, owner_id: str) -> SyncState:
        return self._get_metadata(owner_id).state

    # Expansion

    def expand_recurring_event(
        self,
        event: MasterEvent,
        window_start: datetime,
        window_end: datetime,
        options: Optional[ExpansionOptions] = None,
    ) -> list[EventInstance]:
        """Expand one event; an invalid rule degrades it to a single occurrence."""
        try:
            return self.expander.expand(event, window_start, window_end, options)
        except InvalidRecurrenceRule as e:
            logger.warning("Degrading event %s to a single occurrence: %s", event.id, e)
            return self.expander.expand_as_single(event, window_start, window_end)

    def expand_multiple_events(
        self,
        events: Iterable[MasterEvent],
        window_start: datetime,
        window_end: datetime,
        options: Optional[ExpansionOptions] = None,
    ) -> dict[str, list[EventInstance]]:
        return self.coordinator.expand_multiple(events, window_start, window_end, options)
