import asyncio
from collections.abc import AsyncIterator, Generator
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

import httpx
import pytest

from friendcal.config import SyncSettings
from friendcal.fetcher import NetworkFetcher
from friendcal.models import FriendProfile, FriendshipStatus, PermissionSnapshot
from friendcal.service import FriendCalendarService

FEED_BASE_URL = "http://feed.test"


class FakeClock:
    """Manually advanced clock, callable like now_utc()."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePermissionProvider:
    """In-memory permission service recording every live check."""

    def __init__(self) -> None:
        self.snapshots: dict[str, PermissionSnapshot] = {}
        self.friends: list[FriendProfile] = []
        self.calls: list[str] = []
        self.error: Optional[Exception] = None

    def grant(
        self,
        owner_id: str,
        permission: str = "viewer",
        status: FriendshipStatus = FriendshipStatus.ACCEPTED,
    ) -> None:
        self.snapshots[owner_id] = PermissionSnapshot(
            has_access=True, permission=permission, status=status
        )

    def revoke(self, owner_id: str) -> None:
        self.snapshots[owner_id] = PermissionSnapshot(has_access=False)

    async def get_calendar_access(self, viewer_id: str, owner_id: str) -> PermissionSnapshot:
        self.calls.append(owner_id)
        if self.error is not None:
            raise self.error
        return self.snapshots.get(owner_id, PermissionSnapshot(has_access=False))

    async def list_friends_with_access(self, viewer_id: str) -> list[FriendProfile]:
        if self.error is not None:
            raise self.error
        return list(self.friends)


class FakeFeed:
    """Remote calendar feed served through httpx.MockTransport.

    ``failures`` queues status codes per owner; ``gates`` blocks the Nth
    request (1-based) until the event is set.
    """

    def __init__(self) -> None:
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.failures: dict[str, list[int]] = {}
        self.gates: dict[int, asyncio.Event] = {}
        self.entered = asyncio.Event()
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def calls_for(self, owner_id: str) -> int:
        return sum(1 for request in self.requests if owner_from(request) == owner_id)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        gate = self.gates.get(len(self.requests))
        if gate is not None:
            self.entered.set()
            await gate.wait()

        owner_id = owner_from(request)
        queued = self.failures.get(owner_id)
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "failure"})
        return httpx.Response(200, json={"events": self.events.get(owner_id, [])})


def owner_from(request: httpx.Request) -> str:
    # /api/friends/{owner}/calendar/events
    return request.url.path.split("/")[3]


def make_record(
    event_id: str,
    start: datetime,
    hours: float = 1,
    title: str = "Meeting",
    **extra: Any,
) -> dict[str, Any]:
    """Raw feed record in the upstream camelCase wire format."""
    record = {
        "id": event_id,
        "title": title,
        "startTime": start.isoformat(),
        "endTime": (start + timedelta(hours=hours)).isoformat(),
        "isAllDay": False,
        "color": None,
    }
    record.update(extra)
    return record


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear clock and settings overrides so tests never leak into each other."""
    monkeypatch.delenv("FRIENDCAL_TEST_TIME", raising=False)
    for key in ("FRIENDCAL_DEBUG", "FRIENDCAL_LOG_LEVEL", "FRIENDCAL_CACHE_TTL_SECONDS"):
        monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def window() -> tuple[datetime, datetime]:
    return datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 1, 8, tzinfo=UTC)


@pytest.fixture
def sync_settings(tmp_path: Any) -> SyncSettings:
    """Deterministic settings with the durable store under tmp_path."""
    return SyncSettings(
        database_path=str(tmp_path / "friend_cache.db"),
        feed_base_url=FEED_BASE_URL,
        request_timeout=5.0,
    )


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
async def feed_client(feed: FakeFeed) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(feed.handler), base_url=FEED_BASE_URL
    ) as client:
        yield client


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fetcher(sync_settings: SyncSettings, feed_client: httpx.AsyncClient, sleeps: list[float]) -> NetworkFetcher:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return NetworkFetcher(
        sync_settings, client=feed_client, token_provider=lambda: "token-123", sleep=fake_sleep
    )


@pytest.fixture
def permissions() -> FakePermissionProvider:
    provider = FakePermissionProvider()
    provider.grant("alice")
    provider.grant("bob", permission="editor")
    return provider


@pytest.fixture
async def service(
    sync_settings: SyncSettings,
    permissions: FakePermissionProvider,
    fetcher: NetworkFetcher,
    clock: FakeClock,
) -> AsyncIterator[FriendCalendarService]:
    svc = FriendCalendarService(
        "viewer-1",
        sync_settings,
        permission_provider=permissions,
        fetcher=fetcher,
        clock=clock,
    )
    yield svc
    await svc.close()


@pytest.fixture
def record() -> Any:
    """Factory for raw feed records: record("evt-1", start, hours=1, **extra)."""
    return make_record
