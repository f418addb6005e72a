"""HTTP fetcher for friend calendar windows with per-owner cancellation and retry."""

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Optional, Union

import httpx

from .config import SyncSettings
from .exceptions import (
    AuthExpiredError,
    FetchCancelledError,
    FetchError,
    FetchTimeoutError,
    ForbiddenError,
    NetworkError,
    NotFoundError,
)
from .timezone_utils import format_utc

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "friendcal/1.0",
}


def raise_for_status(response: httpx.Response, owner_id: Optional[str] = None) -> None:
    """Map a non-success HTTP response onto the fetch error hierarchy."""
    status = response.status_code
    if status < 400:
        return
    if status == 401:
        raise AuthExpiredError("Credential rejected", owner_id, status)
    if status == 403:
        raise ForbiddenError("Access forbidden", owner_id, status)
    if status == 404:
        raise NotFoundError("Calendar not found", owner_id, status)
    if status in (408, 429) or status >= 500:
        raise NetworkError(f"Transient server error (HTTP {status})", owner_id, status)
    raise FetchError(f"Request rejected (HTTP {status})", owner_id, status)


class NetworkFetcher:
    """Fetches raw event records for one owner and window.

    At most one request per owner is current: starting a new request cancels
    the previous one, whose caller then receives FetchCancelledError.
    """

    def __init__(
        self,
        settings: Any = None,
        client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[TokenProvider] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize fetcher.

        Args:
            settings: SyncSettings or any object exposing its attributes
            client: Optional shared HTTP client (not closed by this fetcher)
            token_provider: Returns the bearer credential, sync or async
            sleep: Backoff delay function, injectable for tests
        """
        self.settings = settings if isinstance(settings, SyncSettings) else SyncSettings.from_settings(settings)
        self.client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None
        self._token_provider = token_provider
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Task] = {}

        logger.debug("Network fetcher initialized (shared_client: %s)", not self._owns_client)

    async def __aenter__(self) -> "NetworkFetcher":
        self._ensure_client()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel outstanding requests and close the client if this fetcher created it."""
        for owner_id in list(self._inflight):
            self.cancel(owner_id)
        if self.client is not None and self._owns_client:
            if not self.client.is_closed:
                await self.client.aclose()
                logger.debug("Closed HTTP client")
            self.client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            timeout = httpx.Timeout(
                connect=10.0, read=self.settings.request_timeout, write=10.0, pool=30.0
            )
            self.client = httpx.AsyncClient(
                base_url=self.settings.feed_base_url,
                timeout=timeout,
                headers=DEFAULT_HEADERS,
            )
            self._owns_client = True
        return self.client

    # In-flight tracking

    def in_flight(self, owner_id: str) -> bool:
        task = self._inflight.get(owner_id)
        return task is not None and not task.done()

    def cancel(self, owner_id: str) -> bool:
        """Cancel the current request for an owner, if any."""
        task = self._inflight.pop(owner_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Cancelled in-flight fetch for %s", owner_id)
        return True

    async def fetch_window(
        self, owner_id: str, window_start: datetime, window_end: datetime
    ) -> list[dict[str, Any]]:
        """Fetch raw event records for an owner's window.

        Raises:
            NetworkError: Transient failure after all attempts
            AuthExpiredError, ForbiddenError, NotFoundError: Immediately, no retry
            FetchCancelledError: A newer request for the same owner, or a purge, superseded this one
        """
        previous = self._inflight.get(owner_id)
        if previous is not None and not previous.done():
            previous.cancel()
            logger.debug("Superseding in-flight fetch for %s", owner_id)

        task = asyncio.create_task(self._fetch_with_retry(owner_id, window_start, window_end))
        self._inflight[owner_id] = task

        try:
            result = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise FetchCancelledError("Fetch superseded", owner_id) from None
        finally:
            if self._inflight.get(owner_id) is task:
                del self._inflight[owner_id]

        if self._inflight.get(owner_id) not in (None, task):
            # Completed, but a newer request started before this caller resumed
            raise FetchCancelledError("Fetch superseded after completion", owner_id)
        return result

    # Retry loop

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff for a 0-indexed attempt, capped, plus proportional jitter."""
        base = min(self.settings.retry_base_delay * (2**attempt), self.settings.retry_max_delay)
        jitter = random.uniform(0, self.settings.retry_jitter_ratio) * base  # nosec B311 - jitter not cryptographic
        return base + jitter

    async def _fetch_with_retry(
        self, owner_id: str, window_start: datetime, window_end: datetime
    ) -> list[dict[str, Any]]:
        max_attempts = max(1, int(self.settings.max_attempts))
        last_error: Optional[FetchError] = None

        for attempt in range(max_attempts):
            try:
                records = await self._request(owner_id, window_start, window_end)
                logger.debug(
                    "Fetched %d records for %s (attempt %d)", len(records), owner_id, attempt + 1
                )
                return records
            except FetchError as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt + 1 >= max_attempts:
                    break
                backoff_time = self._calculate_backoff(attempt)
                logger.warning(
                    "Fetch for %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    owner_id,
                    attempt + 1,
                    max_attempts,
                    backoff_time,
                    e,
                )
                await self._sleep(backoff_time)

        logger.error("All %d fetch attempts failed for %s: %s", max_attempts, owner_id, last_error)
        if last_error is None:
            raise NetworkError("Maximum attempts exceeded", owner_id)
        raise last_error

    async def _request(
        self, owner_id: str, window_start: datetime, window_end: datetime
    ) -> list[dict[str, Any]]:
        client = self._ensure_client()
        headers = {}
        token = await self._get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        body = {
            "ownerId": owner_id,
            "windowStart": format_utc(window_start),
            "windowEnd": format_utc(window_end),
        }

        try:
            response = await client.post(
                f"/api/friends/{owner_id}/calendar/events", json=body, headers=headers
            )
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Request timed out: {e}", owner_id) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Transport failure: {e}", owner_id) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP failure: {e}", owner_id) from e

        raise_for_status(response, owner_id)
        return self._parse_records(response, owner_id)

    @staticmethod
    def _parse_records(response: httpx.Response, owner_id: str) -> list[dict[str, Any]]:
        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError("Response body is not JSON", owner_id, response.status_code) from e

        if isinstance(payload, dict):
            payload = payload.get("events")
        if not isinstance(payload, list):
            raise FetchError("Response has no event list", owner_id, response.status_code)
        return [record for record in payload if isinstance(record, dict)]

    async def _get_token(self) -> Optional[str]:
        if self._token_provider is None:
            return None
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token
