"""Live permission checks for viewing a friend's calendar, and the revocation trigger."""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from .config import SyncSettings
from .exceptions import FetchError, PermissionDenied
from .fetcher import DEFAULT_HEADERS, TokenProvider, raise_for_status
from .models import FriendProfile, FriendRole, FriendshipStatus, PermissionSnapshot

logger = logging.getLogger(__name__)

READ_ROLES = frozenset(
    {FriendRole.VIEWER, FriendRole.CONTRIBUTOR, FriendRole.EDITOR, FriendRole.OWNER}
)

RevocationListener = Callable[[str], Awaitable[None]]


class PermissionProvider(Protocol):
    """Source of live friendship and permission data."""

    async def get_calendar_access(self, viewer_id: str, owner_id: str) -> PermissionSnapshot: ...

    async def list_friends_with_access(self, viewer_id: str) -> list[FriendProfile]: ...


class HttpPermissionProvider:
    """Permission provider backed by the friend service HTTP API."""

    def __init__(
        self,
        settings: Any = None,
        client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[TokenProvider] = None,
    ) -> None:
        self.settings = settings if isinstance(settings, SyncSettings) else SyncSettings.from_settings(settings)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.feed_base_url,
            timeout=self.settings.request_timeout,
            headers=DEFAULT_HEADERS,
        )
        self._token_provider = token_provider

    async def close(self) -> None:
        if self._owns_client and not self.client.is_closed:
            await self.client.aclose()

    async def _headers(self) -> dict[str, str]:
        if self._token_provider is None:
            return {}
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def get_calendar_access(self, viewer_id: str, owner_id: str) -> PermissionSnapshot:
        """Fetch the viewer's access to an owner's calendar.

        Raises:
            FetchError: On non-success responses
            httpx.HTTPError: On transport failures
        """
        response = await self.client.get(
            f"/api/friends/{owner_id}/calendar-access", headers=await self._headers()
        )
        raise_for_status(response, owner_id)
        return PermissionSnapshot.model_validate(response.json())

    async def list_friends_with_access(self, viewer_id: str) -> list[FriendProfile]:
        response = await self.client.get(
            "/api/friends/with-calendar-access", headers=await self._headers()
        )
        raise_for_status(response)
        payload = response.json()
        if isinstance(payload, dict):
            payload = payload.get("friends", [])
        return [FriendProfile.model_validate(item) for item in payload]


class FriendAccessGate:
    """Authorizes every read of a friend's calendar with a fresh permission check.

    Permission snapshots are never cached. Revocation notifies registered
    listeners, which purge cached data and deregister feeds.
    """

    def __init__(self, viewer_id: str, provider: PermissionProvider):
        self.viewer_id = viewer_id
        self.provider = provider
        self._revocation_listeners: list[RevocationListener] = []

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        self._revocation_listeners.append(listener)

    def remove_revocation_listener(self, listener: RevocationListener) -> None:
        if listener in self._revocation_listeners:
            self._revocation_listeners.remove(listener)

    async def check_access(self, owner_id: str) -> PermissionSnapshot:
        """Run a live permission check. Provider failures mean no access."""
        if owner_id == self.viewer_id:
            return PermissionSnapshot(
                has_access=True, permission=FriendRole.OWNER.value, status=FriendshipStatus.ACCEPTED
            )
        try:
            return await self.provider.get_calendar_access(self.viewer_id, owner_id)
        except (FetchError, httpx.HTTPError, ValidationError, ValueError) as e:
            logger.warning("Permission check for %s failed, denying access: %s", owner_id, e)
            return PermissionSnapshot(has_access=False)

    async def validate_access(self, owner_id: str) -> Optional[FriendRole]:
        """Return the viewer's role on the owner's calendar, or None for no access."""
        snapshot = await self.check_access(owner_id)
        if not snapshot.has_access:
            return None
        if snapshot.status is not None and snapshot.status != FriendshipStatus.ACCEPTED:
            logger.debug("Friendship with %s is %s; no access", owner_id, snapshot.status.value)
            return None
        role = snapshot.role
        if role not in READ_ROLES:
            logger.debug("Permission %r for %s does not grant read access", snapshot.permission, owner_id)
            return None
        return role

    async def can_view(self, owner_id: str) -> bool:
        return await self.validate_access(owner_id) is not None

    async def require_access(self, owner_id: str) -> FriendRole:
        """Like validate_access, but raises PermissionDenied instead of returning None."""
        role = await self.validate_access(owner_id)
        if role is None:
            raise PermissionDenied(self.viewer_id, owner_id)
        return role

    async def list_friends_with_access(self) -> list[FriendProfile]:
        try:
            return await self.provider.list_friends_with_access(self.viewer_id)
        except (FetchError, httpx.HTTPError, ValidationError, ValueError) as e:
            logger.warning("Failed to list friends with calendar access: %s", e)
            return []

    async def on_permission_change(self, owner_id: str, has_access: bool) -> None:
        """React to a permission change.

        Revocation awaits every listener so that both cache layers are empty
        before this returns. A grant does nothing; the next read fetches normally.
        """
        if has_access:
            logger.debug("Access granted for %s; next read will fetch", owner_id)
            return

        logger.info("Calendar access to %s revoked; purging cached data", owner_id)
        for listener in list(self._revocation_listeners):
            await listener(owner_id)
