"""SQLite-backed durable fallback cache for friend calendar windows."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

import aiosqlite
from pydantic import ValidationError

from .exceptions import CacheCorruptionError
from .models import CacheEntry

logger = logging.getLogger(__name__)


class PersistentFallbackStore:
    """Durable secondary cache keyed by (owner_id, window_key).

    Treated purely as a cache: a record that cannot be decoded is dropped and
    reported as a miss. Each operation opens its own connection.
    """

    def __init__(self, database_path: Union[Path, str]):
        """Initialize fallback store.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path) if isinstance(database_path, str) else database_path
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.debug("Fallback store initialized (lazy): %s", self.database_path)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return

        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()

        async with self._initialization_lock:
            # Double-check after acquiring lock
            if self._initialized:
                return

            async with aiosqlite.connect(str(self.database_path)) as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS friend_cache (
                        owner_id TEXT NOT NULL,
                        window_key TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        written_at TEXT NOT NULL,
                        PRIMARY KEY (owner_id, window_key)
                    )
                """
                )
                await db.commit()

            self._initialized = True

    async def load(self, owner_id: str, window_key: str) -> Optional[CacheEntry]:
        """Load a cached window for an owner.

        Returns:
            The stored entry (of any age), or None on miss, corruption or read failure
        """
        try:
            await self._ensure_initialized()
            async with aiosqlite.connect(str(self.database_path)) as db:
                cursor = await db.execute(
                    "SELECT payload FROM friend_cache WHERE owner_id = ? AND window_key = ?",
                    (owner_id, window_key),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error:
            logger.exception("Failed to read fallback cache for %s [%s]", owner_id, window_key)
            return None

        if row is None:
            logger.debug("Fallback miss for %s [%s]", owner_id, window_key)
            return None

        try:
            return self._decode(owner_id, window_key, row[0])
        except CacheCorruptionError as e:
            logger.warning("%s; treating as miss", e)
            await self._delete(owner_id, window_key)
            return None

    @staticmethod
    def _decode(owner_id: str, window_key: str, payload: str) -> CacheEntry:
        try:
            entry = CacheEntry.model_validate_json(payload)
        except ValidationError as e:
            raise CacheCorruptionError(owner_id, window_key, f"{e.error_count()} validation errors") from e
        if entry.owner_id != owner_id or entry.window_key != window_key:
            raise CacheCorruptionError(owner_id, window_key, "payload key mismatch")
        return entry

    async def save(self, entry: CacheEntry) -> bool:
        """Write an entry through to disk, replacing any previous record.

        Returns:
            True if the write succeeded, False otherwise
        """
        try:
            await self._ensure_initialized()
            async with aiosqlite.connect(str(self.database_path)) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO friend_cache (owner_id, window_key, payload, written_at)
                    VALUES (?, ?, ?, ?)
                """,
                    (
                        entry.owner_id,
                        entry.window_key,
                        entry.model_dump_json(),
                        entry.written_at.isoformat(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error:
            logger.exception("Failed to write fallback cache for %s [%s]", entry.owner_id, entry.window_key)
            return False

        logger.debug("Stored %d events in fallback cache for %s", len(entry.events), entry.owner_id)
        return True

    async def purge_all(self, owner_id: str) -> int:
        """Delete every record for one owner in a single transaction.

        Matches on the owner column exactly, so owners whose ids share a
        prefix are untouched.

        Returns:
            Number of records removed

        Raises:
            aiosqlite.Error: If the delete could not be committed; nothing is removed
        """
        await self._ensure_initialized()
        async with aiosqlite.connect(str(self.database_path)) as db:
            try:
                cursor = await db.execute("DELETE FROM friend_cache WHERE owner_id = ?", (owner_id,))
                deleted = cursor.rowcount
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                logger.exception("Failed to purge fallback cache for %s", owner_id)
                raise

        logger.debug("Purged %d fallback records for %s", deleted, owner_id)
        return deleted

    async def count(self, owner_id: Optional[str] = None) -> int:
        await self._ensure_initialized()
        async with aiosqlite.connect(str(self.database_path)) as db:
            if owner_id is None:
                cursor = await db.execute("SELECT COUNT(*) FROM friend_cache")
            else:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM friend_cache WHERE owner_id = ?", (owner_id,)
                )
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def _delete(self, owner_id: str, window_key: str) -> None:
        try:
            async with aiosqlite.connect(str(self.database_path)) as db:
                await db.execute(
                    "DELETE FROM friend_cache WHERE owner_id = ? AND window_key = ?",
                    (owner_id, window_key),
                )
                await db.commit()
        except aiosqlite.Error:
            logger.exception("Failed to drop corrupt record for %s [%s]", owner_id, window_key)
