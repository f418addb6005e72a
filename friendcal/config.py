"""Configuration for friendcal from settings objects, environment variables and .env files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "FRIENDCAL_"

# Palette used for per-owner display colors
FRIEND_COLOR_PALETTE: tuple[str, ...] = (
    "#3B82F6",  # Blue
    "#8B5CF6",  # Purple
    "#EC4899",  # Pink
    "#10B981",  # Green
    "#F59E0B",  # Amber
    "#EF4444",  # Red
    "#06B6D4",  # Cyan
    "#84CC16",  # Lime
)


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Args:
        path: Path to .env file

    Returns:
        Dictionary of key-value pairs from the .env file.
        Empty dict if file doesn't exist or cannot be read.

    Note:
        - Skips empty lines and comments (lines starting with #)
        - Strips quotes (both single and double) from values
        - Handles KEY=VALUE format with optional whitespace
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}

    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Failed to read .env file (continuing): %s", str(path), exc_info=True)
        return {}

    for raw_line in content.splitlines():
        line = raw_line.strip()

        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue

        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")

        if key:
            result[key] = val

    return result


@dataclass
class SyncSettings:
    """Settings for recurrence expansion, caching and remote fetches.

    Consolidates every tunable with explicit defaults.
    """

    # Caching
    cache_ttl_seconds: int = 900
    database_path: str = str(Path.home() / ".cache" / "friendcal" / "friend_cache.db")

    # Recurrence expansion
    aggregate_max_instances: int = 5000
    max_instances_per_event: Optional[int] = None
    expansion_cache_size: int = 200
    expansion_cache_ttl_seconds: int = 1800

    # Remote fetch
    feed_base_url: str = "http://localhost:5000"
    request_timeout: float = 30.0
    max_attempts: int = 4
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    retry_jitter_ratio: float = 0.25

    # Window used by refresh_friend_events (now +/- days)
    refresh_window_days: int = 14

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)

    @property
    def expansion_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.expansion_cache_ttl_seconds)

    @classmethod
    def from_settings(cls, settings: Any) -> SyncSettings:
        """Extract configuration from an arbitrary settings object.

        Args:
            settings: Object exposing any subset of the SyncSettings attributes

        Returns:
            SyncSettings with values from settings or defaults
        """
        defaults = cls()
        values = {
            f.name: getattr(settings, f.name, getattr(defaults, f.name)) for f in fields(cls)
        }
        return cls(**values)

    @classmethod
    def from_env(
        cls, env: Optional[dict[str, str]] = None, env_file: Optional[Path] = None
    ) -> SyncSettings:
        """Build settings from FRIENDCAL_* environment variables.

        Values from ``env_file`` are used only for keys missing from the environment.
        Invalid values fall back to the default with a warning.
        """
        source = dict(parse_env_file(env_file)) if env_file else {}
        source.update(os.environ if env is None else env)

        settings = cls()
        for f in fields(cls):
            raw = source.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            current = getattr(settings, f.name)
            try:
                setattr(settings, f.name, _coerce(raw, current, f.name))
            except ValueError:
                logger.warning(
                    "Ignoring invalid %s%s=%r, keeping default %r",
                    ENV_PREFIX,
                    f.name.upper(),
                    raw,
                    current,
                )
        return settings


def _coerce(raw: str, current: Any, name: str) -> Any:
    if name == "max_instances_per_event":
        if raw.strip().lower() in ("none", "unbounded"):
            return None
        value = int(raw)
        if value < 0:
            raise ValueError(name)
        return value
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes")
    if isinstance(current, int):
        value = int(raw)
        if value < 0:
            raise ValueError(name)
        return value
    if isinstance(current, float):
        value = float(raw)
        if value < 0:
            raise ValueError(name)
        return value
    return raw
