"""
Central logging configuration for friendcal.

Keeps friendcal module logs at INFO (or DEBUG on request) while suppressing
verbose debug output from the HTTP and database client libraries.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

FRIENDCAL_MODULES = [
    "friendcal",
    "friendcal.recurrence_expander",
    "friendcal.event_merger",
    "friendcal.window_cache",
    "friendcal.fallback_store",
    "friendcal.fetcher",
    "friendcal.access_gate",
    "friendcal.service",
]

NOISY_LOGGERS = ["httpx", "httpcore", "aiosqlite", "asyncio"]

# Owner whose calendar the current task is working on
owner_id_var: ContextVar[str] = ContextVar("owner_id", default="-")


@contextmanager
def owner_context(owner_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with the given owner."""
    token = owner_id_var.set(owner_id)
    try:
        yield
    finally:
        owner_id_var.reset(token)


class OwnerContextFilter(logging.Filter):
    """Add the current owner (from ``owner_context``) to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "owner_id"):
            record.owner_id = owner_id_var.get()
        return True


def configure_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Configure logging levels for friendcal.

    Args:
        debug_mode: Whether to enable debug logging for friendcal modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        FRIENDCAL_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        FRIENDCAL_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("FRIENDCAL_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("FRIENDCAL_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    owner_filter = OwnerContextFilter()

    # Only add a handler if the host application has not configured one
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(root_level)
        handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(owner_id)s] %(levelname)s - %(name)s - %(message)s")
        )
        handler.addFilter(owner_filter)
        root_logger.addHandler(handler)
    else:
        for existing_handler in root_logger.handlers:
            existing_handler.addFilter(owner_filter)

    logger_config: dict[str, int] = {name: logging.WARNING for name in NOISY_LOGGERS}

    module_level = logging.DEBUG if final_debug else logging.INFO
    for module in FRIENDCAL_MODULES:
        logger_config[module] = module_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for friendcal modules")
    else:
        root_logger.info("Production logging configuration applied")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ["friendcal", *NOISY_LOGGERS]:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
