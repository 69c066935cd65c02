"""
Relay Cache Structured Logging

Every ``relay_cache`` logger writes through one shared stderr handler.
Records passing that handler are stamped with the cache they concern:
the cache name and the active cache-schema version, bound once by the
runtime. A record logged during a deployment therefore shows which
version was live when it was written.

Text output:
    [RELAY WARNING] [facade] [relay_cache@1.1.0] Backend error on esi:character:1

JSON output (RELAY_LOG_JSON=1) carries the same context as
``cache_name`` / ``cache_version`` fields next to any ``extra`` values.

Usage:
    from relay_cache.core.logging import get_logger

    logger = get_logger(__name__)
    logger.warning("Backend error on %s", key)

Environment Variables:
    RELAY_LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR)
    RELAY_DEBUG: Legacy - if set, enables DEBUG level
    RELAY_LOG_JSON: If set, output JSON-formatted logs
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Optional

from .config import get_settings

ROOT_LOGGER = "relay_cache"

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}


# =============================================================================
# Cache Context
# =============================================================================


class CacheContextFilter(logging.Filter):
    """
    Stamps records with ``cache_name`` and ``cache_version``.

    Values passed explicitly through ``extra`` are left alone. The version
    is read on every record since deployments change it at runtime.
    """

    def __init__(self) -> None:
        super().__init__()
        self.cache_name: Optional[str] = None
        self.version_provider: Optional[Callable[[], str]] = None

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "cache_name"):
            record.cache_name = self.cache_name
        if not hasattr(record, "cache_version"):
            provider = self.version_provider
            record.cache_version = provider() if provider is not None else None
        return True


_context = CacheContextFilter()


def bind_cache_context(cache_name: str, version_provider: Callable[[], str]) -> None:
    """Attach the cache name and a current-version callable to all output."""
    _context.cache_name = cache_name
    _context.version_provider = version_provider


def clear_cache_context() -> None:
    _context.cache_name = None
    _context.version_provider = None


# =============================================================================
# Formatter
# =============================================================================


class RelayFormatter(logging.Formatter):
    """
    Formatter for relay cache logs.

    Text output is ``[RELAY LEVEL] [module] [cache@version] message``, the
    context tag only appearing once a cache is bound. JSON output carries
    timestamp, level, logger, message and the extra fields.
    """

    def __init__(self, json_output: bool = False) -> None:
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if self.json_output:
            return self._format_json(record)
        return self._format_text(record)

    @staticmethod
    def _context_tag(record: logging.LogRecord) -> str:
        name = getattr(record, "cache_name", None)
        version = getattr(record, "cache_version", None)
        if name and version:
            return f" [{name}@{version}]"
        if name or version:
            return f" [{name or version}]"
        return ""

    def _format_text(self, record: logging.LogRecord) -> str:
        module = record.name.rpartition(".")[2]
        msg = f"[RELAY {record.levelname}] [{module}]{self._context_tag(record)} "
        msg += record.getMessage()

        if record.exc_info:
            msg += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return msg

    def _format_json(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


# =============================================================================
# Logger Factory
# =============================================================================

_loggers: dict[str, logging.Logger] = {}
_handler: Optional[logging.Handler] = None
_level_override: Optional[int] = None


def _get_handler() -> logging.Handler:
    """Get or create the shared stderr handler."""
    global _handler
    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(RelayFormatter(json_output=get_settings().log_json))
        _handler.addFilter(_context)
    return _handler


def _effective_level() -> int:
    if _level_override is not None:
        return _level_override
    return get_settings().log_level_int


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = _loggers.get(name)
    if logger is not None:
        return logger

    logger = logging.getLogger(name)
    logger.setLevel(_effective_level())
    logger.addHandler(_get_handler())
    logger.propagate = False

    _loggers[name] = logger
    return logger


def set_log_level(level: int) -> None:
    """
    Override the configured level for every relay logger.

    Applies to loggers created later as well, which is how the CLI
    ``--verbose`` flag reaches modules imported after argument parsing.
    """
    global _level_override
    _level_override = level
    for logger in _loggers.values():
        logger.setLevel(level)


def debug_enabled() -> bool:
    return _effective_level() <= logging.DEBUG


def reset_logging() -> None:
    """
    Return every ``relay_cache.*`` logger to stock logging behavior.

    Restores propagate=True and level=NOTSET, detaches the shared handler
    and drops the level override and cache context. Used by test fixtures
    so caplog sees records from every test.
    """
    global _handler, _level_override

    for name, entry in list(logging.Logger.manager.loggerDict.items()):
        # loggerDict also holds PlaceHolder objects
        if isinstance(entry, logging.Logger) and (
            name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + ".")
        ):
            entry.propagate = True
            entry.setLevel(logging.NOTSET)

    if _handler is not None:
        for logger in _loggers.values():
            logger.removeHandler(_handler)

    # Loggers stay cached so propagate=True survives
    _handler = None
    _level_override = None
    clear_cache_context()
