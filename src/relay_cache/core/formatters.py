"""
Relay Cache Formatters

Display helpers for timestamps and TTLs used by CLI output.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


def format_datetime(dt: datetime) -> str:
    """
    Format datetime for display.

    Returns:
        ISO format string like "2026-01-15T12:30:00Z"
    """
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def get_utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_utc_timestamp() -> str:
    """Current UTC timestamp string."""
    return format_datetime(get_utc_now())


def format_epoch(epoch: Optional[float]) -> Optional[str]:
    """Format a ``time.time()`` value; ``None`` passes through."""
    if epoch is None:
        return None
    return format_datetime(datetime.fromtimestamp(epoch, tz=timezone.utc))


def format_ttl(seconds: float) -> str:
    """
    Format a TTL into a human-readable duration.

    Examples:
        >>> format_ttl(86400 + 3600 + 1800)
        '1d 1h 30m'
        >>> format_ttl(45)
        '45s'
        >>> format_ttl(float("inf"))
        'never'
    """
    if math.isinf(seconds):
        return "never"
    if seconds <= 0:
        return "expired"

    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
