"""
Relay Cache Core

Shared infrastructure: settings, logging, retry policy, detached tasks
and display formatters.
"""

from .config import RelaySettings, get_settings, reset_settings
from .formatters import get_utc_timestamp
from .logging import get_logger

__all__ = [
    "RelaySettings",
    "get_settings",
    "reset_settings",
    "get_logger",
    "get_utc_timestamp",
]
