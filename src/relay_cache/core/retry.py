"""
Relay Cache Retry Logic

Bounded exponential backoff for transient backing-store failures.

The facade wraps every adapter call in a tenacity ``Retrying`` built here:
- Retries only the exception types it is given (transient backend errors)
- Exponential backoff plus a small random jitter
- Re-raises the final error so the caller can convert it to a typed result
"""

from __future__ import annotations

import logging

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .logging import get_logger

logger = get_logger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT = 0.05  # seconds
DEFAULT_MAX_WAIT = 1.0  # seconds
JITTER_FRACTION = 0.1  # of max_wait


def backend_retry(
    retry_on: tuple[type[BaseException], ...],
    attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT,
    max_wait: float = DEFAULT_MAX_WAIT,
) -> Retrying:
    """
    Build a retry controller for backend calls.

    Call it as ``retrying(func, *args)``; use ``.copy()`` per call when the
    controller is shared between threads.

    Args:
        retry_on: Exception types considered transient
        attempts: Total attempts including the first (default: 3)
        min_wait: First backoff in seconds, doubled on each retry
        max_wait: Backoff ceiling in seconds, before jitter

    Returns:
        A tenacity ``Retrying`` that re-raises the last error once
        attempts are exhausted
    """
    return Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait)
        + wait_random(0, max_wait * JITTER_FRACTION),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )
