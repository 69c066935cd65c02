"""
Tests for Relay Cache Retry Logic.
"""

from __future__ import annotations

import warnings
from unittest.mock import MagicMock

import pytest
from tenacity import Retrying

from relay_cache.cache.errors import BackendError
from relay_cache.core.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_WAIT,
    DEFAULT_MIN_WAIT,
    backend_retry,
)


def _fast(**kwargs) -> Retrying:
    kwargs.setdefault("min_wait", 0)
    kwargs.setdefault("max_wait", 0)
    return backend_retry((BackendError,), **kwargs)


class TestRetryConstants:
    def test_default_config(self):
        """Default configuration values are set."""
        assert DEFAULT_MAX_ATTEMPTS == 3
        assert DEFAULT_MIN_WAIT == 0.05
        assert DEFAULT_MAX_WAIT == 1.0


class TestBackendRetry:
    """Test the retry controller."""

    def test_returns_retrying(self):
        assert isinstance(backend_retry((BackendError,)), Retrying)

    def test_builds_without_deprecation_warnings(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            backend_retry((BackendError,), min_wait=0.05, max_wait=1.0)

    def test_success_first_try(self):
        func = MagicMock(return_value="value")

        assert _fast()(func, 1) == "value"
        func.assert_called_once_with(1)

    def test_retries_transient_errors(self):
        """Transient errors are retried until success."""
        func = MagicMock(side_effect=[BackendError("down"), BackendError("down"), "ok"])

        assert _fast()(func) == "ok"
        assert func.call_count == 3

    def test_reraises_after_attempts_exhausted(self):
        """The last error is re-raised, not wrapped in RetryError."""
        func = MagicMock(side_effect=BackendError("still down"))

        with pytest.raises(BackendError, match="still down"):
            _fast(attempts=2)(func)

        assert func.call_count == 2

    def test_other_errors_not_retried(self):
        func = MagicMock(side_effect=KeyError("nope"))

        with pytest.raises(KeyError):
            _fast()(func)

        func.assert_called_once()

    def test_zero_attempts_still_calls_once(self):
        func = MagicMock(side_effect=BackendError("down"))

        with pytest.raises(BackendError):
            _fast(attempts=0)(func)

        func.assert_called_once()

    def test_copies_are_independent(self):
        """A shared controller is copied per call; copies keep the policy."""
        shared = _fast(attempts=2)
        failing = MagicMock(side_effect=BackendError("down"))
        succeeding = MagicMock(side_effect=[BackendError("blip"), "ok"])

        with pytest.raises(BackendError):
            shared.copy()(failing)

        assert shared.copy()(succeeding) == "ok"
        assert failing.call_count == 2
