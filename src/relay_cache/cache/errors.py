"""
Cache Error Taxonomy

Typed error codes, exceptions and the result type returned by the stateful
cache components.

Pure helpers (key and version parsing) raise ``InvalidKeyError`` /
``InvalidVersionError``. Stateful operations (facade, versioning, version
manager, warmer) convert failures into a ``CacheResult`` so a caller never
sees an exception for an expected outcome such as a miss or a full queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Machine-readable failure reasons."""

    # Lookups and keys
    NOT_FOUND = "not_found"
    INVALID_KEY = "invalid_key"
    INVALID_VERSION = "invalid_version"
    INVALID_VERSION_FORMAT = "invalid_version_format"
    INVALID_TTL = "invalid_ttl"

    # Configuration (fatal at startup)
    UNKNOWN_ADAPTER = "unknown_adapter"
    INVALID_BACKEND = "invalid_backend"

    # Deployment
    INVALID_STRATEGY = "invalid_strategy"
    SAME_VERSION = "same_version"
    VERSION_DOWNGRADE = "version_downgrade"
    NO_PREVIOUS_VERSION = "no_previous_version"
    VERIFICATION_FAILED = "verification_failed"

    # Warming
    QUEUE_FULL = "queue_full"
    TIMEOUT = "timeout"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    UNKNOWN_STRATEGY = "unknown_strategy"

    # Other
    BACKEND_ERROR = "backend_error"
    FETCH_FAILED = "fetch_failed"


# =============================================================================
# Exceptions
# =============================================================================


class CacheError(Exception):
    """Base class for relay cache errors."""

    def __init__(self, code: ErrorCode, message: str = "") -> None:
        self.code = code
        self.message = message or code.value
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code.value, "message": self.message}


class ConfigurationError(CacheError):
    """Misconfiguration detected at startup (unknown adapter, bad TTL file)."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_BACKEND) -> None:
        super().__init__(code, message)


class BackendError(CacheError):
    """
    Transient failure talking to the backing store.

    The facade retries these with exponential backoff before surfacing a
    ``backend_error`` result.
    """

    def __init__(self, message: str, original_error: Optional[BaseException] = None) -> None:
        self.original_error = original_error
        super().__init__(ErrorCode.BACKEND_ERROR, message)


class InvalidKeyError(CacheError):
    def __init__(self, key: Any, message: str = "") -> None:
        self.key = key
        super().__init__(ErrorCode.INVALID_KEY, message or f"Invalid cache key: {key!r}")


class InvalidVersionError(CacheError):
    def __init__(self, version: Any, message: str = "") -> None:
        self.version = version
        super().__init__(
            ErrorCode.INVALID_VERSION,
            message or f"Invalid version {version!r}: expected MAJOR.MINOR.PATCH",
        )


# =============================================================================
# Result Type
# =============================================================================


@dataclass(frozen=True)
class CacheResult:
    """
    Outcome of a cache operation.

    Attributes:
        ok: True when the operation succeeded
        value: Payload on success (cached value, count, version, ...)
        error: Error code on failure
        detail: Human-readable failure detail
    """

    ok: bool
    value: Any = None
    error: Optional[ErrorCode] = None
    detail: str = ""

    @classmethod
    def success(cls, value: Any = None) -> CacheResult:
        return cls(ok=True, value=value)

    @classmethod
    def not_found(cls, detail: str = "") -> CacheResult:
        return cls(ok=False, error=ErrorCode.NOT_FOUND, detail=detail)

    @classmethod
    def failure(cls, error: ErrorCode, detail: str = "") -> CacheResult:
        return cls(ok=False, error=error, detail=detail or error.value)

    @classmethod
    def from_exception(cls, exc: CacheError) -> CacheResult:
        return cls(ok=False, error=exc.code, detail=exc.message)

    @property
    def is_not_found(self) -> bool:
        return self.error is ErrorCode.NOT_FOUND

    def unwrap(self) -> Any:
        """Return the value or raise the failure as a ``CacheError``."""
        if self.ok:
            return self.value
        raise CacheError(self.error or ErrorCode.BACKEND_ERROR, self.detail)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {
            "ok": False,
            "error": self.error.value if self.error else None,
            "detail": self.detail,
        }
