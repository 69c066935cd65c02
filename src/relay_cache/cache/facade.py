"""
Cache Facade

Domain-level read/write API over the store adapter.

Every call:
- passes its key through ``Versioning.versioned_key``
- records a hit or miss (reads) and an operation-timing sample
- retries transient backend errors with bounded exponential backoff
- returns a ``CacheResult`` instead of raising

Usage:
    result = facade.get_character(95465499)
    if result.ok:
        character = result.value
    elif result.is_not_found:
        ...

    facade.put_killmail(1001, "abcd", killmail_data)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Optional, Union

from ..core.logging import get_logger
from ..core.retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_WAIT, DEFAULT_MIN_WAIT, backend_retry
from . import keys
from .errors import BackendError, CacheResult, ErrorCode, InvalidKeyError
from .store import MISS

if TYPE_CHECKING:
    from .domain_config import DomainConfig
    from .metrics import CacheMetrics
    from .store import StoreAdapter
    from .tracker import ActivityTracker
    from .versioning import Versioning

logger = get_logger(__name__)

# Metrics domain for keys addressed directly rather than through a domain helper
CUSTOM_DOMAIN = "custom"
DEFAULT_DOMAIN = "default"

GenericKey = Union[str, Sequence[Any]]


class CacheFacade:
    """
    Domain-specific cache API.

    Args:
        adapter: Store adapter over the selected backend
        domain_config: Cache name and TTL policy
        versioning: Key versioning
        metrics: Optional metrics sink (failures never affect callers)
        tracker: Optional activity tracker fed by every domain read
        retry_attempts: Attempts per backend call (transient errors only)
        retry_min_wait: Initial backoff in seconds
        retry_max_wait: Backoff ceiling in seconds
    """

    def __init__(
        self,
        adapter: StoreAdapter,
        domain_config: DomainConfig,
        versioning: Versioning,
        metrics: Optional[CacheMetrics] = None,
        tracker: Optional[ActivityTracker] = None,
        retry_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_min_wait: float = DEFAULT_MIN_WAIT,
        retry_max_wait: float = DEFAULT_MAX_WAIT,
    ) -> None:
        self.adapter = adapter
        self.domain_config = domain_config
        self.versioning = versioning
        self.metrics = metrics
        self.tracker = tracker
        self._retry = backend_retry(
            (BackendError,),
            attempts=retry_attempts,
            min_wait=retry_min_wait,
            max_wait=retry_max_wait,
        )

    @property
    def cache_name(self) -> str:
        return self.domain_config.cache_name()

    # =========================================================================
    # Domain API
    # =========================================================================

    def get_character(self, character_id: Any) -> CacheResult:
        return self._get_entity(keys.ENTITY_CHARACTER, character_id, keys.character)

    def put_character(
        self, character_id: Any, data: Any, ttl: Optional[float] = None
    ) -> CacheResult:
        return self._put_entity(keys.ENTITY_CHARACTER, character_id, data, keys.character, ttl)

    def get_corporation(self, corporation_id: Any) -> CacheResult:
        return self._get_entity(keys.ENTITY_CORPORATION, corporation_id, keys.corporation)

    def put_corporation(
        self, corporation_id: Any, data: Any, ttl: Optional[float] = None
    ) -> CacheResult:
        return self._put_entity(
            keys.ENTITY_CORPORATION, corporation_id, data, keys.corporation, ttl
        )

    def get_alliance(self, alliance_id: Any) -> CacheResult:
        return self._get_entity(keys.ENTITY_ALLIANCE, alliance_id, keys.alliance)

    def put_alliance(self, alliance_id: Any, data: Any, ttl: Optional[float] = None) -> CacheResult:
        return self._put_entity(keys.ENTITY_ALLIANCE, alliance_id, data, keys.alliance, ttl)

    def get_system(self, system_id: Any) -> CacheResult:
        return self._get_entity(keys.ENTITY_SYSTEM, system_id, keys.system)

    def put_system(self, system_id: Any, data: Any, ttl: Optional[float] = None) -> CacheResult:
        return self._put_entity(keys.ENTITY_SYSTEM, system_id, data, keys.system, ttl)

    def get_type(self, type_id: Any) -> CacheResult:
        return self._get_entity(keys.ENTITY_TYPE, type_id, keys.type_key)

    def put_type(self, type_id: Any, data: Any, ttl: Optional[float] = None) -> CacheResult:
        return self._put_entity(keys.ENTITY_TYPE, type_id, data, keys.type_key, ttl)

    def get_killmail(self, kill_id: Any, killmail_hash: str) -> CacheResult:
        return self._get_entity(
            keys.ENTITY_KILLMAIL, kill_id, lambda k: keys.killmail(k, killmail_hash)
        )

    def put_killmail(
        self, kill_id: Any, killmail_hash: str, data: Any, ttl: Optional[float] = None
    ) -> CacheResult:
        return self._put_entity(
            keys.ENTITY_KILLMAIL,
            kill_id,
            data,
            lambda k: keys.killmail(k, killmail_hash),
            ttl,
        )

    def get_entity(self, entity_type: str, entity_id: Any, track: bool = True) -> CacheResult:
        """
        Read by entity type name (character, corporation, alliance, system, type).

        ``track=False`` skips the activity tracker (used by the warmer so
        its own reads do not look like user activity).
        """
        builder = keys.ENTITY_BUILDERS.get(entity_type)
        if builder is None:
            return CacheResult.failure(
                ErrorCode.UNKNOWN_JOB_TYPE, f"Unsupported entity type: {entity_type}"
            )
        return self._get_entity(entity_type, entity_id, builder, track)

    def put_entity(
        self, entity_type: str, entity_id: Any, data: Any, ttl: Optional[float] = None
    ) -> CacheResult:
        builder = keys.ENTITY_BUILDERS.get(entity_type)
        if builder is None:
            return CacheResult.failure(
                ErrorCode.UNKNOWN_JOB_TYPE, f"Unsupported entity type: {entity_type}"
            )
        return self._put_entity(entity_type, entity_id, data, builder, ttl)

    # =========================================================================
    # Generic API
    # =========================================================================

    def get(self, key: GenericKey) -> CacheResult:
        base_key = self._generic_key(key)
        if base_key is None:
            return CacheResult.failure(ErrorCode.INVALID_KEY, f"Invalid cache key: {key!r}")
        return self._read(CUSTOM_DOMAIN, base_key, base_key)

    def put(self, key: GenericKey, value: Any, ttl: Optional[float] = None) -> CacheResult:
        base_key = self._generic_key(key)
        if base_key is None:
            return CacheResult.failure(ErrorCode.INVALID_KEY, f"Invalid cache key: {key!r}")
        return self._write(DEFAULT_DOMAIN, base_key, value, ttl)

    def delete(self, key: GenericKey) -> CacheResult:
        """Delete a key; success value is whether an entry was removed."""
        base_key = self._generic_key(key)
        if base_key is None:
            return CacheResult.failure(ErrorCode.INVALID_KEY, f"Invalid cache key: {key!r}")

        versioned = self.versioning.versioned_key(base_key)
        try:
            deleted = self._call("delete", self.adapter.delete, self.cache_name, versioned)
        except BackendError as e:
            logger.warning("Cache delete failed for %s: %s", base_key, e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))
        return CacheResult.success(deleted)

    def exists(self, key: GenericKey) -> bool:
        """
        Existence check for the current version of ``key``.

        Uses the backend existence check (no eviction-policy side effects).
        Not-found and any error both report False.
        """
        base_key = self._generic_key(key)
        if base_key is None:
            return False

        versioned = self.versioning.versioned_key(base_key)
        try:
            return bool(self._call("exists", self.adapter.exists, self.cache_name, versioned))
        except BackendError as e:
            logger.warning("Cache exists check failed for %s: %s", base_key, e)
            return False

    def clear(self) -> CacheResult:
        """Remove every entry of the active cache instance."""
        try:
            count = self._call("clear", self.adapter.clear, self.cache_name)
        except BackendError as e:
            logger.error("Failed to clear cache: %s", e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))
        logger.info("Cache %s cleared (%d entries)", self.cache_name, count)
        return CacheResult.success(count)

    def stats(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "cache_name": self.cache_name,
            "adapter": self.adapter.backend_name,
            "version": self.versioning.current_version(),
        }
        try:
            info.update(self.adapter.stats(self.cache_name))
        except BackendError as e:
            logger.warning("Cache stats unavailable: %s", e)
        return info

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_entity(
        self,
        domain: str,
        entity_id: Any,
        builder: Callable[[Any], str],
        track: bool = True,
    ) -> CacheResult:
        try:
            base_key = builder(entity_id)
        except InvalidKeyError as e:
            return CacheResult.from_exception(e)

        result = self._read(domain, base_key, entity_id)
        if track and self.tracker is not None and result.error is not ErrorCode.BACKEND_ERROR:
            self._safely(self.tracker.record, domain, entity_id)
        return result

    def _put_entity(
        self,
        domain: str,
        entity_id: Any,
        data: Any,
        builder: Callable[[Any], str],
        ttl: Optional[float],
    ) -> CacheResult:
        try:
            base_key = builder(entity_id)
        except InvalidKeyError as e:
            return CacheResult.from_exception(e)
        return self._write(domain, base_key, data, ttl)

    def _read(self, domain: str, base_key: str, entity_id: Any) -> CacheResult:
        versioned = self.versioning.versioned_key(base_key)
        try:
            value = self._call("get", self.adapter.get, self.cache_name, versioned)
        except BackendError as e:
            logger.warning("Cache read failed for %s:%s: %s", domain, entity_id, e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))

        if value is MISS:
            logger.debug("Cache miss for %s:%s", domain, entity_id)
            self._metric("record_miss", domain, entity_id)
            return CacheResult.not_found(versioned)

        logger.debug("Cache hit for %s:%s", domain, entity_id)
        self._metric("record_hit", domain, entity_id)
        return CacheResult.success(value)

    def _write(self, domain: str, base_key: str, value: Any, ttl: Optional[float]) -> CacheResult:
        try:
            effective = self.domain_config.ttl_for(domain, ttl)
        except ValueError as e:
            return CacheResult.failure(ErrorCode.INVALID_TTL, str(e))

        versioned = self.versioning.versioned_key(base_key)
        try:
            if effective == float("inf"):
                self._call("put", self.adapter.put, self.cache_name, versioned, value)
            else:
                self._call("put", self.adapter.set, self.cache_name, versioned, value, effective)
        except BackendError as e:
            logger.warning("Cache write failed for %s: %s", base_key, e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))
        except (TypeError, ValueError) as e:
            # Value the backend cannot serialize
            logger.warning("Cache write rejected for %s: %s", base_key, e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))
        return CacheResult.success(value)

    def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run an adapter call under the retry policy, recording its duration."""
        started = time.perf_counter()
        try:
            return self._retry.copy()(func, *args)
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            self._metric("record_operation_time", operation, elapsed_ms)

    def _metric(self, method: str, *args: Any) -> None:
        if self.metrics is not None:
            self._safely(getattr(self.metrics, method), *args)

    @staticmethod
    def _safely(func: Callable[..., Any], *args: Any) -> None:
        try:
            func(*args)
        except Exception as e:
            logger.debug("Cache telemetry failed: %s", e)

    @staticmethod
    def _generic_key(key: GenericKey) -> Optional[str]:
        if isinstance(key, str):
            candidate = key
        elif isinstance(key, Sequence):
            candidate = keys.SEPARATOR.join(str(part) for part in key)
        else:
            return None
        return candidate if keys.is_valid_key(candidate) else None
