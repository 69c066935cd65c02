"""
Read-through helpers.

``fetch_with_cache`` returns a cached entity when present (and valid),
otherwise calls the supplied fetch function, writes the fresh value
through the facade and returns it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Optional

from ..core.logging import get_logger
from .errors import CacheResult, ErrorCode

if TYPE_CHECKING:
    from .facade import CacheFacade

logger = get_logger(__name__)

Validator = Callable[[Any], bool]


def fetch_with_cache(
    facade: CacheFacade,
    entity_type: str,
    entity_id: Any,
    fetch_fn: Callable[[Any], Any],
    validator: Optional[Validator] = None,
    ttl: Optional[float] = None,
) -> CacheResult:
    """
    Read-through lookup of one entity.

    Args:
        facade: Cache facade
        entity_type: character, corporation, alliance, system or type
        entity_id: Entity identifier
        fetch_fn: Called with ``entity_id`` on a miss; returns the value
            (``None`` means not found) or raises
        validator: Optional predicate; cached or fetched values failing it
            are not returned from cache / not stored
        ttl: Optional TTL override for the write-through

    Returns:
        success(value), not_found, or failure(fetch_failed / backend_error)
    """
    cached = facade.get_entity(entity_type, entity_id)
    if cached.ok:
        if _is_valid(cached.value, validator):
            return cached
        logger.debug("Cached %s:%s failed validation, refetching", entity_type, entity_id)
    elif cached.error is ErrorCode.UNKNOWN_JOB_TYPE:
        return cached

    try:
        value = fetch_fn(entity_id)
    except Exception as e:
        logger.warning("Fetch failed for %s:%s: %s", entity_type, entity_id, e)
        return CacheResult.failure(ErrorCode.FETCH_FAILED, str(e))

    if value is None:
        return CacheResult.not_found(f"{entity_type}:{entity_id}")
    if not _is_valid(value, validator):
        logger.warning("Fetched %s:%s failed validation", entity_type, entity_id)
        return CacheResult.failure(ErrorCode.FETCH_FAILED, "validation failed")

    written = facade.put_entity(entity_type, entity_id, value, ttl=ttl)
    if not written.ok:
        # The fresh value is still usable even if caching it failed
        logger.warning("Could not cache %s:%s: %s", entity_type, entity_id, written.detail)
    return CacheResult.success(value)


def fetch_with_custom_key(
    facade: CacheFacade,
    key: str,
    fetch_fn: Callable[[], Any],
    validator: Optional[Validator] = None,
    ttl: Optional[float] = None,
) -> CacheResult:
    """Read-through lookup for an arbitrary key."""
    cached = facade.get(key)
    if cached.ok and _is_valid(cached.value, validator):
        return cached
    if cached.error is ErrorCode.INVALID_KEY:
        return cached

    try:
        value = fetch_fn()
    except Exception as e:
        logger.warning("Fetch failed for %s: %s", key, e)
        return CacheResult.failure(ErrorCode.FETCH_FAILED, str(e))

    if value is None:
        return CacheResult.not_found(key)
    if not _is_valid(value, validator):
        return CacheResult.failure(ErrorCode.FETCH_FAILED, "validation failed")

    facade.put(key, value, ttl=ttl)
    return CacheResult.success(value)


def _is_valid(value: Any, validator: Optional[Validator]) -> bool:
    if value is None:
        return False
    return validator is None or bool(validator(value))
