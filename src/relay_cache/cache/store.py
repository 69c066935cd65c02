"""
Store Adapter

Uniform get/set/put/delete/clear surface over a pluggable backing cache.

Two backends implement the ``StoreBackend`` protocol:
- ``MemoryBackend``: cachetools ``TLRUCache`` per cache name, with per-item
  expiry, LRU eviction and an injectable timer (tests simulate the clock)
- ``RedisBackend``: redis-py client, JSON values, ``<cache_name>:`` key prefix

A backend is selected once at startup by ``resolve_backend`` and injected;
callers never re-dispatch on a backend name.
"""

from __future__ import annotations

import fnmatch
import json
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import redis
from cachetools import TLRUCache

from ..core.logging import get_logger
from .errors import BackendError, ConfigurationError, ErrorCode

logger = get_logger(__name__)

# "Infinite" TTL is stored as a century; backends need not support true infinity
INFINITE_TTL_SECONDS = 100 * 365 * 24 * 60 * 60

SUPPORTED_BACKENDS = ("memory", "redis")


class _Miss:
    """Sentinel for a cache miss (distinct from a cached ``None``)."""

    _instance: Optional[_Miss] = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


def effective_ttl(ttl: Optional[float]) -> float:
    """Clamp a TTL to what a backend can store (``None``/infinity -> century)."""
    if ttl is None or math.isinf(ttl):
        return float(INFINITE_TTL_SECONDS)
    if ttl < 0:
        raise ValueError(f"TTL must be non-negative, got {ttl}")
    return float(ttl)


# =============================================================================
# Backend Protocol
# =============================================================================


@runtime_checkable
class StoreBackend(Protocol):
    """
    Capability interface of a backing cache.

    Every operation is synchronous and bounded by the backend's own timeout.
    Transient failures raise ``BackendError``.
    """

    name: str

    def get(self, cache: str, key: str) -> Any:
        """Return the value, or ``MISS`` when absent or expired."""
        ...

    def set(self, cache: str, key: str, value: Any, ttl: Optional[float]) -> None:
        """Store ``value`` for ``ttl`` seconds (``None``/infinity: no expiry)."""
        ...

    def delete(self, cache: str, key: str) -> bool:
        ...

    def clear(self, cache: str) -> int:
        ...

    def exists(self, cache: str, key: str) -> bool:
        """Existence check without touching eviction-policy state."""
        ...

    def keys(self, cache: str, pattern: str = "*") -> list[str]:
        ...

    def ttl(self, cache: str, key: str) -> Optional[float]:
        """Remaining seconds, or ``None`` if the key is missing or never expires."""
        ...

    def stats(self, cache: str) -> dict[str, Any]:
        ...


# =============================================================================
# Memory Backend
# =============================================================================


@dataclass
class _Entry:
    value: Any
    expires_at: float
    persistent: bool = False


class _TrackingCache(TLRUCache):
    """TLRUCache that reports evictions and expirations."""

    def __init__(
        self,
        maxsize: int,
        timer: Callable[[], float],
        on_evict: Callable[[], None],
        on_expire: Callable[[int], None],
    ) -> None:
        super().__init__(maxsize=maxsize, ttu=_time_to_use, timer=timer)
        self._on_evict = on_evict
        self._on_expire = on_expire

    def popitem(self) -> tuple[Any, Any]:
        item = super().popitem()
        self._on_evict()
        return item

    def expire(self, time: Optional[float] = None) -> Any:
        expired = super().expire(time)
        if expired:
            self._on_expire(len(expired))
        return expired


def _time_to_use(key: Any, entry: _Entry, now: float) -> float:
    return entry.expires_at


class MemoryBackend:
    """
    In-process backend built on cachetools.

    One ``TLRUCache`` is kept per cache name. Reading an expired key is a
    miss and purges stale entries. Capacity overflow evicts the least
    recently used entry.

    Args:
        max_entries: Capacity per cache name
        timer: Monotonic clock (inject a fake clock in tests)
        on_evict: Called once per evicted entry
        on_expire: Called once per expired entry
    """

    name = "memory"

    def __init__(
        self,
        max_entries: int = 50_000,
        timer: Callable[[], float] = time.monotonic,
        on_evict: Optional[Callable[[], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> None:
        self.max_entries = max_entries
        self.timer = timer
        self.on_evict = on_evict
        self.on_expire = on_expire
        self.evictions = 0
        self.expirations = 0
        self._caches: dict[str, _TrackingCache] = {}
        self._lock = threading.RLock()

    def _cache(self, cache: str) -> _TrackingCache:
        store = self._caches.get(cache)
        if store is None:
            store = _TrackingCache(
                self.max_entries, self.timer, self._record_eviction, self._record_expirations
            )
            self._caches[cache] = store
        return store

    def _record_eviction(self) -> None:
        self.evictions += 1
        if self.on_evict is not None:
            self.on_evict()

    def _record_expirations(self, count: int) -> None:
        self.expirations += count
        if self.on_expire is not None:
            for _ in range(count):
                self.on_expire()

    def get(self, cache: str, key: str) -> Any:
        with self._lock:
            store = self._cache(cache)
            entry = store.get(key)
            if entry is None:
                store.expire()
                return MISS
            return entry.value

    def set(self, cache: str, key: str, value: Any, ttl: Optional[float]) -> None:
        persistent = ttl is None or math.isinf(ttl)
        with self._lock:
            expires_at = self.timer() + effective_ttl(ttl)
            self._cache(cache)[key] = _Entry(value, expires_at, persistent)

    def delete(self, cache: str, key: str) -> bool:
        with self._lock:
            return self._cache(cache).pop(key, None) is not None

    def clear(self, cache: str) -> int:
        # Dropping the cache avoids popitem(), which would count as evictions
        with self._lock:
            store = self._caches.pop(cache, None)
            return len(store) if store is not None else 0

    def exists(self, cache: str, key: str) -> bool:
        with self._lock:
            return key in self._cache(cache)

    def keys(self, cache: str, pattern: str = "*") -> list[str]:
        with self._lock:
            store = self._cache(cache)
            store.expire()
            return [k for k in list(store.keys()) if fnmatch.fnmatchcase(k, pattern)]

    def ttl(self, cache: str, key: str) -> Optional[float]:
        with self._lock:
            store = self._cache(cache)
            if key not in store:
                return None
            entry = store[key]
            if entry.persistent:
                return None
            return max(0.0, entry.expires_at - self.timer())

    def stats(self, cache: str) -> dict[str, Any]:
        with self._lock:
            store = self._cache(cache)
            entries = len(store)
            return {
                "backend": self.name,
                "entries": entries,
                "max_entries": self.max_entries,
                "usage_ratio": entries / self.max_entries if self.max_entries else 0.0,
                "evictions": self.evictions,
                "expirations": self.expirations,
            }


# =============================================================================
# Redis Backend
# =============================================================================


class RedisBackend:
    """
    Production backend over a Redis server.

    Values are JSON encoded. Keys are namespaced as ``<cache>:<key>`` so
    several cache instances can share one database. Every call is bounded
    by the client socket timeout; redis errors surface as ``BackendError``.
    """

    name = "redis"

    SCAN_BATCH = 500

    def __init__(self, client: Any = None, url: str = "", timeout: float = 2.0) -> None:
        if client is None:
            client = redis.Redis.from_url(
                url,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
                decode_responses=True,
            )
        self.client = client

    @staticmethod
    def _full_key(cache: str, key: str) -> str:
        return f"{cache}:{key}"

    def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except redis.RedisError as e:
            raise BackendError(f"redis {operation} failed: {e}", original_error=e) from e

    def get(self, cache: str, key: str) -> Any:
        raw = self._call("get", self.client.get, self._full_key(cache, key))
        if raw is None:
            return MISS
        try:
            return json.loads(raw)
        except ValueError as e:
            raise BackendError(f"redis get returned undecodable value for {key}: {e}") from e

    def set(self, cache: str, key: str, value: Any, ttl: Optional[float]) -> None:
        payload = json.dumps(value)
        full_key = self._full_key(cache, key)
        if ttl is None or math.isinf(ttl):
            self._call("set", self.client.set, full_key, payload, ex=INFINITE_TTL_SECONDS)
        else:
            # Redis expiry has millisecond resolution and must be positive
            self._call("set", self.client.set, full_key, payload, px=max(1, int(ttl * 1000)))

    def delete(self, cache: str, key: str) -> bool:
        return bool(self._call("delete", self.client.delete, self._full_key(cache, key)))

    def clear(self, cache: str) -> int:
        deleted = 0
        batch: list[str] = []
        for full_key in self._scan(cache, "*"):
            batch.append(full_key)
            if len(batch) >= self.SCAN_BATCH:
                deleted += self._call("delete", self.client.delete, *batch)
                batch = []
        if batch:
            deleted += self._call("delete", self.client.delete, *batch)
        return deleted

    def exists(self, cache: str, key: str) -> bool:
        return bool(self._call("exists", self.client.exists, self._full_key(cache, key)))

    def keys(self, cache: str, pattern: str = "*") -> list[str]:
        prefix_len = len(cache) + 1
        return [full_key[prefix_len:] for full_key in self._scan(cache, pattern)]

    def _scan(self, cache: str, pattern: str) -> list[str]:
        match = self._full_key(cache, pattern)
        # scan_iter is lazy; errors surface while iterating
        return self._call(
            "scan", lambda: list(self.client.scan_iter(match=match, count=self.SCAN_BATCH))
        )

    def ttl(self, cache: str, key: str) -> Optional[float]:
        remaining = self._call("pttl", self.client.pttl, self._full_key(cache, key))
        # -2: missing key, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    def stats(self, cache: str) -> dict[str, Any]:
        info = self._call("info", self.client.info, "memory")
        used = int(info.get("used_memory", 0))
        limit = int(info.get("maxmemory", 0))
        return {
            "backend": self.name,
            "used_memory": used,
            "max_memory": limit,
            "usage_ratio": used / limit if limit else 0.0,
            "evicted_keys": int(info.get("evicted_keys", 0)),
        }


# =============================================================================
# Adapter
# =============================================================================


class StoreAdapter:
    """
    Adapter over the selected backend.

    ``put`` is ``set`` with no expiry. Backend failures propagate as
    ``BackendError`` so the facade can retry them.
    """

    def __init__(self, backend: StoreBackend) -> None:
        self.backend = backend

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def get(self, cache: str, key: str) -> Any:
        return self.backend.get(cache, key)

    def set(self, cache: str, key: str, value: Any, ttl: Optional[float]) -> None:
        self.backend.set(cache, key, value, ttl)

    def put(self, cache: str, key: str, value: Any) -> None:
        self.backend.set(cache, key, value, None)

    def delete(self, cache: str, key: str) -> bool:
        return self.backend.delete(cache, key)

    def clear(self, cache: str) -> int:
        return self.backend.clear(cache)

    def exists(self, cache: str, key: str) -> bool:
        return self.backend.exists(cache, key)

    def keys(self, cache: str, pattern: str = "*") -> list[str]:
        return self.backend.keys(cache, pattern)

    def ttl(self, cache: str, key: str) -> Optional[float]:
        return self.backend.ttl(cache, key)

    def stats(self, cache: str) -> dict[str, Any]:
        return self.backend.stats(cache)


def resolve_backend(
    name: str,
    *,
    redis_url: str = "",
    redis_timeout: float = 2.0,
    max_entries: int = 50_000,
    timer: Callable[[], float] = time.monotonic,
) -> StoreBackend | ConfigurationError:
    """
    Select a backend by configured name.

    Returns:
        The backend instance, or a ``ConfigurationError`` (``unknown_adapter``)
        for an unknown selection. Never raises for a bad name.
    """
    selection = (name or "").strip().lower()
    if selection == "memory":
        return MemoryBackend(max_entries=max_entries, timer=timer)
    if selection == "redis":
        return RedisBackend(url=redis_url, timeout=redis_timeout)

    logger.error("Unknown cache backend %r (supported: %s)", name, ", ".join(SUPPORTED_BACKENDS))
    return ConfigurationError(
        f"Unknown cache backend {name!r}; expected one of {', '.join(SUPPORTED_BACKENDS)}",
        code=ErrorCode.UNKNOWN_ADAPTER,
    )
