"""
Cache Versioning

Tracks the active cache-schema version and makes deployments cache-safe.

Every facade key is suffixed with the active version (``base:vX.Y.Z``).
Changing the version makes entries written under the previous one
unreachable without deleting them; they are removed later by
``invalidate_old_versions`` / ``invalidate_version``.

Version records are persisted through the store adapter under
``cache:versioning:history`` (most recent first). Exactly one record is
``active`` at a time.

Deployment hooks ``fn(old_version, new_version)`` run detached on every
version change. A failing hook is logged and never blocks or fails the
version change.
"""

from __future__ import annotations

import fnmatch
import inspect
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Optional

from ..core.logging import get_logger
from ..core.tasks import DetachedTasks
from .errors import BackendError, CacheResult, ErrorCode, InvalidKeyError, InvalidVersionError
from .store import MISS

if TYPE_CHECKING:
    from .domain_config import DomainConfig
    from .store import StoreAdapter

logger = get_logger(__name__)

VERSION_HISTORY_KEY = "cache:versioning:history"
VERSION_MARKER = ":v"

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$", re.ASCII)

Comparison = Literal["lt", "eq", "gt"]
DeploymentHook = Callable[[Optional[str], str], Any]


# =============================================================================
# Version Parsing
# =============================================================================


def parse_version(version: Any) -> tuple[int, int, int]:
    """
    Parse ``MAJOR.MINOR.PATCH`` into an integer triple.

    Raises:
        InvalidVersionError: If the string is not three dot-separated
            non-negative integers
    """
    if not isinstance(version, str):
        raise InvalidVersionError(version)
    match = _VERSION_RE.match(version)
    if match is None:
        raise InvalidVersionError(version)
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def is_valid_version(version: Any) -> bool:
    try:
        parse_version(version)
    except InvalidVersionError:
        return False
    return True


def compare_versions(a: Any, b: Any) -> Comparison:
    """
    Compare two versions by (major, minor, patch).

    An unparseable version sorts below any parseable one; two unparseable
    versions compare equal.

    >>> compare_versions("1.2.0", "1.10.0")
    'lt'
    """
    a_valid = is_valid_version(a)
    b_valid = is_valid_version(b)
    if not a_valid or not b_valid:
        if a_valid == b_valid:
            return "eq"
        return "gt" if a_valid else "lt"

    left = parse_version(a)
    right = parse_version(b)
    if left < right:
        return "lt"
    if left > right:
        return "gt"
    return "eq"


def compatible_versions(a: Any, b: Any) -> bool:
    """True iff both versions parse and share a major component."""
    try:
        return parse_version(a)[0] == parse_version(b)[0]
    except InvalidVersionError:
        return False


# =============================================================================
# Version Records
# =============================================================================


class VersionStatus(str, Enum):
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    INVALIDATED = "invalidated"


@dataclass
class VersionRecord:
    """Lifecycle record of one cache-schema version."""

    version: str
    created_at: float
    deployed_at: Optional[float] = None
    invalidated_at: Optional[float] = None
    status: VersionStatus = VersionStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "created_at": self.created_at,
            "deployed_at": self.deployed_at,
            "invalidated_at": self.invalidated_at,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionRecord:
        return cls(
            version=data["version"],
            created_at=float(data.get("created_at") or 0.0),
            deployed_at=data.get("deployed_at"),
            invalidated_at=data.get("invalidated_at"),
            status=VersionStatus(data.get("status", VersionStatus.DEPRECATED.value)),
        )


@dataclass
class VersioningStats:
    version_changes: int = 0
    invalidations: int = 0
    migrations: int = 0
    hook_failures: int = 0


# =============================================================================
# Versioning
# =============================================================================


@dataclass
class Versioning:
    """
    Owner of the active version, the version history and deployment hooks.

    Usage:
        versioning = Versioning(adapter, domain_config, configured_version="1.0.0")
        versioning.start()
        key = versioning.versioned_key("esi:character:123")
        versioning.set_version("1.1.0")
    """

    adapter: StoreAdapter
    domain_config: DomainConfig
    configured_version: str = "1.0.0"
    clock: Callable[[], float] = time.time

    _current: Optional[str] = field(default=None, repr=False)
    _history: list[VersionRecord] = field(default_factory=list, repr=False)
    _hooks: dict[str, DeploymentHook] = field(default_factory=dict, repr=False)
    _stats: VersioningStats = field(default_factory=VersioningStats, repr=False)
    _detached: DetachedTasks = field(
        default_factory=lambda: DetachedTasks(name="deploy-hooks"), repr=False
    )
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _started: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if not is_valid_version(self.configured_version):
            raise InvalidVersionError(self.configured_version)

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def cache_name(self) -> str:
        return self.domain_config.cache_name()

    def start(self) -> None:
        """
        Load persisted history and restore its active version.

        The configured version is activated only when the history holds no
        active record, so a deployment made by another process survives a
        restart. Fires the hooks with ``(None, current)``.
        """
        with self._lock:
            self._history = self._load_history()
            active = next((r for r in self._history if r.status is VersionStatus.ACTIVE), None)
            if active is None:
                self._activate(self.configured_version)
                self._save_history()
                self._current = self.configured_version
            else:
                self._current = active.version
            self._started = True
            current = self._current

        logger.info("Cache versioning initialized with version %s", current)
        self._fire_hooks(None, current)

    def current_version(self) -> str:
        """Active version; the configured version before ``start()``."""
        with self._lock:
            return self._current or self.configured_version

    def set_version(self, version: str) -> CacheResult:
        """
        Make ``version`` the active version.

        Returns:
            success(version), or failure(invalid_version) for a bad format
        """
        if not is_valid_version(version):
            logger.warning("Rejected invalid cache version %r", version)
            return CacheResult.failure(
                ErrorCode.INVALID_VERSION,
                f"Invalid version {version!r}: expected MAJOR.MINOR.PATCH",
            )

        with self._lock:
            old_version = self.current_version()
            if old_version == version and self._started:
                return CacheResult.success(version)

            if not any(r.version == old_version for r in self._history):
                self._history.insert(0, VersionRecord(version=old_version, created_at=self.clock()))
            self._current = version
            self._activate(version)
            self._stats.version_changes += 1
            self._save_history()

        logger.info("Cache version updated from %s to %s", old_version, version)
        self._fire_hooks(old_version, version)
        return CacheResult.success(version)

    # -------------------------------------------------------------------------
    # Versioned Keys
    # -------------------------------------------------------------------------

    def versioned_key(self, base_key: str, version: Optional[str] = None) -> str:
        return f"{base_key}{VERSION_MARKER}{version or self.current_version()}"

    @staticmethod
    def extract_version(versioned_key: str) -> tuple[str, str]:
        """
        Split a versioned key into ``(base_key, version)``.

        Raises:
            InvalidKeyError: If the key has no recognizable version suffix
        """
        if not isinstance(versioned_key, str):
            raise InvalidKeyError(versioned_key)
        base, marker, version = versioned_key.rpartition(VERSION_MARKER)
        if not marker or not base or not is_valid_version(version):
            raise InvalidKeyError(versioned_key, f"No version suffix in key {versioned_key!r}")
        return base, version

    def _versioned_keys(self) -> list[tuple[str, str, str]]:
        """All (key, base, version) triples currently in the cache."""
        entries = []
        for key in self.adapter.keys(self.cache_name, f"*{VERSION_MARKER}*"):
            try:
                base, version = self.extract_version(key)
            except InvalidKeyError:
                continue
            entries.append((key, base, version))
        return entries

    # -------------------------------------------------------------------------
    # Invalidation and Migration
    # -------------------------------------------------------------------------

    def invalidate_old_versions(self, keep: Optional[str] = None) -> CacheResult:
        """
        Delete every versioned entry whose version is not ``keep``.

        Args:
            keep: Version to retain (default: current version)

        Returns:
            success(count of deleted entries) or failure(backend_error)
        """
        keep_version = keep or self.current_version()
        if not is_valid_version(keep_version):
            return CacheResult.failure(
                ErrorCode.INVALID_VERSION, f"Invalid version {keep_version!r}"
            )

        try:
            count = 0
            removed_versions: set[str] = set()
            for key, _base, version in self._versioned_keys():
                if version != keep_version and self.adapter.delete(self.cache_name, key):
                    count += 1
                    removed_versions.add(version)
        except BackendError as e:
            logger.error("Failed to invalidate old versions: %s", e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))

        with self._lock:
            now = self.clock()
            for record in self._history:
                if record.version != keep_version and record.status is not VersionStatus.ACTIVE:
                    if record.status is not VersionStatus.INVALIDATED:
                        record.status = VersionStatus.INVALIDATED
                        record.invalidated_at = now
            self._stats.invalidations += count
            self._save_history()

        logger.info(
            "Invalidated %d cache entries outside version %s (%s)",
            count,
            keep_version,
            ", ".join(sorted(removed_versions)) or "none",
        )
        return CacheResult.success(count)

    def invalidate_version(self, version: str) -> CacheResult:
        """
        Delete the entries of exactly ``version`` and mark its record invalidated.

        The active version cannot be invalidated.
        """
        if not is_valid_version(version):
            return CacheResult.failure(ErrorCode.INVALID_VERSION, f"Invalid version {version!r}")
        if version == self.current_version():
            return CacheResult.failure(
                ErrorCode.INVALID_VERSION, f"Cannot invalidate active version {version}"
            )

        try:
            count = 0
            for key in self.adapter.keys(self.cache_name, f"*{VERSION_MARKER}{version}"):
                if self.adapter.delete(self.cache_name, key):
                    count += 1
        except BackendError as e:
            logger.error("Failed to invalidate version %s: %s", version, e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))

        with self._lock:
            for record in self._history:
                if record.version == version:
                    record.status = VersionStatus.INVALIDATED
                    record.invalidated_at = self.clock()
            self._stats.invalidations += count
            self._save_history()

        logger.info("Invalidated %d cache entries of version %s", count, version)
        return CacheResult.success(count)

    def migrate_version(
        self,
        from_version: str,
        to_version: str,
        key_patterns: Optional[list[str]] = None,
    ) -> CacheResult:
        """
        Copy entries of ``from_version`` to ``to_version``.

        Entries keep their remaining TTL. Existing target keys are never
        overwritten, and the source entries are left in place so a rollback
        still finds them.

        Args:
            from_version: Source version
            to_version: Target version
            key_patterns: Optional glob patterns matched against base keys

        Returns:
            success(count of migrated entries)
        """
        for version in (from_version, to_version):
            if not is_valid_version(version):
                return CacheResult.failure(
                    ErrorCode.INVALID_VERSION, f"Invalid version {version!r}"
                )

        patterns = list(key_patterns or [])
        cache = self.cache_name
        try:
            count = 0
            for key in self.adapter.keys(cache, f"*{VERSION_MARKER}{from_version}"):
                base, _ = self.extract_version(key)
                if patterns and not any(fnmatch.fnmatchcase(base, p) for p in patterns):
                    continue
                target = self.versioned_key(base, to_version)
                if self.adapter.exists(cache, target):
                    continue
                value = self.adapter.get(cache, key)
                if value is MISS:
                    continue
                remaining = self.adapter.ttl(cache, key)
                if remaining is None:
                    self.adapter.put(cache, target, value)
                else:
                    self.adapter.set(cache, target, value, remaining)
                count += 1
        except BackendError as e:
            logger.error("Failed to migrate %s -> %s: %s", from_version, to_version, e)
            return CacheResult.failure(ErrorCode.BACKEND_ERROR, str(e))

        with self._lock:
            self._stats.migrations += count

        logger.info("Migrated %d cache entries from %s to %s", count, from_version, to_version)
        return CacheResult.success(count)

    # -------------------------------------------------------------------------
    # History and Stats
    # -------------------------------------------------------------------------

    def get_version_history(self) -> list[VersionRecord]:
        """Version records, most recent first (copies)."""
        with self._lock:
            return [replace(record) for record in self._history]

    def prune_history(self, keep_n: int) -> list[VersionRecord]:
        """Drop all but the ``keep_n`` most recent records; returns the dropped ones."""
        keep_n = max(1, keep_n)
        with self._lock:
            dropped = self._history[keep_n:]
            if dropped:
                self._history = self._history[:keep_n]
                self._save_history()
            return dropped

    def get_version_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version_changes": self._stats.version_changes,
                "invalidations": self._stats.invalidations,
                "migrations": self._stats.migrations,
                "hook_failures": self._stats.hook_failures,
                "current_version": self.current_version(),
                "version_count": len(self._history),
                "hook_count": len(self._hooks),
            }

    # -------------------------------------------------------------------------
    # Deployment Hooks
    # -------------------------------------------------------------------------

    def register_hook(self, name: str, callback: DeploymentHook) -> None:
        with self._lock:
            self._hooks[name] = callback
        logger.debug("Registered deployment hook: %s", name)

    def unregister_hook(self, name: str) -> bool:
        with self._lock:
            removed = self._hooks.pop(name, None) is not None
        if removed:
            logger.debug("Unregistered deployment hook: %s", name)
        return removed

    def list_hooks(self) -> list[str]:
        with self._lock:
            return list(self._hooks)

    async def wait_for_hooks(self, timeout: Optional[float] = None) -> None:
        """Await in-flight detached hook runs."""
        await self._detached.wait(timeout)

    def join_hooks(self, timeout: Optional[float] = None) -> None:
        """Block until hook runs started outside an event loop finish."""
        self._detached.join(timeout)

    def _fire_hooks(self, old_version: Optional[str], new_version: str) -> None:
        with self._lock:
            hooks = list(self._hooks.items())
        if hooks:
            self._detached.spawn(
                f"{old_version}->{new_version}", self._run_hooks, hooks, old_version, new_version
            )

    async def _run_hooks(
        self,
        hooks: list[tuple[str, DeploymentHook]],
        old_version: Optional[str],
        new_version: str,
    ) -> None:
        for name, callback in hooks:
            try:
                result = callback(old_version, new_version)
                if inspect.isawaitable(result):
                    await result
                logger.debug("Executed deployment hook: %s", name)
            except Exception as e:
                with self._lock:
                    self._stats.hook_failures += 1
                logger.error("Deployment hook %s failed: %s", name, e, exc_info=True)

    # -------------------------------------------------------------------------
    # Internals (call with the lock held)
    # -------------------------------------------------------------------------

    def _activate(self, version: str) -> None:
        """Move or create ``version``'s record at the front as the only active one."""
        now = self.clock()
        existing = next((r for r in self._history if r.version == version), None)
        if existing is None:
            existing = VersionRecord(version=version, created_at=now)
        else:
            self._history.remove(existing)

        existing.status = VersionStatus.ACTIVE
        existing.deployed_at = now
        existing.invalidated_at = None

        for record in self._history:
            if record.status is VersionStatus.ACTIVE:
                record.status = VersionStatus.DEPRECATED

        self._history.insert(0, existing)

    def _load_history(self) -> list[VersionRecord]:
        try:
            raw = self.adapter.get(self.cache_name, VERSION_HISTORY_KEY)
        except BackendError as e:
            logger.warning("Could not load version history: %s", e)
            return []

        if raw is MISS or not isinstance(raw, list):
            return []

        history = []
        for item in raw:
            try:
                history.append(VersionRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed version record %r: %s", item, e)
        return history

    def _save_history(self) -> None:
        payload = [record.to_dict() for record in self._history]
        try:
            self.adapter.put(self.cache_name, VERSION_HISTORY_KEY, payload)
        except BackendError as e:
            logger.error("Failed to save version history: %s", e)
