"""
Cache Version Manager

Deployment orchestration on top of ``Versioning``.

A deployment is an ordered pipeline of named steps picked by a strategy:

    safe:       validate, backup, update_version, warm_cache, verify
    aggressive: validate, update_version, invalidate_old, warm_cache
    gradual:    validate, backup, update_version, gradual_migration,
                warm_cache, verify

The first failing step halts the pipeline. Steps that already completed
are reported but not undone; use ``rollback()`` to return to the previous
version.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from ..core.logging import get_logger
from .errors import BackendError, CacheResult, ErrorCode
from .versioning import (
    VERSION_MARKER,
    VersionStatus,
    compare_versions,
    compatible_versions,
    is_valid_version,
)

if TYPE_CHECKING:
    from .metrics import CacheMetrics
    from .store import StoreAdapter
    from .versioning import Versioning
    from .warmer import CacheWarmer

logger = get_logger(__name__)

BACKUP_KEY_PREFIX = "cache:versioning:backup"
DEFAULT_KEEP_VERSIONS = 3
ESTIMATED_MIGRATION_MS = 30_000


class DeploymentStrategy(str, Enum):
    SAFE = "safe"
    AGGRESSIVE = "aggressive"
    GRADUAL = "gradual"


DEPLOYMENT_STEPS: dict[DeploymentStrategy, tuple[str, ...]] = {
    DeploymentStrategy.SAFE: ("validate", "backup", "update_version", "warm_cache", "verify"),
    DeploymentStrategy.AGGRESSIVE: ("validate", "update_version", "invalidate_old", "warm_cache"),
    DeploymentStrategy.GRADUAL: (
        "validate",
        "backup",
        "update_version",
        "gradual_migration",
        "warm_cache",
        "verify",
    ),
}

MIGRATION_STEPS: dict[DeploymentStrategy, tuple[str, ...]] = {
    DeploymentStrategy.SAFE: ("backup", "prepare", "migrate_keys", "verify", "cleanup"),
    DeploymentStrategy.AGGRESSIVE: ("prepare", "migrate_keys", "cleanup"),
    DeploymentStrategy.GRADUAL: ("prepare", "gradual_migrate", "verify", "cleanup"),
}


# =============================================================================
# Results
# =============================================================================


@dataclass
class StepResult:
    step: str
    ok: bool
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "ok": self.ok, "detail": self.detail}


@dataclass
class DeploymentResult:
    """
    Outcome of a deployment or migration pipeline.

    ``steps`` lists every step that ran, in order. On failure the last entry
    is the failing step and ``error``/``detail`` carry its reason.
    """

    ok: bool
    from_version: str
    to_version: str
    strategy: str
    steps: list[StepResult] = field(default_factory=list)
    error: Optional[ErrorCode] = None
    detail: str = ""
    started_at: float = 0.0
    finished_at: Optional[float] = None

    @property
    def completed_steps(self) -> list[str]:
        return [s.step for s in self.steps if s.ok]

    @property
    def failed_step(self) -> Optional[str]:
        if self.ok or not self.steps or self.steps[-1].ok:
            return None
        return self.steps[-1].step

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "strategy": self.strategy,
            "completed_steps": self.completed_steps,
            "failed_step": self.failed_step,
            "error": self.error.value if self.error else None,
            "detail": self.detail,
            "steps": [s.to_dict() for s in self.steps],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class MigrationResult(DeploymentResult):
    estimated_duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["estimated_duration_ms"] = self.estimated_duration_ms
        return data


# =============================================================================
# Version Manager
# =============================================================================


@dataclass
class VersionManager:
    """
    High-level deployment API.

    Usage:
        manager = VersionManager(versioning, warmer, metrics, app_version="1.2.0")
        manager.initialize()
        result = await manager.handle_deployment("1.3.0", strategy="safe")
        manager.rollback()
    """

    versioning: Versioning
    warmer: Optional[CacheWarmer] = None
    metrics: Optional[CacheMetrics] = None
    app_version: str = "1.0.0"
    clock: Callable[[], float] = time.time

    _initialized: bool = field(default=False, repr=False)
    _last_deployment: Optional[DeploymentResult] = field(default=None, repr=False)
    _deploy_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def adapter(self) -> StoreAdapter:
        return self.versioning.adapter

    @property
    def cache_name(self) -> str:
        return self.versioning.cache_name

    # =========================================================================
    # Initialization
    # =========================================================================

    def initialize(self) -> None:
        """Register the default deployment hooks and align with the app version."""
        self.versioning.register_hook("cache_warming", self._warming_hook)
        self.versioning.register_hook("cache_invalidation", self._invalidation_hook)
        self.versioning.register_hook("performance_monitoring", self._metrics_hook)

        cache_version = self.versioning.current_version()
        if self._should_align(cache_version):
            logger.info("Updating cache version from %s to %s", cache_version, self.app_version)
            result = self.versioning.set_version(self.app_version)
            if not result.ok:
                logger.warning("Could not align cache version: %s", result.detail)
        elif self.app_version != cache_version:
            logger.info(
                "Keeping deployed cache version %s (application version %s)",
                cache_version,
                self.app_version,
            )
        self._initialized = True

    def _should_align(self, cache_version: str) -> bool:
        """
        Only a newer application version that was never deployed moves the cache.

        Older or previously seen versions are left alone so that deployments
        and rollbacks done through the CLI are not undone on restart.
        """
        if compare_versions(self.app_version, cache_version) != "gt":
            return False
        seen = {record.version for record in self.versioning.get_version_history()}
        return self.app_version not in seen

    def _warming_hook(self, old_version: Optional[str], new_version: str) -> None:
        logger.info("Cache warming hook: %s -> %s", old_version, new_version)
        if self.warmer is None:
            return
        result = self.warmer.force_startup_warming()
        if not result.ok:
            logger.error("Cache warming failed during deployment: %s", result.detail)

    def _invalidation_hook(self, old_version: Optional[str], new_version: str) -> None:
        logger.info("Cache invalidation hook: %s -> %s", old_version, new_version)
        # Only a major version change makes old entries unusable
        if old_version and not compatible_versions(old_version, new_version):
            self.versioning.invalidate_old_versions(new_version)

    def _metrics_hook(self, old_version: Optional[str], new_version: str) -> None:
        logger.info("Performance monitoring hook: %s -> %s", old_version, new_version)
        if self.metrics is not None:
            self.metrics.reset_metrics()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_deployment(
        self, current_version: str, new_version: str, strategy: Any = "safe"
    ) -> CacheResult:
        """
        Run the deployment checks, stopping at the first failure.

        Checks (in order): version format, version progression,
        compatibility, strategy.
        """
        checks: list[Callable[[], CacheResult]] = [
            lambda: self._check_format(current_version, new_version),
            lambda: self._check_progression(current_version, new_version),
            lambda: self._check_compatibility(current_version, new_version),
            lambda: self._check_strategy(strategy),
        ]
        for check in checks:
            result = check()
            if not result.ok:
                return result
        return CacheResult.success()

    @staticmethod
    def _check_format(current_version: str, new_version: str) -> CacheResult:
        if is_valid_version(current_version) and is_valid_version(new_version):
            return CacheResult.success()
        return CacheResult.failure(
            ErrorCode.INVALID_VERSION_FORMAT,
            f"Invalid version format: {current_version!r} -> {new_version!r}",
        )

    @staticmethod
    def _check_progression(current_version: str, new_version: str) -> CacheResult:
        comparison = compare_versions(current_version, new_version)
        if comparison == "lt":
            return CacheResult.success()
        if comparison == "eq":
            return CacheResult.failure(
                ErrorCode.SAME_VERSION, f"Version {new_version} is already active"
            )
        return CacheResult.failure(
            ErrorCode.VERSION_DOWNGRADE,
            f"Cannot deploy {new_version} over newer version {current_version}",
        )

    @staticmethod
    def _check_compatibility(current_version: str, new_version: str) -> CacheResult:
        # Any upgrade is allowed; a major bump is only worth a warning
        if not compatible_versions(current_version, new_version):
            logger.warning(
                "Major version change %s -> %s, old entries will be invalidated",
                current_version,
                new_version,
            )
        return CacheResult.success()

    @staticmethod
    def _check_strategy(strategy: Any) -> CacheResult:
        try:
            DeploymentStrategy(strategy)
        except ValueError:
            return CacheResult.failure(
                ErrorCode.INVALID_STRATEGY, f"Unknown deployment strategy: {strategy!r}"
            )
        return CacheResult.success()

    # =========================================================================
    # Deployment
    # =========================================================================

    async def handle_deployment(self, new_version: str, strategy: Any = "safe") -> DeploymentResult:
        """
        Deploy ``new_version`` with the given strategy.

        Returns:
            DeploymentResult listing the completed steps, and on failure the
            failing step with its reason
        """
        async with self._deploy_lock:
            current_version = self.versioning.current_version()
            strategy_value = strategy.value if isinstance(strategy, Enum) else str(strategy)
            logger.info(
                "Handling deployment from %s to %s with strategy %s",
                current_version,
                new_version,
                strategy_value,
            )

            result = DeploymentResult(
                ok=False,
                from_version=current_version,
                to_version=new_version,
                strategy=strategy_value,
                started_at=self.clock(),
            )

            validation = self.validate_deployment(current_version, new_version, strategy)
            if not validation.ok:
                logger.error("Deployment validation failed: %s", validation.detail)
                result.steps.append(StepResult("validate", False, validation.detail))
                result.error = validation.error
                result.detail = validation.detail
                result.finished_at = self.clock()
                self._last_deployment = result
                return result

            steps = DEPLOYMENT_STEPS[DeploymentStrategy(strategy)]
            await self._run_pipeline(
                result,
                steps,
                lambda step: self._deployment_step(step, current_version, new_version),
            )

            if result.ok:
                logger.info("Deployment to %s completed (%s)", new_version, strategy_value)
            self._last_deployment = result
            return result

    async def _run_pipeline(
        self,
        result: DeploymentResult,
        steps: tuple[str, ...],
        run_step: Callable[[str], Awaitable[CacheResult]],
    ) -> None:
        for step in steps:
            try:
                outcome = await run_step(step)
            except BackendError as e:
                outcome = CacheResult.from_exception(e)

            if not outcome.ok:
                logger.error("Step %s failed: %s", step, outcome.detail)
                result.steps.append(StepResult(step, False, outcome.detail))
                result.error = outcome.error
                result.detail = outcome.detail
                result.finished_at = self.clock()
                return

            result.steps.append(StepResult(step, True, _describe(outcome.value)))

        result.ok = True
        result.finished_at = self.clock()

    async def _deployment_step(
        self, step: str, current_version: str, new_version: str
    ) -> CacheResult:
        if step == "validate":
            return self.validate_deployment(current_version, new_version, "safe")
        if step == "backup":
            return self._backup(current_version)
        if step == "update_version":
            return self.versioning.set_version(new_version)
        if step == "warm_cache":
            return self._warm_cache()
        if step == "invalidate_old":
            return self.versioning.invalidate_old_versions(new_version)
        if step == "gradual_migration":
            return await self._gradual_migrate(current_version, new_version)
        if step == "verify":
            return self._verify(new_version)
        logger.warning("Unknown deployment step: %s", step)
        return CacheResult.success()

    def _backup(self, version: str) -> CacheResult:
        """Persist a manifest of the base keys present under ``version``."""
        cache = self.cache_name
        keys = self.adapter.keys(cache, f"*{VERSION_MARKER}{version}")
        base_keys = sorted(k[: -len(VERSION_MARKER + version)] for k in keys)
        manifest = {"version": version, "created_at": self.clock(), "keys": base_keys}
        self.adapter.put(cache, f"{BACKUP_KEY_PREFIX}:{version}", manifest)
        logger.info("Backed up manifest of %d keys for version %s", len(base_keys), version)
        return CacheResult.success(len(base_keys))

    def get_backup(self, version: str) -> Optional[dict[str, Any]]:
        """Backup manifest written for ``version`` during a deployment, if any."""
        value = self.adapter.get(self.cache_name, f"{BACKUP_KEY_PREFIX}:{version}")
        return value if isinstance(value, dict) else None

    def _warm_cache(self) -> CacheResult:
        if self.warmer is None:
            return CacheResult.success([])
        return self.warmer.force_startup_warming()

    def _verify(self, version: str) -> CacheResult:
        history = self.versioning.get_version_history()
        current = self.versioning.current_version()
        head = history[0] if history else None
        if (
            current != version
            or head is None
            or head.version != version
            or head.status is not VersionStatus.ACTIVE
        ):
            return CacheResult.failure(
                ErrorCode.VERIFICATION_FAILED,
                f"Version {version} is not the active version (current: {current})",
            )
        logger.info("Verified deployment to version %s", version)
        return CacheResult.success(version)

    # =========================================================================
    # Rollback and Cleanup
    # =========================================================================

    def rollback(self) -> CacheResult:
        """
        Re-activate the previous version and drop the abandoned version's entries.

        Returns:
            success(previous_version) or failure(no_previous_version)
        """
        history = self.versioning.get_version_history()
        if len(history) < 2:
            logger.error("Cannot rollback: no previous version")
            return CacheResult.failure(
                ErrorCode.NO_PREVIOUS_VERSION, "Version history has no previous version"
            )

        abandoned = self.versioning.current_version()
        previous = history[1].version
        logger.info("Rolling back from %s to version %s", abandoned, previous)

        result = self.versioning.set_version(previous)
        if not result.ok:
            logger.error("Failed to rollback: %s", result.detail)
            return result

        if abandoned != previous:
            invalidated = self.versioning.invalidate_version(abandoned)
            if not invalidated.ok:
                logger.warning(
                    "Rolled back but could not invalidate %s: %s", abandoned, invalidated.detail
                )
        return CacheResult.success(previous)

    def cleanup_old_versions(self, keep_n: int = DEFAULT_KEEP_VERSIONS) -> CacheResult:
        """
        Keep the ``keep_n`` most recent versions and invalidate the rest.

        Returns:
            success(dict) with versions_kept, versions_cleaned, entries_cleaned
            and per-version cleanup_results
        """
        keep_n = max(1, keep_n)
        history = self.versioning.get_version_history()
        if len(history) <= keep_n:
            return CacheResult.success(
                {
                    "versions_kept": len(history),
                    "versions_cleaned": 0,
                    "entries_cleaned": 0,
                    "cleanup_results": {},
                }
            )

        current = self.versioning.current_version()
        cleanup_results: dict[str, int] = {}
        for record in history[keep_n:]:
            if record.version == current:
                continue
            outcome = self.versioning.invalidate_version(record.version)
            if outcome.ok:
                logger.info(
                    "Cleaned up %d entries for version %s", outcome.value, record.version
                )
                cleanup_results[record.version] = outcome.value
            else:
                logger.error(
                    "Failed to clean up version %s: %s", record.version, outcome.detail
                )
                cleanup_results[record.version] = 0

        self.versioning.prune_history(keep_n)
        return CacheResult.success(
            {
                "versions_kept": keep_n,
                "versions_cleaned": len(history) - keep_n,
                "entries_cleaned": sum(cleanup_results.values()),
                "cleanup_results": cleanup_results,
            }
        )

    # =========================================================================
    # Migration
    # =========================================================================

    def get_compatibility_info(self, version_a: str, version_b: str) -> dict[str, Any]:
        comparison = compare_versions(version_a, version_b)
        compatible = compatible_versions(version_a, version_b)
        return {
            "compatible": compatible,
            "comparison": comparison,
            "migration_required": not compatible,
            "rollback_safe": comparison == "gt" and compatible,
        }

    async def execute_migration(
        self, from_version: str, to_version: str, strategy: Any = "safe"
    ) -> MigrationResult:
        """
        Migrate entries between versions following a step plan.

        Plans:
            safe:       backup, prepare, migrate_keys, verify, cleanup
            aggressive: prepare, migrate_keys, cleanup
            gradual:    prepare, gradual_migrate, verify, cleanup
        """
        strategy_value = strategy.value if isinstance(strategy, Enum) else str(strategy)
        logger.info(
            "Executing migration from %s to %s with strategy %s",
            from_version,
            to_version,
            strategy_value,
        )

        result = MigrationResult(
            ok=False,
            from_version=from_version,
            to_version=to_version,
            strategy=strategy_value,
            started_at=self.clock(),
            estimated_duration_ms=(
                0 if compare_versions(from_version, to_version) == "eq" else ESTIMATED_MIGRATION_MS
            ),
        )

        checks = (
            self._check_strategy(strategy),
            self._check_format(from_version, to_version),
        )
        for check in checks:
            if not check.ok:
                logger.error("Failed to create migration plan: %s", check.detail)
                result.error = check.error
                result.detail = check.detail
                result.finished_at = self.clock()
                return result

        steps = MIGRATION_STEPS[DeploymentStrategy(strategy)]
        await self._run_pipeline(
            result, steps, lambda step: self._migration_step(step, from_version, to_version)
        )
        return result

    async def _migration_step(self, step: str, from_version: str, to_version: str) -> CacheResult:
        if step == "prepare":
            logger.info("Preparing migration from %s to %s", from_version, to_version)
            return CacheResult.success()
        if step == "backup":
            return self._backup(from_version)
        if step == "migrate_keys":
            return self.versioning.migrate_version(from_version, to_version)
        if step == "gradual_migrate":
            return await self._gradual_migrate(from_version, to_version)
        if step == "verify":
            return self._verify_migration(from_version, to_version)
        if step == "cleanup":
            return self._cleanup_after_migration(from_version, to_version)
        logger.warning("Unknown migration step: %s", step)
        return CacheResult.failure(ErrorCode.INVALID_STRATEGY, f"Unknown migration step: {step}")

    async def _gradual_migrate(self, from_version: str, to_version: str) -> CacheResult:
        """Migrate one key family at a time, yielding to the loop between batches."""
        keys = self.adapter.keys(self.cache_name, f"*{VERSION_MARKER}{from_version}")
        suffix_len = len(VERSION_MARKER + from_version)
        families = sorted({_key_family(k[:-suffix_len]) for k in keys})

        total = 0
        for family in families:
            outcome = self.versioning.migrate_version(from_version, to_version, [family])
            if not outcome.ok:
                return outcome
            total += outcome.value
            await asyncio.sleep(0)

        logger.info(
            "Gradually migrated %d entries in %d batches (%s -> %s)",
            total,
            len(families),
            from_version,
            to_version,
        )
        return CacheResult.success(total)

    def _verify_migration(self, from_version: str, to_version: str) -> CacheResult:
        cache = self.cache_name
        suffix_len = len(VERSION_MARKER + from_version)
        missing = []
        for key in self.adapter.keys(cache, f"*{VERSION_MARKER}{from_version}"):
            target = self.versioning.versioned_key(key[:-suffix_len], to_version)
            if not self.adapter.exists(cache, target):
                missing.append(key)
        if missing:
            return CacheResult.failure(
                ErrorCode.VERIFICATION_FAILED,
                f"{len(missing)} entries of {from_version} missing under {to_version}",
            )
        logger.info("Verified migration from %s to %s", from_version, to_version)
        return CacheResult.success(to_version)

    def _cleanup_after_migration(self, from_version: str, to_version: str) -> CacheResult:
        if from_version == self.versioning.current_version():
            # Entries of the active version stay until it is replaced
            return CacheResult.success(0)
        outcome = self.versioning.invalidate_version(from_version)
        if outcome.ok:
            logger.debug("Cleaned up %d entries after migration to %s", outcome.value, to_version)
        return outcome

    # =========================================================================
    # Status
    # =========================================================================

    def get_deployment_status(self) -> dict[str, Any]:
        current = self.versioning.current_version()
        return {
            "current_version": current,
            "application_version": self.app_version,
            "version_match": current == self.app_version,
            "initialized": self._initialized,
            "version_history": [r.to_dict() for r in self.versioning.get_version_history()],
            "stats": self.versioning.get_version_stats(),
            "deployment_hooks": self.versioning.list_hooks(),
            "last_deployment": (
                self._last_deployment.to_dict() if self._last_deployment else None
            ),
        }


def _key_family(base_key: str) -> str:
    """Glob covering a base key's first two segments (``esi:character:*``)."""
    parts = base_key.split(":")
    if len(parts) < 2:
        return base_key
    return f"{parts[0]}:{parts[1]}*"


def _describe(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return f"{len(value)} items"
    return str(value)
