"""
Cache Runtime

Composition root for the caching core. Builds every component once from
settings and owns their startup/shutdown order.

Usage:
    runtime = CacheRuntime.build(get_settings(), enrichment=registry)
    await runtime.start()
    runtime.facade.get_character(95465499)
    await runtime.stop()
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from ..core.config import get_settings
from ..core.logging import bind_cache_context, get_logger
from .domain_config import DomainConfig
from .errors import ConfigurationError
from .facade import CacheFacade
from .metrics import CacheMetrics
from .performance_monitor import MonitorConfig, PerformanceMonitor
from .store import MemoryBackend, StoreAdapter, StoreBackend, resolve_backend
from .strategies import WarmingStrategies
from .tracker import ActivityTracker
from .version_manager import VersionManager
from .versioning import Versioning
from .warmer import CacheWarmer, WarmerConfig

if TYPE_CHECKING:
    from ..core.config import RelaySettings
    from .enrichment import EnrichmentService

logger = get_logger(__name__)


@dataclass
class CacheRuntime:
    """Wired cache components. Construct with ``build()``."""

    settings: RelaySettings
    domain_config: DomainConfig
    adapter: StoreAdapter
    versioning: Versioning
    metrics: CacheMetrics
    tracker: ActivityTracker
    facade: CacheFacade
    strategies: WarmingStrategies
    warmer: CacheWarmer
    monitor: PerformanceMonitor
    version_manager: VersionManager
    started: bool = False

    @classmethod
    def build(
        cls,
        settings: Optional[RelaySettings] = None,
        enrichment: Optional[EnrichmentService] = None,
        backend: Optional[StoreBackend] = None,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.monotonic,
    ) -> CacheRuntime:
        """
        Build all components.

        Args:
            settings: Settings (default: ``get_settings()``)
            enrichment: Fetch collaborator used by the warmer
            backend: Pre-built backend; skips backend selection
            clock: Wall clock for records and jobs
            timer: Monotonic clock for memory-backend expiry

        Raises:
            ConfigurationError: Unknown backend or unreadable config file
        """
        settings = settings or get_settings()

        if backend is None:
            selected = resolve_backend(
                settings.cache_backend,
                redis_url=settings.redis_url,
                redis_timeout=settings.redis_timeout,
                max_entries=settings.memory_max_entries,
                timer=timer,
            )
            if isinstance(selected, ConfigurationError):
                raise selected
            backend = selected

        domain_config = DomainConfig.from_settings(settings)
        adapter = StoreAdapter(backend)
        cache_name = domain_config.cache_name()

        metrics = CacheMetrics(stats_provider=lambda: adapter.stats(cache_name))
        if isinstance(backend, MemoryBackend):
            backend.on_evict = metrics.record_eviction
            backend.on_expire = metrics.record_expiration

        versioning = Versioning(
            adapter, domain_config, configured_version=settings.app_version, clock=clock
        )
        tracker = ActivityTracker(clock=clock)
        facade = CacheFacade(
            adapter,
            domain_config,
            versioning,
            metrics=metrics,
            tracker=tracker,
            retry_attempts=settings.cache_retry_attempts,
            retry_min_wait=settings.cache_retry_min_wait,
            retry_max_wait=settings.cache_retry_max_wait,
        )
        strategies = WarmingStrategies(
            tracker=tracker,
            priority_systems=list(settings.warm_priority_systems),
            critical_entities=list(settings.warm_critical_entities),
        )
        warmer = CacheWarmer(
            facade,
            enrichment=enrichment,
            strategies=strategies,
            config=WarmerConfig.from_settings(settings, domain_config.section("warmer")),
            clock=clock,
        )
        monitor = PerformanceMonitor(
            metrics,
            config=MonitorConfig.from_settings(settings, domain_config.section("monitor")),
            clock=clock,
        )
        version_manager = VersionManager(
            versioning,
            warmer=warmer,
            metrics=metrics,
            app_version=settings.app_version,
            clock=clock,
        )

        bind_cache_context(cache_name, versioning.current_version)
        logger.debug(
            "Cache runtime built (backend=%s, cache=%s)", adapter.backend_name, cache_name
        )
        return cls(
            settings=settings,
            domain_config=domain_config,
            adapter=adapter,
            versioning=versioning,
            metrics=metrics,
            tracker=tracker,
            facade=facade,
            strategies=strategies,
            warmer=warmer,
            monitor=monitor,
            version_manager=version_manager,
        )

    def initialize(self) -> None:
        """Start versioning and register deployment hooks (no background tasks)."""
        if not self.versioning.is_started:
            self.versioning.start()
            self.version_manager.initialize()

    async def start(self) -> None:
        if self.started:
            return
        self.initialize()
        if self.settings.monitor_enabled:
            await self.monitor.start()
        await self.warmer.start()
        self.started = True
        logger.info(
            "Relay cache started (backend=%s, version=%s)",
            self.adapter.backend_name,
            self.versioning.current_version(),
        )

    async def stop(self) -> None:
        if not self.started:
            return
        await self.warmer.stop()
        await self.monitor.stop()
        await self.versioning.wait_for_hooks(timeout=5.0)
        self.started = False
        logger.info("Relay cache stopped")

    async def __aenter__(self) -> CacheRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def get_status(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "cache": self.facade.stats(),
            "versioning": self.versioning.get_version_stats(),
            "deployment": self.version_manager.get_deployment_status(),
            "metrics": self.metrics.get_metrics(),
            "monitor": self.monitor.get_status(),
            "warmer": self.warmer.get_status(),
            "ttls": self.domain_config.ttl_table(),
        }
