"""
Cache Performance Monitor

Periodically samples ``CacheMetrics``, classifies cache health and raises
threshold alerts with a cooldown.

Health:
    critical: hit ratio < 0.8x threshold, response time or eviction rate
              >= 2x threshold, or memory usage >= 1.2x threshold
    degraded: any single threshold breached
    healthy:  otherwise

Alerts (one per metric):
- first breach fires immediately
- a breach that persists re-fires only after the cooldown elapses
- the alert clears as soon as the metric is back under its threshold

Recommendations are advisory only; nothing here remediates automatically.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from ..core.logging import get_logger

if TYPE_CHECKING:
    from ..core.config import RelaySettings
    from .metrics import CacheMetrics

logger = get_logger(__name__)

# Critical multipliers relative to each threshold
CRITICAL_HIT_RATIO_FACTOR = 0.8
CRITICAL_RESPONSE_TIME_FACTOR = 2.0
CRITICAL_EVICTION_RATE_FACTOR = 2.0
CRITICAL_MEMORY_FACTOR = 1.2

TREND_SAMPLES = 3


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class AlertType(str, Enum):
    HIT_RATIO_LOW = "hit_ratio_low"
    RESPONSE_TIME_HIGH = "response_time_high"
    MEMORY_USAGE_HIGH = "memory_usage_high"
    EVICTION_RATE_HIGH = "eviction_rate_high"


@dataclass
class MonitorConfig:
    """Monitor thresholds (response time in ms, durations in seconds)."""

    monitoring_interval: float = 30.0
    hit_ratio_threshold: float = 0.90
    response_time_threshold: float = 100.0
    memory_usage_threshold: float = 0.80
    eviction_rate_threshold: float = 0.10
    alert_cooldown: float = 300.0
    trend_analysis_window: int = 10

    @classmethod
    def from_settings(
        cls, settings: RelaySettings, overrides: Optional[dict[str, Any]] = None
    ) -> MonitorConfig:
        """Build from settings, then apply a YAML ``monitor:`` section."""
        config = cls(
            monitoring_interval=settings.monitor_interval,
            hit_ratio_threshold=settings.monitor_hit_ratio_threshold,
            response_time_threshold=settings.monitor_response_time_threshold,
            memory_usage_threshold=settings.monitor_memory_usage_threshold,
            eviction_rate_threshold=settings.monitor_eviction_rate_threshold,
            alert_cooldown=settings.monitor_alert_cooldown,
            trend_analysis_window=settings.monitor_history_size,
        )
        if overrides:
            known = {f.name for f in fields(cls)}
            unknown = set(overrides) - known
            if unknown:
                logger.warning("Ignoring unknown monitor options: %s", ", ".join(sorted(unknown)))
            config = config.updated(**{k: v for k, v in overrides.items() if k in known})
        return config

    def updated(self, **changes: Any) -> MonitorConfig:
        """
        Copy with ``changes`` applied.

        Raises:
            ValueError: On an unknown option
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown monitor options: {', '.join(sorted(unknown))}")
        return replace(self, **changes)


@dataclass(frozen=True)
class PerformanceSample:
    timestamp: float
    hit_ratio: float
    average_response_time: float
    memory_usage: float
    eviction_rate: float
    total_operations: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Alert:
    type: AlertType
    message: str
    value: float
    threshold: float
    first_fired_at: float
    last_fired_at: float
    fire_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass(frozen=True)
class Recommendation:
    type: str
    priority: str
    description: str
    actions: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority,
            "description": self.description,
            "actions": list(self.actions),
        }


def classify(sample: PerformanceSample, config: MonitorConfig) -> HealthStatus:
    """Classify one sample. The hit ratio counts only once operations exist."""
    has_traffic = sample.total_operations > 0
    hit = sample.hit_ratio
    rt = sample.average_response_time
    mem = sample.memory_usage
    evict = sample.eviction_rate

    if (
        (has_traffic and hit < config.hit_ratio_threshold * CRITICAL_HIT_RATIO_FACTOR)
        or rt >= config.response_time_threshold * CRITICAL_RESPONSE_TIME_FACTOR
        or mem >= config.memory_usage_threshold * CRITICAL_MEMORY_FACTOR
        or evict >= config.eviction_rate_threshold * CRITICAL_EVICTION_RATE_FACTOR
    ):
        return HealthStatus.CRITICAL

    if (
        (has_traffic and hit < config.hit_ratio_threshold)
        or rt > config.response_time_threshold
        or mem > config.memory_usage_threshold
        or evict > config.eviction_rate_threshold
    ):
        return HealthStatus.DEGRADED

    return HealthStatus.HEALTHY


def declining_trend(values: list[float]) -> bool:
    """True when the three newest values (newest first) strictly decrease over time."""
    if len(values) < TREND_SAMPLES:
        return False
    newest, middle, oldest = values[:TREND_SAMPLES]
    return newest < middle < oldest


@dataclass
class PerformanceMonitor:
    """
    Periodic cache health monitor.

    Usage:
        monitor = PerformanceMonitor(metrics)
        await monitor.start()
        ...
        report = monitor.get_performance_report()
        await monitor.stop()
    """

    metrics: CacheMetrics
    config: MonitorConfig = field(default_factory=MonitorConfig)
    clock: Callable[[], float] = time.time
    on_alert: Optional[Callable[[Alert], Any]] = None

    # Runtime state
    _status: HealthStatus = field(default=HealthStatus.UNKNOWN, repr=False)
    _last_check: Optional[float] = field(default=None, repr=False)
    _history: deque[PerformanceSample] = field(default_factory=deque, repr=False)
    _alerts: dict[AlertType, Alert] = field(default_factory=dict, repr=False)
    _recommendations: list[Recommendation] = field(default_factory=list, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)
    _running: bool = field(default=False, repr=False)
    _check_count: int = field(default=0, repr=False)

    def __post_init__(self) -> None:
        self._history = deque(maxlen=self.config.trend_analysis_window)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def status(self) -> HealthStatus:
        return self._status

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(
            "Cache performance monitoring started (interval %.0fs)",
            self.config.monitoring_interval,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cache performance monitoring stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.monitoring_interval)
            try:
                self.force_check()
            except Exception as e:
                # Monitoring is advisory; a failed check waits for the next cycle
                logger.error("Performance check failed: %s", e, exc_info=True)

    # =========================================================================
    # Checks
    # =========================================================================

    def force_check(self) -> dict[str, Any]:
        """
        Sample metrics now.

        Returns:
            Dict with status, metrics (the sample), alerts (active types)
            and recommendations
        """
        sample = self._sample()
        status = classify(sample, self.config)

        self._history.appendleft(sample)
        self._update_alerts(sample)
        self._recommendations = self._build_recommendations(sample)
        self._check_count += 1
        self._last_check = sample.timestamp

        if status != self._status:
            logger.info(
                "Cache performance status changed from %s to %s "
                "(hit ratio %.1f%%, response %.1fms, memory %.1f%%, evictions %.1f%%)",
                self._status.value,
                status.value,
                sample.hit_ratio * 100,
                sample.average_response_time,
                sample.memory_usage * 100,
                sample.eviction_rate * 100,
            )
        self._status = status

        return {
            "status": status.value,
            "metrics": sample.to_dict(),
            "alerts": [alert_type.value for alert_type in self._alerts],
            "recommendations": [r.to_dict() for r in self._recommendations],
        }

    def _sample(self) -> PerformanceSample:
        data = self.metrics.get_metrics()
        total = int(data.get("total_operations", 0))
        evictions = int(data.get("evictions", 0))
        memory = data.get("memory_usage") or {}
        return PerformanceSample(
            timestamp=self.clock(),
            hit_ratio=float(data.get("hit_ratio", 0.0)),
            average_response_time=float(data.get("average_operation_time", 0.0)),
            memory_usage=float(memory.get("usage_ratio", 0.0)),
            eviction_rate=evictions / total if total > 0 else 0.0,
            total_operations=total,
        )

    def _update_alerts(self, sample: PerformanceSample) -> None:
        cfg = self.config
        checks = [
            (
                AlertType.HIT_RATIO_LOW,
                sample.total_operations > 0 and sample.hit_ratio < cfg.hit_ratio_threshold,
                sample.hit_ratio,
                cfg.hit_ratio_threshold,
                f"Hit ratio: {sample.hit_ratio * 100:.1f}% "
                f"(threshold: {cfg.hit_ratio_threshold * 100:.1f}%)",
            ),
            (
                AlertType.RESPONSE_TIME_HIGH,
                sample.average_response_time > cfg.response_time_threshold,
                sample.average_response_time,
                cfg.response_time_threshold,
                f"Response time: {sample.average_response_time:.1f}ms "
                f"(threshold: {cfg.response_time_threshold:.1f}ms)",
            ),
            (
                AlertType.MEMORY_USAGE_HIGH,
                sample.memory_usage > cfg.memory_usage_threshold,
                sample.memory_usage,
                cfg.memory_usage_threshold,
                f"Memory usage: {sample.memory_usage * 100:.1f}% "
                f"(threshold: {cfg.memory_usage_threshold * 100:.1f}%)",
            ),
            (
                AlertType.EVICTION_RATE_HIGH,
                sample.eviction_rate > cfg.eviction_rate_threshold,
                sample.eviction_rate,
                cfg.eviction_rate_threshold,
                f"Eviction rate: {sample.eviction_rate * 100:.1f}% "
                f"(threshold: {cfg.eviction_rate_threshold * 100:.1f}%)",
            ),
        ]

        now = sample.timestamp
        for alert_type, breached, value, threshold, message in checks:
            existing = self._alerts.get(alert_type)
            if not breached:
                if existing is not None:
                    logger.info("Cache performance alert cleared: %s", alert_type.value)
                    del self._alerts[alert_type]
                continue

            if existing is None:
                alert = Alert(alert_type, message, value, threshold, now, now)
                self._alerts[alert_type] = alert
                logger.warning("Cache performance alert: %s - %s", alert_type.value, message)
                self._notify(alert)
            elif now - existing.last_fired_at > cfg.alert_cooldown:
                since = now - existing.last_fired_at
                existing.message = message
                existing.value = value
                existing.last_fired_at = now
                existing.fire_count += 1
                logger.warning(
                    "Cache performance alert (repeated after %.0fs): %s - %s",
                    since,
                    alert_type.value,
                    message,
                )
                self._notify(existing)
            else:
                existing.message = message
                existing.value = value

    def _notify(self, alert: Alert) -> None:
        if self.on_alert is None:
            return
        try:
            self.on_alert(replace(alert))
        except Exception as e:
            logger.error("Alert callback failed for %s: %s", alert.type.value, e)

    # =========================================================================
    # Recommendations
    # =========================================================================

    def _build_recommendations(self, sample: PerformanceSample) -> list[Recommendation]:
        cfg = self.config
        recommendations: list[Recommendation] = []

        if sample.total_operations > 0 and sample.hit_ratio < cfg.hit_ratio_threshold:
            recommendations.append(
                Recommendation(
                    type="hit_ratio_improvement",
                    priority="high",
                    description=(
                        f"Cache hit ratio is below threshold ({sample.hit_ratio * 100:.2f}%)"
                    ),
                    actions=(
                        "Consider increasing cache TTL for frequently accessed data",
                        "Implement cache warming strategies",
                        "Review cache eviction policies",
                    ),
                )
            )

        if sample.average_response_time > cfg.response_time_threshold:
            recommendations.append(
                Recommendation(
                    type="response_time_improvement",
                    priority="medium",
                    description=(
                        "Average response time is above threshold "
                        f"({sample.average_response_time:.2f}ms)"
                    ),
                    actions=(
                        "Optimize cache key generation",
                        "Consider cache partitioning for better performance",
                        "Review cache adapter configuration",
                    ),
                )
            )

        if sample.memory_usage > cfg.memory_usage_threshold:
            recommendations.append(
                Recommendation(
                    type="memory_optimization",
                    priority="medium",
                    description=(
                        f"Memory usage is above threshold ({sample.memory_usage * 100:.2f}%)"
                    ),
                    actions=(
                        "Implement more aggressive cache eviction",
                        "Reduce cache size limits",
                        "Consider data compression for cached values",
                    ),
                )
            )

        if sample.eviction_rate > cfg.eviction_rate_threshold:
            recommendations.append(
                Recommendation(
                    type="eviction_reduction",
                    priority="medium",
                    description=(
                        f"Eviction rate is above threshold ({sample.eviction_rate * 100:.2f}%)"
                    ),
                    actions=(
                        "Increase cache capacity",
                        "Shorten TTLs for rarely read domains",
                        "Reduce warming volume for low-value entities",
                    ),
                )
            )

        recommendations.extend(self._analyze_trends())
        return recommendations

    def _analyze_trends(self) -> list[Recommendation]:
        hit_ratios = [s.hit_ratio for s in self._history if s.total_operations > 0]
        if not declining_trend(hit_ratios):
            return []
        return [
            Recommendation(
                type="trend_analysis",
                priority="medium",
                description="Cache hit ratio is showing a declining trend",
                actions=(
                    "Investigate recent changes that might affect cache effectiveness",
                    "Review cache invalidation patterns",
                    "Consider adjusting cache warming strategies",
                ),
            )
        ]

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_recommendations(self) -> list[Recommendation]:
        return list(self._recommendations)

    def get_status(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "monitoring_active": self._running,
            "last_check": self._last_check,
            "check_count": self._check_count,
            "active_alerts": [alert_type.value for alert_type in self._alerts],
            "recommendation_count": len(self._recommendations),
        }

    def get_performance_report(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "monitoring_active": self._running,
            "last_check": self._last_check,
            "configuration": asdict(self.config),
            "performance_history": [s.to_dict() for s in self._history],
            "active_alerts": {t.value: a.to_dict() for t, a in self._alerts.items()},
            "recommendations": [r.to_dict() for r in self._recommendations],
            "trend_analysis": [r.to_dict() for r in self._analyze_trends()],
        }

    def update_config(self, **changes: Any) -> MonitorConfig:
        """
        Apply configuration changes.

        Raises:
            ValueError: On an unknown option
        """
        self.config = self.config.updated(**changes)
        if self._history.maxlen != self.config.trend_analysis_window:
            self._history = deque(self._history, maxlen=self.config.trend_analysis_window)
        logger.info("Cache performance monitor configuration updated")
        return self.config
