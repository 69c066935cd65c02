"""
Cache Metrics

Accumulates hit/miss counts per domain, operation timings per operation type
and global eviction/expiration counters, and produces aggregate and
per-domain reports.

Cardinality is capped: once ``MAX_DOMAINS`` domains (or ``MAX_OPERATIONS``
operation types) are tracked, events for unseen ones are dropped silently
while tracked keys keep accumulating.

Metrics are an advisory overlay: callers on the read/write path must never
fail because recording a metric failed.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.logging import get_logger

logger = get_logger(__name__)

MAX_DOMAINS = 50
MAX_OPERATIONS = 20

EMPTY_MEMORY_USAGE: dict[str, Any] = {"entries": 0, "usage_ratio": 0.0}


@dataclass
class DomainCounters:
    hits: int = 0
    misses: int = 0

    @property
    def total(self) -> int:
        return self.hits + self.misses


@dataclass
class OperationTiming:
    total_ms: float = 0.0
    count: int = 0

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


def _ratio(part: int, total: int) -> float:
    return part / total if total > 0 else 0.0


@dataclass
class CacheMetrics:
    """
    Thread-safe metrics accumulator.

    Args:
        stats_provider: Optional callable returning backend memory stats
            (e.g. ``lambda: adapter.stats(cache_name)``)
        max_domains: Domain cardinality cap
        max_operations: Operation-type cardinality cap
    """

    stats_provider: Optional[Callable[[], dict[str, Any]]] = None
    max_domains: int = MAX_DOMAINS
    max_operations: int = MAX_OPERATIONS

    _domains: dict[str, DomainCounters] = field(default_factory=dict, repr=False)
    _operations: dict[str, OperationTiming] = field(default_factory=dict, repr=False)
    _evictions: int = field(default=0, repr=False)
    _expirations: int = field(default=0, repr=False)
    _dropped_events: int = field(default=0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_hit(self, domain: str, entity_id: Any = None) -> None:
        with self._lock:
            counters = self._domain(domain)
            if counters is not None:
                counters.hits += 1

    def record_miss(self, domain: str, entity_id: Any = None) -> None:
        with self._lock:
            counters = self._domain(domain)
            if counters is not None:
                counters.misses += 1

    def record_operation_time(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            timing = self._operations.get(operation)
            if timing is None:
                if len(self._operations) >= self.max_operations:
                    self._dropped_events += 1
                    return
                timing = self._operations[operation] = OperationTiming()
            timing.total_ms += duration_ms
            timing.count += 1

    def record_eviction(self, count: int = 1) -> None:
        with self._lock:
            self._evictions += count

    def record_expiration(self, count: int = 1) -> None:
        with self._lock:
            self._expirations += count

    def _domain(self, domain: str) -> Optional[DomainCounters]:
        counters = self._domains.get(domain)
        if counters is None:
            if len(self._domains) >= self.max_domains:
                self._dropped_events += 1
                return None
            counters = self._domains[domain] = DomainCounters()
        return counters

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_metrics(self) -> dict[str, Any]:
        """
        Aggregate report.

        Returns:
            Dict with hit_ratio, miss_ratio, total_operations, total_hits,
            total_misses, average_operation_time (ms), operation_times,
            memory_usage, evictions, expirations and per_domain
        """
        with self._lock:
            total_hits = sum(c.hits for c in self._domains.values())
            total_misses = sum(c.misses for c in self._domains.values())
            total = total_hits + total_misses

            timing_total = sum(t.total_ms for t in self._operations.values())
            timing_count = sum(t.count for t in self._operations.values())

            report = {
                "hit_ratio": _ratio(total_hits, total),
                "miss_ratio": _ratio(total_misses, total),
                "total_operations": total,
                "total_hits": total_hits,
                "total_misses": total_misses,
                "average_operation_time": timing_total / timing_count if timing_count else 0.0,
                "operation_times": {
                    name: {
                        "count": timing.count,
                        "total_ms": timing.total_ms,
                        "average_ms": timing.average_ms,
                    }
                    for name, timing in self._operations.items()
                },
                "evictions": self._evictions,
                "expirations": self._expirations,
                "dropped_events": self._dropped_events,
                "per_domain": {
                    domain: self._domain_report(domain, counters)
                    for domain, counters in self._domains.items()
                },
            }

        report["memory_usage"] = self._memory_usage()
        return report

    def get_domain_metrics(self, domain: str) -> dict[str, Any]:
        with self._lock:
            counters = self._domains.get(domain, DomainCounters())
            return self._domain_report(domain, counters)

    def get_hit_ratio(self, domain: Optional[str] = None) -> float:
        """Hit ratio for one domain, or overall when ``domain`` is None."""
        with self._lock:
            if domain is not None:
                counters = self._domains.get(domain, DomainCounters())
                return _ratio(counters.hits, counters.total)
            hits = sum(c.hits for c in self._domains.values())
            total = sum(c.total for c in self._domains.values())
            return _ratio(hits, total)

    def reset_metrics(self) -> None:
        """Zero every accumulator in one step."""
        with self._lock:
            self._domains = {}
            self._operations = {}
            self._evictions = 0
            self._expirations = 0
            self._dropped_events = 0
        logger.debug("Cache metrics reset")

    @staticmethod
    def _domain_report(domain: str, counters: DomainCounters) -> dict[str, Any]:
        return {
            "domain": domain,
            "hits": counters.hits,
            "misses": counters.misses,
            "total_operations": counters.total,
            "hit_ratio": _ratio(counters.hits, counters.total),
            "miss_ratio": _ratio(counters.misses, counters.total),
        }

    def _memory_usage(self) -> dict[str, Any]:
        if self.stats_provider is None:
            return dict(EMPTY_MEMORY_USAGE)
        try:
            return dict(self.stats_provider())
        except Exception as e:
            logger.debug("Memory stats unavailable: %s", e)
            return dict(EMPTY_MEMORY_USAGE)
