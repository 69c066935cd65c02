"""
Tests for cache metrics accumulation and reporting.
"""

from __future__ import annotations

import pytest

from relay_cache.cache.metrics import CacheMetrics


class TestHitRatio:
    def test_no_traffic(self):
        metrics = CacheMetrics()
        report = metrics.get_metrics()

        assert report["hit_ratio"] == 0.0
        assert report["miss_ratio"] == 0.0
        assert report["total_operations"] == 0

    def test_ratio_of_hits(self):
        """N hits and M misses give N/(N+M)."""
        metrics = CacheMetrics()
        for _ in range(3):
            metrics.record_hit("character")
        metrics.record_miss("character")

        assert metrics.get_hit_ratio() == 0.75
        assert metrics.get_metrics()["miss_ratio"] == 0.25

    def test_per_domain(self):
        metrics = CacheMetrics()
        metrics.record_hit("character")
        metrics.record_miss("system")
        metrics.record_miss("system")

        assert metrics.get_hit_ratio("character") == 1.0
        assert metrics.get_hit_ratio("system") == 0.0
        assert metrics.get_hit_ratio("alliance") == 0.0

        system = metrics.get_domain_metrics("system")
        assert system["misses"] == 2
        assert system["total_operations"] == 2


class TestOperationTimes:
    def test_average_is_global(self):
        metrics = CacheMetrics()
        metrics.record_operation_time("get", 10.0)
        metrics.record_operation_time("get", 20.0)
        metrics.record_operation_time("put", 60.0)

        report = metrics.get_metrics()

        assert report["average_operation_time"] == pytest.approx(30.0)
        assert report["operation_times"]["get"]["average_ms"] == pytest.approx(15.0)
        assert report["operation_times"]["put"]["count"] == 1


class TestCounters:
    def test_evictions_and_expirations(self):
        metrics = CacheMetrics()
        metrics.record_eviction()
        metrics.record_eviction(2)
        metrics.record_expiration()

        report = metrics.get_metrics()
        assert report["evictions"] == 3
        assert report["expirations"] == 1

    def test_reset(self):
        metrics = CacheMetrics()
        metrics.record_hit("character")
        metrics.record_operation_time("get", 5.0)
        metrics.record_eviction()

        metrics.reset_metrics()

        report = metrics.get_metrics()
        assert report["hit_ratio"] == 0.0
        assert report["total_operations"] == 0
        assert report["evictions"] == 0
        assert report["operation_times"] == {}
        assert report["per_domain"] == {}


class TestCardinalityCaps:
    """Unseen domains beyond the cap are dropped silently."""

    def test_domain_cap(self):
        metrics = CacheMetrics(max_domains=2)
        metrics.record_hit("a")
        metrics.record_hit("b")
        metrics.record_hit("c")
        metrics.record_hit("a")

        report = metrics.get_metrics()
        assert set(report["per_domain"]) == {"a", "b"}
        assert report["per_domain"]["a"]["hits"] == 2
        assert report["dropped_events"] == 1

    def test_operation_cap(self):
        metrics = CacheMetrics(max_operations=1)
        metrics.record_operation_time("get", 1.0)
        metrics.record_operation_time("put", 1.0)

        assert list(metrics.get_metrics()["operation_times"]) == ["get"]


class TestMemoryUsage:
    def test_default_without_provider(self):
        assert CacheMetrics().get_metrics()["memory_usage"] == {"entries": 0, "usage_ratio": 0.0}

    def test_from_provider(self, metrics, adapter):
        adapter.set("relay_cache", "k:1", 1, 60)
        assert metrics.get_metrics()["memory_usage"]["entries"] == 1

    def test_provider_failure_falls_back(self):
        def broken():
            raise ConnectionError("redis down")

        usage = CacheMetrics(stats_provider=broken).get_metrics()["memory_usage"]
        assert usage["usage_ratio"] == 0.0
