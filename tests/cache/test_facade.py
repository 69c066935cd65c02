"""
Tests for the domain-level cache facade.
"""

from __future__ import annotations

import math
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest

from relay_cache.cache.errors import BackendError, ErrorCode
from relay_cache.cache.facade import CacheFacade
from relay_cache.cache.metrics import CacheMetrics
from relay_cache.cache.store import MemoryBackend, RedisBackend, StoreAdapter
from relay_cache.cache.versioning import Versioning, VersionStatus

CACHE = "relay_cache"


class FlakyBackend(MemoryBackend):
    """MemoryBackend whose first ``failures`` calls raise BackendError."""

    def __init__(self, failures: int, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.calls = 0

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise BackendError("connection reset")

    def get(self, cache: str, key: str) -> Any:
        self._maybe_fail()
        return super().get(cache, key)

    def set(self, cache: str, key: str, value: Any, ttl: Optional[float]) -> None:
        self._maybe_fail()
        super().set(cache, key, value, ttl)

    def exists(self, cache: str, key: str) -> bool:
        self._maybe_fail()
        return super().exists(cache, key)


@pytest.fixture
def flaky_facade(domain_config, clock):
    def build(failures: int) -> tuple[CacheFacade, FlakyBackend]:
        backend = FlakyBackend(failures, timer=clock)
        adapter = StoreAdapter(backend)
        versioning = Versioning(adapter, domain_config, clock=clock)
        backend.failures = 0
        versioning.start()
        backend.failures = failures
        backend.calls = 0
        facade = CacheFacade(
            adapter,
            domain_config,
            versioning,
            metrics=CacheMetrics(),
            retry_attempts=3,
            retry_min_wait=0,
            retry_max_wait=0,
        )
        return facade, backend

    return build


class TestDomainApi:
    """Test typed get/put helpers."""

    def test_character_round_trip(self, facade, adapter):
        assert facade.put_character(95465499, {"name": "Pilot"}).ok

        result = facade.get_character(95465499)

        assert result.ok
        assert result.value == {"name": "Pilot"}
        assert adapter.get(CACHE, "esi:character:95465499:v1.0.0") == {"name": "Pilot"}

    def test_miss_is_not_found(self, facade):
        result = facade.get_corporation(98000001)

        assert not result.ok
        assert result.is_not_found
        assert result.detail == "esi:corporation:98000001:v1.0.0"

    def test_cached_none_is_a_hit(self, facade):
        facade.put_alliance(99000001, None)
        result = facade.get_alliance(99000001)
        assert result.ok
        assert result.value is None

    def test_domain_ttl_applied(self, facade, adapter):
        facade.put_system(30000142, {"name": "Jita"})
        assert adapter.ttl(CACHE, "map:system:30000142:v1.0.0") == pytest.approx(3600)

    def test_explicit_ttl_wins(self, facade, adapter):
        facade.put_type(587, {"name": "Rifter"}, ttl=30)
        assert adapter.ttl(CACHE, "esi:type:587:v1.0.0") == pytest.approx(30)

    def test_infinite_ttl_is_persistent(self, facade, adapter):
        facade.put_type(587, {"name": "Rifter"}, ttl=math.inf)
        assert adapter.ttl(CACHE, "esi:type:587:v1.0.0") is None

    def test_negative_ttl_rejected(self, facade):
        result = facade.put_character(1, {}, ttl=-5)
        assert result.error is ErrorCode.INVALID_TTL

    def test_ttl_expiry(self, facade, clock):
        facade.put_character(1, {"name": "A"}, ttl=60)

        clock.advance(59)
        assert facade.get_character(1).ok

        clock.advance(2)
        assert facade.get_character(1).is_not_found

    def test_invalid_entity_id(self, facade):
        result = facade.get_character("")
        assert result.error is ErrorCode.INVALID_KEY

    def test_entity_by_type_name(self, facade):
        facade.put_entity("system", 30000142, {"name": "Jita"})
        assert facade.get_entity("system", 30000142).value == {"name": "Jita"}

    def test_unsupported_entity_type(self, facade):
        assert facade.get_entity("moon", 1).error is ErrorCode.UNKNOWN_JOB_TYPE
        assert facade.put_entity("moon", 1, {}).error is ErrorCode.UNKNOWN_JOB_TYPE


class TestKillmailScenario:
    """A version bump hides entries written under the previous version."""

    def test_version_bump_hides_killmail(self, facade, versioning):
        facade.put_killmail(1001, "abcd", {"victim": "Pilot"})
        assert facade.get_killmail(1001, "abcd").value == {"victim": "Pilot"}

        versioning.set_version("1.1.0")

        assert facade.get_killmail(1001, "abcd").is_not_found
        history = versioning.get_version_history()
        assert [(r.version, r.status) for r in history] == [
            ("1.1.0", VersionStatus.ACTIVE),
            ("1.0.0", VersionStatus.DEPRECATED),
        ]

    def test_entry_still_stored_until_invalidated(self, facade, versioning, adapter):
        facade.put_killmail(1001, "abcd", {"victim": "Pilot"})
        versioning.set_version("1.1.0")

        assert adapter.get(CACHE, "esi:killmail:1001:abcd:v1.0.0") == {"victim": "Pilot"}


class TestGenericApi:
    def test_string_key(self, facade):
        facade.put("config:settings", {"a": 1})
        assert facade.get("config:settings").value == {"a": 1}

    def test_sequence_key(self, facade):
        facade.put(["data", "region_names"], ["The Forge"])
        assert facade.get("data:region_names").value == ["The Forge"]

    @pytest.mark.parametrize("key", ["nocolon", "a::b", 42, None])
    def test_invalid_keys(self, facade, key):
        assert facade.get(key).error is ErrorCode.INVALID_KEY
        assert facade.put(key, 1).error is ErrorCode.INVALID_KEY
        assert facade.delete(key).error is ErrorCode.INVALID_KEY
        assert facade.exists(key) is False

    def test_delete(self, facade):
        facade.put("config:settings", 1)

        assert facade.delete("config:settings").value is True
        assert facade.delete("config:settings").value is False
        assert facade.get("config:settings").is_not_found

    def test_exists(self, facade):
        assert facade.exists("config:settings") is False
        facade.put("config:settings", 1)
        assert facade.exists("config:settings") is True

    def test_exists_does_not_count_as_read(self, facade, metrics):
        facade.put("config:settings", 1)
        facade.exists("config:settings")
        assert metrics.get_metrics()["total_operations"] == 0

    def test_clear(self, facade):
        facade.put("config:a", 1)
        facade.put("config:b", 2)

        result = facade.clear()

        assert result.value >= 2
        assert facade.get("config:a").is_not_found

    def test_stats(self, facade):
        stats = facade.stats()
        assert stats["cache_name"] == CACHE
        assert stats["adapter"] == "memory"
        assert stats["version"] == "1.0.0"
        assert "entries" in stats


class TestMetricsAndTracking:
    def test_hits_and_misses_recorded(self, facade, metrics):
        facade.put_character(1, {})
        facade.get_character(1)
        facade.get_character(2)

        report = metrics.get_metrics()
        assert report["total_hits"] == 1
        assert report["total_misses"] == 1
        assert report["per_domain"]["character"]["hit_ratio"] == 0.5
        assert report["operation_times"]["get"]["count"] == 2

    def test_generic_reads_use_custom_domain(self, facade, metrics):
        facade.get("config:settings")
        assert metrics.get_domain_metrics("custom")["misses"] == 1

    def test_reads_feed_tracker(self, facade, tracker):
        facade.get_system(30000142)
        facade.get_system(30002187)
        assert tracker.recent("system", 10) == [30002187, 30000142]

    def test_untracked_read(self, facade, tracker):
        facade.get_entity("character", 1, track=False)
        assert tracker.recent("character", 10) == []

    def test_metrics_failure_does_not_break_reads(self, adapter, domain_config, versioning):
        class BrokenMetrics(CacheMetrics):
            def record_hit(self, domain, entity_id=None):
                raise RuntimeError("metrics down")

        facade = CacheFacade(adapter, domain_config, versioning, metrics=BrokenMetrics())
        facade.put_character(1, {"name": "A"})

        assert facade.get_character(1).value == {"name": "A"}


class TestBackendErrors:
    """Transient backend errors are retried, then surfaced as results."""

    def test_transient_error_retried(self, flaky_facade):
        facade, backend = flaky_facade(failures=2)

        result = facade.get_character(1)

        assert result.is_not_found
        assert backend.calls == 3

    def test_persistent_error_becomes_result(self, flaky_facade):
        facade, backend = flaky_facade(failures=10)

        result = facade.get_character(1)

        assert result.error is ErrorCode.BACKEND_ERROR
        assert "connection reset" in result.detail
        assert backend.calls == 3

    def test_write_error(self, flaky_facade):
        facade, _ = flaky_facade(failures=10)
        assert facade.put_character(1, {}).error is ErrorCode.BACKEND_ERROR

    def test_exists_error_is_false(self, flaky_facade):
        facade, _ = flaky_facade(failures=10)
        assert facade.exists("config:settings") is False

    def test_backend_error_not_tracked(self, flaky_facade, tracker):
        facade, _ = flaky_facade(failures=10)
        facade.tracker = tracker

        facade.get_character(1)

        assert tracker.recent("character", 10) == []

    def test_corrupt_redis_value_becomes_result(self, domain_config, clock):
        """Undecodable stored data yields a typed result, not an exception."""
        client = MagicMock()
        client.get.side_effect = lambda key: "{trunc" if "esi:character" in key else None
        adapter = StoreAdapter(RedisBackend(client=client))
        versioning = Versioning(adapter, domain_config, clock=clock)
        versioning.start()
        facade = CacheFacade(adapter, domain_config, versioning, retry_min_wait=0, retry_max_wait=0)

        result = facade.get_character(1)

        assert result.error is ErrorCode.BACKEND_ERROR
        assert "undecodable" in result.detail
