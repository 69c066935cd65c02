"""
Tests for the cache runtime composition root.
"""

from __future__ import annotations

import pytest

from relay_cache.cache.errors import ConfigurationError, ErrorCode
from relay_cache.cache.runtime import CacheRuntime
from relay_cache.cache.store import MemoryBackend
from relay_cache.core.config import RelaySettings
from relay_cache.core.logging import get_logger


@pytest.fixture
def runtime(enrichment, clock) -> CacheRuntime:
    settings = RelaySettings(monitor_interval=3600, warmer_interval=3600)
    return CacheRuntime.build(settings, enrichment=enrichment, clock=clock, timer=clock)


class TestBuild:
    def test_components_share_state(self, runtime):
        assert runtime.facade.versioning is runtime.versioning
        assert runtime.warmer.facade is runtime.facade
        assert runtime.strategies.tracker is runtime.facade.tracker
        assert runtime.version_manager.warmer is runtime.warmer

    def test_unknown_backend_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            CacheRuntime.build(RelaySettings(cache_backend="memcached"))
        assert exc_info.value.code is ErrorCode.UNKNOWN_ADAPTER

    def test_injected_backend(self, clock):
        backend = MemoryBackend(max_entries=10, timer=clock)
        runtime = CacheRuntime.build(RelaySettings(), backend=backend)
        assert runtime.adapter.backend is backend

    def test_evictions_reach_metrics(self, clock):
        backend = MemoryBackend(max_entries=1, timer=clock)
        runtime = CacheRuntime.build(RelaySettings(), backend=backend)
        runtime.initialize()

        runtime.facade.put_character(1, {})
        runtime.facade.put_character(2, {})

        assert runtime.metrics.get_metrics()["evictions"] >= 1

    def test_config_file_sections(self, tmp_path):
        path = tmp_path / "cache.yaml"
        path.write_text("monitor:\n  hit_ratio_threshold: 0.5\nwarmer:\n  max_concurrent_jobs: 2\n")

        runtime = CacheRuntime.build(RelaySettings(cache_config_file=path))

        assert runtime.monitor.config.hit_ratio_threshold == 0.5
        assert runtime.warmer.config.max_concurrent_jobs == 2

    def test_binds_log_context(self, runtime, capsys):
        """Log lines carry the cache name and the live version."""
        runtime.initialize()
        runtime.versioning.set_version("1.1.0")

        get_logger("relay_cache.tests.runtime_context").warning("after deploy")

        assert "[relay_cache@1.1.0] after deploy" in capsys.readouterr().err

    def test_test_environment_isolated(self):
        runtime = CacheRuntime.build(RelaySettings(environment="test"))
        assert runtime.facade.cache_name == "relay_cache_test"


class TestLifecycle:
    def test_initialize(self, runtime):
        runtime.initialize()

        assert runtime.versioning.is_started
        assert len(runtime.versioning.list_hooks()) == 3
        assert runtime.started is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, runtime):
        await runtime.start()

        assert runtime.started
        assert runtime.monitor.is_running
        assert runtime.warmer.is_running

        await runtime.stop()

        assert not runtime.started
        assert not runtime.monitor.is_running
        assert not runtime.warmer.is_running

    @pytest.mark.asyncio
    async def test_monitor_disabled(self, enrichment, clock):
        settings = RelaySettings(monitor_enabled=False)
        runtime = CacheRuntime.build(settings, enrichment=enrichment, clock=clock)

        async with runtime:
            assert not runtime.monitor.is_running
            assert runtime.warmer.is_running

    @pytest.mark.asyncio
    async def test_end_to_end_warming(self, runtime, enrichment):
        enrichment.data[("character", 95465499)] = {"name": "Pilot"}

        async with runtime:
            runtime.warmer.warm_character(95465499)
            await runtime.warmer.wait_idle(timeout=2)

            assert runtime.facade.get_character(95465499).value == {"name": "Pilot"}

    def test_status(self, runtime):
        runtime.initialize()
        status = runtime.get_status()

        assert status["started"] is False
        assert status["cache"]["adapter"] == "memory"
        assert status["deployment"]["current_version"] == "1.0.0"
        assert status["ttls"]["system"] == 3600.0
        assert status["monitor"]["status"] == "unknown"
