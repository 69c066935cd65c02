"""
Relay Cache Test Suite - Shared Fixtures and Configuration

Provides a controllable clock, pre-wired cache components and a stub
enrichment service. Settings and logging state are reset around every test.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest

from relay_cache.cache.domain_config import DomainConfig
from relay_cache.cache.enrichment import FetchOutcome
from relay_cache.cache.facade import CacheFacade
from relay_cache.cache.metrics import CacheMetrics
from relay_cache.cache.store import MemoryBackend, StoreAdapter
from relay_cache.cache.tracker import ActivityTracker
from relay_cache.cache.versioning import Versioning
from relay_cache.core.config import reset_settings
from relay_cache.core.logging import reset_logging

CACHE_NAME = "relay_cache"


class FakeClock:
    """Manually advanced clock usable as both timer and wall clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubEnrichment:
    """
    EnrichmentService double.

    ``data`` maps (entity_type, entity_id) to the fetched value; missing
    entries fetch as ``not_found``. ``hang`` makes every fetch block forever.
    """

    def __init__(self, types: frozenset[str] | None = None) -> None:
        self.types = types or frozenset({"character", "corporation", "alliance", "system", "type"})
        self.data: dict[tuple[str, Any], Any] = {}
        self.calls: list[tuple[str, Any]] = []
        self.hang = False
        self.delay = 0.0

    def supported_types(self) -> frozenset[str]:
        return self.types

    async def fetch(self, entity_type: str, entity_id: Any) -> FetchOutcome:
        self.calls.append((entity_type, entity_id))
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.data.get((entity_type, entity_id))
        if value is None:
            return FetchOutcome.failure("not_found")
        return FetchOutcome.success(value)


# =============================================================================
# State Reset
# =============================================================================


@pytest.fixture(autouse=True)
def reset_all_singletons(monkeypatch):
    """
    Reset settings and logging between tests.

    RELAY_* variables from the developer's shell are removed so every test
    starts from defaults.
    """
    for name in list(os.environ):
        if name.startswith("RELAY_"):
            monkeypatch.delenv(name, raising=False)
    reset_settings()
    reset_logging()
    yield
    reset_settings()
    reset_logging()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock) -> MemoryBackend:
    return MemoryBackend(max_entries=1000, timer=clock)


@pytest.fixture
def adapter(backend) -> StoreAdapter:
    return StoreAdapter(backend)


@pytest.fixture
def domain_config() -> DomainConfig:
    return DomainConfig(name=CACHE_NAME)


@pytest.fixture
def versioning(adapter, domain_config, clock) -> Versioning:
    versioning = Versioning(adapter, domain_config, configured_version="1.0.0", clock=clock)
    versioning.start()
    return versioning


@pytest.fixture
def metrics(adapter) -> CacheMetrics:
    return CacheMetrics(stats_provider=lambda: adapter.stats(CACHE_NAME))


@pytest.fixture
def tracker(clock) -> ActivityTracker:
    return ActivityTracker(clock=clock)


@pytest.fixture
def facade(adapter, domain_config, versioning, metrics, tracker) -> CacheFacade:
    return CacheFacade(
        adapter,
        domain_config,
        versioning,
        metrics=metrics,
        tracker=tracker,
        retry_attempts=3,
        retry_min_wait=0,
        retry_max_wait=0,
    )


@pytest.fixture
def enrichment() -> StubEnrichment:
    return StubEnrichment()
