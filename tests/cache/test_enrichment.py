"""
Tests for the enrichment collaborator adapters.
"""

from __future__ import annotations

import pytest

from relay_cache.cache.enrichment import EnrichmentService, FetcherRegistry, FetchOutcome


class TestFetchOutcome:
    def test_constructors(self):
        assert FetchOutcome.success({"a": 1}) == FetchOutcome(ok=True, data={"a": 1})
        assert FetchOutcome.failure("not_found").error == "not_found"


class TestFetcherRegistry:
    def test_satisfies_protocol(self, enrichment):
        assert isinstance(FetcherRegistry(), EnrichmentService)
        assert isinstance(enrichment, EnrichmentService)

    def test_supported_types(self):
        registry = FetcherRegistry()
        registry.register("character", lambda i: {"id": i})
        registry.register("system", lambda i: {"id": i})
        registry.unregister("system")

        assert registry.supported_types() == frozenset({"character"})

    @pytest.mark.asyncio
    async def test_sync_fetcher(self):
        registry = FetcherRegistry()
        registry.register("character", lambda i: {"id": i})

        outcome = await registry.fetch("character", 7)

        assert outcome.ok
        assert outcome.data == {"id": 7}

    @pytest.mark.asyncio
    async def test_async_fetcher(self):
        async def fetch(entity_id):
            return {"id": entity_id}

        registry = FetcherRegistry()
        registry.register("system", fetch)

        assert (await registry.fetch("system", 30000142)).data == {"id": 30000142}

    @pytest.mark.asyncio
    async def test_none_is_not_found(self):
        registry = FetcherRegistry()
        registry.register("alliance", lambda i: None)

        outcome = await registry.fetch("alliance", 1)

        assert not outcome.ok
        assert outcome.error == "not_found"

    @pytest.mark.asyncio
    async def test_exception_reported(self):
        def broken(entity_id):
            raise ConnectionError("ESI 502")

        registry = FetcherRegistry()
        registry.register("type", broken)

        outcome = await registry.fetch("type", 587)

        assert outcome.error == "ESI 502"

    @pytest.mark.asyncio
    async def test_fetch_outcome_passthrough(self):
        registry = FetcherRegistry()
        registry.register("character", lambda i: FetchOutcome.failure("rate_limited"))

        assert (await registry.fetch("character", 1)).error == "rate_limited"

    @pytest.mark.asyncio
    async def test_unsupported_type(self):
        outcome = await FetcherRegistry().fetch("moon", 1)
        assert "unsupported" in outcome.error
