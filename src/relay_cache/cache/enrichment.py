"""
Enrichment collaborator interface.

The warmer fetches missing entities through an ``EnrichmentService``: one
fetch per supported entity type, returning ``FetchOutcome(ok, data, error)``.
API clients live outside this package; ``FetcherRegistry`` adapts plain
per-type callables (sync or async) to the protocol.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union, runtime_checkable

from ..core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one enrichment fetch."""

    ok: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, data: Any) -> FetchOutcome:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> FetchOutcome:
        return cls(ok=False, error=error)


@runtime_checkable
class EnrichmentService(Protocol):
    """Fetches entities that are missing from the cache."""

    @abstractmethod
    def supported_types(self) -> frozenset[str]:
        """Entity types this service can fetch."""
        ...

    @abstractmethod
    async def fetch(self, entity_type: str, entity_id: Any) -> FetchOutcome:
        """
        Fetch one entity.

        Returns:
            FetchOutcome with ``data`` on success or ``error`` as the
            upstream failure reason
        """
        ...


Fetcher = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass
class FetcherRegistry:
    """
    ``EnrichmentService`` over per-type fetch callables.

    A fetcher returns the entity data, or a ``FetchOutcome`` for full control.
    Returning ``None`` is reported as ``not_found``; an exception is reported
    with its message. Sync fetchers run in a worker thread.

    Usage:
        registry = FetcherRegistry()
        registry.register("character", esi_client.get_character)
    """

    _fetchers: dict[str, Fetcher] = field(default_factory=dict, repr=False)

    def register(self, entity_type: str, fetcher: Fetcher) -> None:
        self._fetchers[entity_type] = fetcher

    def unregister(self, entity_type: str) -> None:
        self._fetchers.pop(entity_type, None)

    def supported_types(self) -> frozenset[str]:
        return frozenset(self._fetchers)

    async def fetch(self, entity_type: str, entity_id: Any) -> FetchOutcome:
        fetcher = self._fetchers.get(entity_type)
        if fetcher is None:
            return FetchOutcome.failure(f"unsupported entity type: {entity_type}")

        try:
            if inspect.iscoroutinefunction(fetcher):
                result = await fetcher(entity_id)
            else:
                result = await asyncio.to_thread(fetcher, entity_id)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            logger.debug("Fetcher for %s failed on %s: %s", entity_type, entity_id, e)
            return FetchOutcome.failure(str(e) or type(e).__name__)

        if isinstance(result, FetchOutcome):
            return result
        if result is None:
            return FetchOutcome.failure("not_found")
        return FetchOutcome.success(result)
