"""
Warming Strategies

Named, pluggable functions that expand into ``(entity_type, entity_id)``
pairs for the warmer. Startup strategies run once when the warmer starts
(and on ``force_startup_warming``); periodic strategies run every warming
cycle.

Built-in strategies read recent lookups from the ``ActivityTracker`` and
static priorities from configuration:

- ``critical_startup``: configured ``type:id`` critical entities
- ``priority_systems``: configured priority systems, then recent systems
- ``recent_characters``: most recently looked-up characters
- ``active_corporations``: most frequently looked-up corporations
- ``frequent_alliances``: most frequently looked-up alliances
- ``recent_systems``: most recently looked-up systems
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.logging import get_logger
from .errors import CacheResult, ErrorCode
from .tracker import ActivityTracker

logger = get_logger(__name__)

WarmingItem = tuple[str, Any]
StrategyFn = Callable[[], Iterable[WarmingItem]]

# Per-strategy item limits
RECENT_CHARACTER_LIMIT = 50
PRIORITY_SYSTEM_LIMIT = 100
ACTIVE_CORPORATION_LIMIT = 25
FREQUENT_ALLIANCE_LIMIT = 10
RECENT_SYSTEM_LIMIT = 200
CRITICAL_STARTUP_LIMIT = 20


@dataclass
class StrategyInfo:
    """Registered strategy and its metadata."""

    name: str
    fn: StrategyFn
    description: str = ""
    limit: Optional[int] = None
    startup: bool = False
    periodic: bool = False


def parse_entity_ref(ref: str) -> WarmingItem:
    """
    Parse a ``type:id`` reference (e.g. ``"system:30000142"``).

    Raises:
        ValueError: If the reference has no type or id
    """
    entity_type, sep, entity_id = ref.partition(":")
    if not sep or not entity_type.strip() or not entity_id.strip():
        raise ValueError(f"Invalid entity reference {ref!r}; expected 'type:id'")
    entity_id = entity_id.strip()
    return entity_type.strip().lower(), int(entity_id) if entity_id.isdigit() else entity_id


def _unique(items: Iterable[WarmingItem], limit: Optional[int]) -> list[WarmingItem]:
    seen: set[WarmingItem] = set()
    result: list[WarmingItem] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
        if limit is not None and len(result) >= limit:
            break
    return result


@dataclass
class WarmingStrategies:
    """
    Strategy registry.

    Args:
        tracker: Activity tracker read by the built-in strategies
        priority_systems: System IDs always warmed by ``priority_systems``
        critical_entities: ``type:id`` references warmed first at startup
        register_builtins: Register the built-in strategies
    """

    tracker: ActivityTracker = field(default_factory=ActivityTracker)
    priority_systems: list[int] = field(default_factory=list)
    critical_entities: list[str] = field(default_factory=list)
    register_builtins: bool = True

    _strategies: dict[str, StrategyInfo] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if self.register_builtins:
            self._register_builtins()

    def register(
        self,
        name: str,
        fn: StrategyFn,
        *,
        description: str = "",
        limit: Optional[int] = None,
        startup: bool = False,
        periodic: bool = False,
    ) -> None:
        """Register (or replace) a strategy."""
        self._strategies[name] = StrategyInfo(name, fn, description, limit, startup, periodic)

    def unregister(self, name: str) -> bool:
        return self._strategies.pop(name, None) is not None

    def names(self) -> list[str]:
        return list(self._strategies)

    def startup_strategies(self) -> list[str]:
        return [s.name for s in self._strategies.values() if s.startup]

    def periodic_strategies(self) -> list[str]:
        return [s.name for s in self._strategies.values() if s.periodic]

    def get_strategy_config(self, name: str) -> dict[str, Any]:
        info = self._strategies.get(name)
        if info is None:
            return {
                "description": "Unknown strategy",
                "limit": 0,
                "startup": False,
                "periodic": False,
            }
        return {
            "description": info.description,
            "limit": info.limit,
            "startup": info.startup,
            "periodic": info.periodic,
        }

    def execute(self, name: str) -> CacheResult:
        """
        Expand a strategy into warming items.

        Returns:
            success(list of (entity_type, entity_id)), failure(unknown_strategy),
            or failure(fetch_failed) if the strategy raised
        """
        info = self._strategies.get(name)
        if info is None:
            return CacheResult.failure(ErrorCode.UNKNOWN_STRATEGY, f"Unknown strategy: {name}")

        try:
            items = _unique(info.fn(), info.limit)
        except Exception as e:
            logger.error("Warming strategy %s failed: %s", name, e)
            return CacheResult.failure(ErrorCode.FETCH_FAILED, str(e))

        logger.debug("Strategy %s produced %d items", name, len(items))
        return CacheResult.success(items)

    # -------------------------------------------------------------------------
    # Built-in strategies
    # -------------------------------------------------------------------------

    def _register_builtins(self) -> None:
        self.register(
            "critical_startup",
            self._critical_startup,
            description="Warm critical startup data",
            limit=CRITICAL_STARTUP_LIMIT,
            startup=True,
        )
        self.register(
            "priority_systems",
            self._priority_systems,
            description="Warm priority systems",
            limit=PRIORITY_SYSTEM_LIMIT,
            startup=True,
        )
        self.register(
            "recent_characters",
            self._recent_characters,
            description="Warm recently active characters",
            limit=RECENT_CHARACTER_LIMIT,
            startup=True,
            periodic=True,
        )
        self.register(
            "active_corporations",
            self._active_corporations,
            description="Warm active corporations",
            limit=ACTIVE_CORPORATION_LIMIT,
            startup=True,
        )
        self.register(
            "frequent_alliances",
            self._frequent_alliances,
            description="Warm frequently accessed alliances",
            limit=FREQUENT_ALLIANCE_LIMIT,
            periodic=True,
        )
        self.register(
            "recent_systems",
            self._recent_systems,
            description="Warm recently viewed systems",
            limit=RECENT_SYSTEM_LIMIT,
            periodic=True,
        )

    def _critical_startup(self) -> list[WarmingItem]:
        return [parse_entity_ref(ref) for ref in self.critical_entities]

    def _priority_systems(self) -> list[WarmingItem]:
        systems = list(self.priority_systems)
        systems += self.tracker.recent("system", PRIORITY_SYSTEM_LIMIT)
        return [("system", system_id) for system_id in systems]

    def _recent_characters(self) -> list[WarmingItem]:
        return [("character", c) for c in self.tracker.recent("character", RECENT_CHARACTER_LIMIT)]

    def _active_corporations(self) -> list[WarmingItem]:
        corporations = self.tracker.frequent("corporation", ACTIVE_CORPORATION_LIMIT)
        return [("corporation", c) for c in corporations]

    def _frequent_alliances(self) -> list[WarmingItem]:
        return [("alliance", a) for a in self.tracker.frequent("alliance", FREQUENT_ALLIANCE_LIMIT)]

    def _recent_systems(self) -> list[WarmingItem]:
        return [("system", s) for s in self.tracker.recent("system", RECENT_SYSTEM_LIMIT)]
