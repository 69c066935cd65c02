"""
Entity activity tracking.

Records which entities the relay has recently looked up so warming
strategies can re-populate them. One tracker instance is owned by the
runtime and injected into the facade (writer) and the strategies (reader).
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class _Activity:
    count: int = 0
    last_seen: float = 0.0


@dataclass
class ActivityTracker:
    """
    Bounded per-entity-type record of recent lookups.

    Each entity type keeps at most ``max_entries_per_type`` ids; the least
    recently seen id is dropped first.
    """

    max_entries_per_type: int = 500
    clock: Callable[[], float] = time.time

    _activity: dict[str, OrderedDict[Any, _Activity]] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, entity_type: str, entity_id: Any) -> None:
        with self._lock:
            entries = self._activity.setdefault(entity_type, OrderedDict())
            activity = entries.pop(entity_id, None) or _Activity()
            activity.count += 1
            activity.last_seen = self.clock()
            entries[entity_id] = activity
            while len(entries) > self.max_entries_per_type:
                entries.popitem(last=False)

    def recent(self, entity_type: str, limit: int) -> list[Any]:
        """Most recently seen ids first."""
        with self._lock:
            entries = self._activity.get(entity_type, OrderedDict())
            return list(reversed(entries))[:limit]

    def frequent(self, entity_type: str, limit: int) -> list[Any]:
        """Most frequently seen ids first (ties: most recent first)."""
        with self._lock:
            entries = self._activity.get(entity_type, OrderedDict())
            ranked = sorted(
                entries.items(),
                key=lambda item: (item[1].count, item[1].last_seen),
                reverse=True,
            )
            return [entity_id for entity_id, _ in ranked[:limit]]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {entity_type: len(entries) for entity_type, entries in self._activity.items()}

    def clear(self) -> None:
        with self._lock:
            self._activity.clear()
