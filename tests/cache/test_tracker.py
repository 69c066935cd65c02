"""
Tests for entity activity tracking.
"""

from __future__ import annotations

from relay_cache.cache.tracker import ActivityTracker


class TestActivityTracker:
    def test_recent_order(self, tracker):
        for entity_id in (1, 2, 3):
            tracker.record("character", entity_id)
        tracker.record("character", 1)

        assert tracker.recent("character", 10) == [1, 3, 2]
        assert tracker.recent("character", 2) == [1, 3]

    def test_frequent_order(self, tracker, clock):
        for entity_id in (1, 2, 2, 3, 3, 3):
            tracker.record("system", entity_id)
            clock.advance(1)

        assert tracker.frequent("system", 2) == [3, 2]

    def test_frequent_ties_most_recent_first(self, tracker, clock):
        tracker.record("system", 1)
        clock.advance(1)
        tracker.record("system", 2)

        assert tracker.frequent("system", 2) == [2, 1]

    def test_bounded_per_type(self, clock):
        """The least recently seen id is dropped first."""
        tracker = ActivityTracker(max_entries_per_type=2, clock=clock)
        tracker.record("character", 1)
        tracker.record("character", 2)
        tracker.record("character", 1)
        tracker.record("character", 3)

        assert tracker.recent("character", 10) == [3, 1]

    def test_unknown_type(self, tracker):
        assert tracker.recent("alliance", 5) == []
        assert tracker.frequent("alliance", 5) == []

    def test_snapshot_and_clear(self, tracker):
        tracker.record("character", 1)
        tracker.record("system", 2)
        tracker.record("system", 3)

        assert tracker.snapshot() == {"character": 1, "system": 2}

        tracker.clear()
        assert tracker.snapshot() == {}
