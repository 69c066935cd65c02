"""
Tests for cache versioning: version parsing, history, hooks,
invalidation and migration.
"""

from __future__ import annotations

import math

import pytest

from relay_cache.cache.errors import ErrorCode, InvalidKeyError, InvalidVersionError
from relay_cache.cache.store import MISS
from relay_cache.cache.versioning import (
    VERSION_HISTORY_KEY,
    Versioning,
    VersionStatus,
    compare_versions,
    compatible_versions,
    is_valid_version,
    parse_version,
)

CACHE = "relay_cache"


class TestVersionParsing:
    """Pure version helpers."""

    def test_parse(self):
        assert parse_version("1.10.3") == (1, 10, 3)

    @pytest.mark.parametrize("value", ["1.0", "1.0.0.0", "v1.0.0", "1.a.0", "", None, 100])
    def test_parse_invalid(self, value):
        with pytest.raises(InvalidVersionError):
            parse_version(value)
        assert is_valid_version(value) is False

    def test_compare_numeric_not_lexicographic(self):
        assert compare_versions("1.2.0", "1.10.0") == "lt"
        assert compare_versions("1.10.0", "1.2.0") == "gt"
        assert compare_versions("2.0.0", "2.0.0") == "eq"

    def test_compare_invalid_sorts_low(self):
        assert compare_versions("garbage", "0.0.1") == "lt"
        assert compare_versions("0.0.1", "garbage") == "gt"
        assert compare_versions("bad", "worse") == "eq"

    def test_compatible_same_major(self):
        assert compatible_versions("1.0.0", "1.9.3") is True
        assert compatible_versions("1.0.0", "2.0.0") is False
        assert compatible_versions("1.0.0", "nope") is False


class TestVersionedKeys:
    def test_round_trip(self, versioning):
        key = versioning.versioned_key("esi:character:123")

        assert key == "esi:character:123:v1.0.0"
        assert Versioning.extract_version(key) == ("esi:character:123", "1.0.0")

    def test_explicit_version(self, versioning):
        assert versioning.versioned_key("map:systems", "2.1.0") == "map:systems:v2.1.0"

    @pytest.mark.parametrize("key", ["esi:character:123", ":v1.0.0", "a:b:vX.Y.Z", None])
    def test_extract_without_version(self, key):
        with pytest.raises(InvalidKeyError):
            Versioning.extract_version(key)


class TestVersionLifecycle:
    """Test set_version and the persisted history."""

    def test_rejects_invalid_configured_version(self, adapter, domain_config):
        with pytest.raises(InvalidVersionError):
            Versioning(adapter, domain_config, configured_version="latest")

    def test_start_activates_configured(self, versioning):
        history = versioning.get_version_history()

        assert versioning.current_version() == "1.0.0"
        assert [r.version for r in history] == ["1.0.0"]
        assert history[0].status is VersionStatus.ACTIVE

    def test_set_version(self, versioning):
        result = versioning.set_version("1.1.0")

        assert result.ok
        assert result.value == "1.1.0"
        assert versioning.current_version() == "1.1.0"

        history = versioning.get_version_history()
        assert [(r.version, r.status) for r in history] == [
            ("1.1.0", VersionStatus.ACTIVE),
            ("1.0.0", VersionStatus.DEPRECATED),
        ]

    def test_exactly_one_active(self, versioning):
        for version in ("1.1.0", "1.2.0", "1.1.0"):
            versioning.set_version(version)

        history = versioning.get_version_history()
        assert sum(r.status is VersionStatus.ACTIVE for r in history) == 1
        assert history[0].version == "1.1.0"
        assert len(history) == 3

    def test_set_invalid_version(self, versioning):
        result = versioning.set_version("1.1")

        assert not result.ok
        assert result.error is ErrorCode.INVALID_VERSION
        assert versioning.current_version() == "1.0.0"

    def test_history_persisted(self, adapter, domain_config, versioning, clock):
        """A fresh instance over the same store sees the prior history."""
        versioning.set_version("1.1.0")

        stored = adapter.get(CACHE, VERSION_HISTORY_KEY)
        assert stored is not MISS
        assert stored[0]["version"] == "1.1.0"

        restarted = Versioning(adapter, domain_config, configured_version="1.1.0", clock=clock)
        restarted.start()
        assert [r.version for r in restarted.get_version_history()] == ["1.1.0", "1.0.0"]

    def test_restart_keeps_active_record(self, adapter, domain_config, versioning, clock):
        """The persisted active version wins over the configured one."""
        versioning.set_version("1.1.0")

        restarted = Versioning(adapter, domain_config, configured_version="1.0.0", clock=clock)
        restarted.start()

        assert restarted.current_version() == "1.1.0"
        assert [(r.version, r.status) for r in restarted.get_version_history()] == [
            ("1.1.0", VersionStatus.ACTIVE),
            ("1.0.0", VersionStatus.DEPRECATED),
        ]

    def test_history_copies(self, versioning):
        versioning.get_version_history()[0].status = VersionStatus.INVALIDATED
        assert versioning.get_version_history()[0].status is VersionStatus.ACTIVE

    def test_prune_history(self, versioning):
        for version in ("1.1.0", "1.2.0", "1.3.0"):
            versioning.set_version(version)

        dropped = versioning.prune_history(2)

        assert [r.version for r in dropped] == ["1.1.0", "1.0.0"]
        assert len(versioning.get_version_history()) == 2

    def test_stats(self, versioning):
        versioning.set_version("1.1.0")
        stats = versioning.get_version_stats()

        assert stats["version_changes"] == 1
        assert stats["current_version"] == "1.1.0"
        assert stats["version_count"] == 2


class TestDeploymentHooks:
    """Hooks run detached and never block a version change."""

    def test_hook_receives_versions(self, versioning):
        calls = []
        versioning.register_hook("record", lambda old, new: calls.append((old, new)))

        versioning.set_version("1.1.0")
        versioning.join_hooks(timeout=2)

        assert calls == [("1.0.0", "1.1.0")]

    def test_raising_hook_does_not_fail_change(self, versioning):
        calls = []

        def broken(old, new):
            raise RuntimeError("hook exploded")

        versioning.register_hook("broken", broken)
        versioning.register_hook("after", lambda old, new: calls.append(new))

        result = versioning.set_version("2.0.0")
        versioning.join_hooks(timeout=2)

        assert result.ok
        assert versioning.current_version() == "2.0.0"
        assert calls == ["2.0.0"]
        assert versioning.get_version_stats()["hook_failures"] == 1

    @pytest.mark.asyncio
    async def test_async_hook_in_loop(self, versioning):
        calls = []

        async def hook(old, new):
            calls.append(new)

        versioning.register_hook("async", hook)
        versioning.set_version("1.2.0")
        await versioning.wait_for_hooks(timeout=2)

        assert calls == ["1.2.0"]

    def test_register_and_unregister(self, versioning):
        versioning.register_hook("a", lambda old, new: None)

        assert versioning.list_hooks() == ["a"]
        assert versioning.unregister_hook("a") is True
        assert versioning.unregister_hook("a") is False


class TestInvalidation:
    """Test removal of entries from superseded versions."""

    def _seed(self, adapter):
        adapter.set(CACHE, "esi:character:1:v1.0.0", "old", 600)
        adapter.set(CACHE, "esi:character:2:v1.0.0", "old", 600)
        adapter.set(CACHE, "esi:character:1:v1.1.0", "new", 600)

    def test_invalidate_old_versions(self, adapter, versioning):
        self._seed(adapter)
        versioning.set_version("1.1.0")

        result = versioning.invalidate_old_versions()

        assert result.ok
        assert result.value == 2
        assert adapter.get(CACHE, "esi:character:1:v1.1.0") == "new"
        assert adapter.get(CACHE, "esi:character:1:v1.0.0") is MISS
        statuses = {r.version: r.status for r in versioning.get_version_history()}
        assert statuses["1.0.0"] is VersionStatus.INVALIDATED

    def test_history_key_survives(self, adapter, versioning):
        self._seed(adapter)
        versioning.set_version("1.1.0")
        versioning.invalidate_old_versions()

        assert adapter.get(CACHE, VERSION_HISTORY_KEY) is not MISS

    def test_invalidate_version(self, adapter, versioning):
        self._seed(adapter)
        versioning.set_version("1.1.0")

        result = versioning.invalidate_version("1.0.0")

        assert result.value == 2
        assert versioning.get_version_stats()["invalidations"] == 2

    def test_cannot_invalidate_active(self, versioning):
        result = versioning.invalidate_version("1.0.0")

        assert not result.ok
        assert result.error is ErrorCode.INVALID_VERSION


class TestMigration:
    """Test copying entries between versions."""

    def test_copies_and_keeps_source(self, adapter, versioning, clock):
        adapter.set(CACHE, "esi:character:1:v1.0.0", {"name": "A"}, 100)
        clock.advance(40)

        result = versioning.migrate_version("1.0.0", "1.1.0")

        assert result.value == 1
        assert adapter.get(CACHE, "esi:character:1:v1.1.0") == {"name": "A"}
        assert adapter.get(CACHE, "esi:character:1:v1.0.0") == {"name": "A"}
        assert adapter.ttl(CACHE, "esi:character:1:v1.1.0") == pytest.approx(60)

    def test_persistent_entries_stay_persistent(self, adapter, versioning):
        adapter.put(CACHE, "config:settings:v1.0.0", {"a": 1})

        versioning.migrate_version("1.0.0", "1.1.0")

        assert adapter.ttl(CACHE, "config:settings:v1.1.0") is None

    def test_existing_target_not_overwritten(self, adapter, versioning):
        adapter.set(CACHE, "esi:character:1:v1.0.0", "old", 600)
        adapter.set(CACHE, "esi:character:1:v1.1.0", "newer", 600)

        result = versioning.migrate_version("1.0.0", "1.1.0")

        assert result.value == 0
        assert adapter.get(CACHE, "esi:character:1:v1.1.0") == "newer"

    def test_key_patterns(self, adapter, versioning):
        adapter.set(CACHE, "esi:character:1:v1.0.0", 1, 600)
        adapter.set(CACHE, "map:system:2:v1.0.0", 2, 600)

        result = versioning.migrate_version("1.0.0", "1.1.0", key_patterns=["map:*"])

        assert result.value == 1
        assert adapter.get(CACHE, "esi:character:1:v1.1.0") is MISS

    def test_invalid_versions(self, versioning):
        result = versioning.migrate_version("1.0", "1.1.0")
        assert result.error is ErrorCode.INVALID_VERSION

    def test_infinite_ttl_entry(self, adapter, versioning):
        adapter.set(CACHE, "data:static:v1.0.0", "x", math.inf)
        versioning.migrate_version("1.0.0", "2.0.0")
        assert adapter.get(CACHE, "data:static:v2.0.0") == "x"
