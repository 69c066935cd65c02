"""
Domain Config

Resolves the active cache instance name and the TTL policy per data domain.

TTL resolution order:
1. Explicit per-call override
2. Domain table (defaults, then YAML ``ttls:`` section, then RELAY_CACHE_TTLS)
3. ``DEFAULT_TTL``

A TTL of ``float("inf")`` means "no expiry".
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import yaml

from ..core.config import parse_ttl_value
from ..core.logging import get_logger
from .errors import ConfigurationError

if TYPE_CHECKING:
    from ..core.config import RelaySettings

logger = get_logger(__name__)

INFINITY = float("inf")

# Global fallback for domains missing from the table
DEFAULT_TTL = 3600.0

DEFAULT_DOMAIN_TTLS: dict[str, float] = {
    "character": 86400.0,
    "corporation": 86400.0,
    "alliance": 86400.0,
    "type": 86400.0,
    "system": 3600.0,
    "killmail": 3600.0,
    "map_data": 3600.0,
    "static": INFINITY,
}

TEST_SUFFIX = "_test"

CONFIG_FILE_SECTIONS = ("ttls", "monitor", "warmer")


def load_config_file(path: Path) -> dict[str, dict[str, Any]]:
    """
    Load the optional cache YAML file.

    Expected layout::

        ttls:
          killmail: 7200
          static: infinity
        monitor:
          hit_ratio_threshold: 0.85
        warmer:
          max_concurrent_jobs: 5

    Raises:
        ConfigurationError: If the file is missing, unreadable or malformed
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Cache config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in cache config {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Cache config {path} must be a YAML mapping")

    sections: dict[str, dict[str, Any]] = {}
    for section in CONFIG_FILE_SECTIONS:
        value = data.get(section) or {}
        if not isinstance(value, dict):
            raise ConfigurationError(f"Section '{section}' in {path} must be a mapping")
        sections[section] = value

    unknown = set(data) - set(CONFIG_FILE_SECTIONS)
    if unknown:
        logger.warning("Ignoring unknown cache config sections: %s", ", ".join(sorted(unknown)))

    return sections


def _normalize_ttls(raw: dict[str, Any], source: str) -> dict[str, float]:
    ttls: dict[str, float] = {}
    for domain, value in raw.items():
        try:
            ttls[str(domain).lower()] = parse_ttl_value(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid TTL for '{domain}' in {source}: {e}") from e
    return ttls


class DomainConfig:
    """
    Cache naming and per-domain TTL policy.

    Args:
        name: Configured cache instance name
        isolated: When True (test environment), ``cache_name()`` returns a
            distinct ``<name>_test`` instance
        ttl_overrides: Domain -> seconds, layered over the defaults
        file_sections: Parsed YAML sections (``monitor``/``warmer`` are
            consumed by other components)
    """

    def __init__(
        self,
        name: str = "relay_cache",
        isolated: bool = False,
        ttl_overrides: Optional[dict[str, Any]] = None,
        file_sections: Optional[dict[str, dict[str, Any]]] = None,
    ) -> None:
        self.name = name
        self.isolated = isolated
        self.file_sections = file_sections or {}
        self._ttls: dict[str, float] = dict(DEFAULT_DOMAIN_TTLS)
        self._ttls.update(_normalize_ttls(self.file_sections.get("ttls", {}), "config file"))
        self._ttls.update(_normalize_ttls(ttl_overrides or {}, "overrides"))

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> DomainConfig:
        """
        Build from settings, loading ``cache_config_file`` if configured.

        Raises:
            ConfigurationError: On an unreadable config file or bad TTL
        """
        sections: dict[str, dict[str, Any]] = {}
        if settings.cache_config_file is not None:
            sections = load_config_file(settings.cache_config_file)
        return cls(
            name=settings.cache_name,
            isolated=settings.is_test,
            ttl_overrides=settings.cache_ttls,
            file_sections=sections,
        )

    def cache_name(self, isolated: Optional[bool] = None) -> str:
        """
        Active cache instance name.

        Args:
            isolated: Force (True) or suppress (False) test isolation;
                ``None`` follows the configured environment
        """
        use_isolated = self.isolated if isolated is None else isolated
        if use_isolated and not self.name.endswith(TEST_SUFFIX):
            return f"{self.name}{TEST_SUFFIX}"
        return self.name

    def ttl_for(self, domain: str, override: Optional[float] = None) -> float:
        """
        TTL in seconds for a domain (``inf`` for no expiry).

        Raises:
            ValueError: If ``override`` is negative or not a TTL
        """
        if override is not None:
            return parse_ttl_value(override)
        return self._ttls.get(str(domain).lower(), DEFAULT_TTL)

    def set_ttl(self, domain: str, ttl: Any) -> None:
        """Override a domain TTL at runtime."""
        self._ttls[str(domain).lower()] = parse_ttl_value(ttl)

    def ttl_table(self) -> dict[str, float]:
        return dict(self._ttls)

    def section(self, name: str) -> dict[str, Any]:
        return dict(self.file_sections.get(name, {}))
