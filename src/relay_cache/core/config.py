"""
Relay Cache Centralized Configuration

Provides validated, type-safe access to all environment variables using Pydantic Settings.
All environment variables are validated on first access with helpful error messages.

Usage:
    from relay_cache.core.config import get_settings

    settings = get_settings()
    if settings.cache_backend == "redis":
        ...

Environment Variables:
    RELAY_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    RELAY_DEBUG: Legacy debug flag (enables DEBUG level if set)
    RELAY_LOG_JSON: Output logs as JSON
    RELAY_ENVIRONMENT: production, development or test
    RELAY_APP_VERSION: Application / cache schema version (MAJOR.MINOR.PATCH)
    RELAY_CACHE_BACKEND: Backing cache selection (memory, redis)
    RELAY_CACHE_NAME: Cache instance name
    RELAY_CACHE_TTLS: JSON mapping of domain -> TTL seconds (or "infinity")
    RELAY_CACHE_CONFIG_FILE: Optional YAML file with ttls/monitor/warmer sections
    RELAY_REDIS_URL: Redis connection URL (redis backend only)
    RELAY_MONITOR_*: Performance monitor thresholds and interval
    RELAY_WARMER_*: Cache warmer concurrency, timeout and interval
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

INFINITY_ALIASES = {"infinity", "inf", "never", "forever"}


def _find_project_env_file() -> Path | None:
    """
    Find .env file by searching for project root markers.

    Searches upward from this file's location for pyproject.toml,
    then checks for .env in that directory.

    Returns:
        Path to .env if found, None otherwise
    """
    current = Path(__file__).resolve().parent

    for _ in range(10):  # Limit search depth
        if (current / "pyproject.toml").exists():
            env_file = current / ".env"
            if env_file.exists():
                return env_file
            return None
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


_ENV_FILE = _find_project_env_file()


def parse_ttl_value(value: Any) -> float:
    """
    Normalize a configured TTL to seconds.

    Accepts numbers, numeric strings and the infinity aliases
    ("infinity", "inf", "never", "forever").

    Raises:
        ValueError: If the value is negative or not a TTL
    """
    if isinstance(value, str):
        text = value.strip().lower()
        if text in INFINITY_ALIASES:
            return float("inf")
        value = float(text)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Invalid TTL value: {value!r}")
    if value < 0:
        raise ValueError(f"TTL must be non-negative, got {value}")
    return float(value)


class RelaySettings(BaseSettings):
    """
    Relay cache configuration settings with validation.

    Environment variables are automatically loaded with the RELAY_ prefix.
    All settings have sensible defaults and validation.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Log level for relay cache components",
    )

    debug: bool = Field(
        default=False,
        description="Legacy debug flag (enables DEBUG level if set)",
    )

    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format for machine parsing",
    )

    # =========================================================================
    # Application Identity
    # =========================================================================

    environment: Literal["production", "development", "test"] = Field(
        default="production",
        description="Runtime environment; 'test' isolates the cache instance",
    )

    app_version: str = Field(
        default="1.0.0",
        description="Application version, used as the active cache schema version",
    )

    # =========================================================================
    # Backing Store
    # =========================================================================

    cache_backend: str = Field(
        default="memory",
        description="Backing cache selection (memory, redis)",
    )

    cache_name: str = Field(
        default="relay_cache",
        description="Cache instance name",
    )

    cache_ttls: dict[str, float] = Field(
        default_factory=dict,
        description="Per-domain TTL overrides in seconds",
    )

    cache_config_file: Optional[Path] = Field(
        default=None,
        description="Optional YAML file with ttls/monitor/warmer sections",
    )

    memory_max_entries: int = Field(
        default=50_000,
        ge=1,
        description="Capacity of the in-memory backend (LRU eviction beyond it)",
    )

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the redis backend",
    )

    redis_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Socket timeout in seconds for redis operations",
    )

    # =========================================================================
    # Facade Retry (transient backend errors)
    # =========================================================================

    cache_retry_attempts: int = Field(default=3, ge=1)
    cache_retry_min_wait: float = Field(default=0.05, ge=0)
    cache_retry_max_wait: float = Field(default=1.0, ge=0)

    # =========================================================================
    # Performance Monitor
    # =========================================================================

    monitor_enabled: bool = Field(default=True)
    monitor_interval: float = Field(default=30.0, gt=0)
    monitor_hit_ratio_threshold: float = Field(default=0.90, ge=0, le=1)
    monitor_response_time_threshold: float = Field(
        default=100.0, gt=0, description="Average operation time threshold in ms"
    )
    monitor_memory_usage_threshold: float = Field(
        default=0.80, gt=0, description="Fraction of backend capacity in use"
    )
    monitor_eviction_rate_threshold: float = Field(default=0.10, gt=0)
    monitor_alert_cooldown: float = Field(default=300.0, ge=0)
    monitor_history_size: int = Field(default=10, ge=3)

    # =========================================================================
    # Cache Warmer
    # =========================================================================

    warmer_max_concurrent_jobs: int = Field(default=10, ge=1)
    warmer_timeout: float = Field(default=30.0, gt=0)
    warmer_interval: float = Field(default=300.0, gt=0)
    warmer_startup: bool = Field(default=False)
    warmer_queue_size_limit: int = Field(default=1000, ge=1)
    warmer_retry_failed_jobs: bool = Field(default=False)
    warmer_max_retries: int = Field(default=3, ge=0)
    warmer_retry_delay: float = Field(default=60.0, ge=0)
    warmer_history_limit: int = Field(default=100, ge=1)

    warm_priority_systems: list[int] = Field(
        default_factory=list,
        description="Solar system IDs always included in priority warming",
    )

    warm_critical_entities: list[str] = Field(
        default_factory=list,
        description="Entities warmed first at startup, as 'type:id' strings",
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str) -> str:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("cache_backend", "environment", mode="before")
    @classmethod
    def lowercase_choice(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("cache_ttls", mode="before")
    @classmethod
    def normalize_ttls(cls, v: Any) -> Any:
        """Accept "infinity" style aliases in TTL overrides."""
        if isinstance(v, dict):
            return {str(domain).lower(): parse_ttl_value(ttl) for domain, ttl in v.items()}
        return v

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def effective_log_level(self) -> str:
        """
        Get effective log level, respecting legacy RELAY_DEBUG.

        Priority:
        1. Explicit RELAY_LOG_LEVEL
        2. RELAY_DEBUG=1 -> DEBUG
        3. Default: WARNING
        """
        if self.debug and self.log_level == "WARNING":
            return "DEBUG"
        return self.log_level

    @property
    def log_level_int(self) -> int:
        """Get effective log level as logging constant."""
        return getattr(logging, self.effective_log_level)

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


# =============================================================================
# Singleton Accessor
# =============================================================================


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """
    Get the singleton settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    The settings are validated at first access.

    Returns:
        RelaySettings instance with validated configuration
    """
    return RelaySettings()


def reset_settings() -> None:
    """
    Reset the settings cache (for testing).

    After calling this, the next get_settings() call will
    reload settings from environment variables.
    """
    get_settings.cache_clear()


# =============================================================================
# Convenience Functions
# =============================================================================


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled."""
    return get_settings().effective_log_level == "DEBUG"


def is_json_logging() -> bool:
    """Check if JSON logging is enabled."""
    return get_settings().log_json
