"""
Relay Cache.

Versioned caching core: store adapter, domain facade, versioning and
deployment management, metrics, performance monitoring and warming.
"""

from __future__ import annotations

from .errors import CacheError, CacheResult, ConfigurationError, ErrorCode

__all__ = [
    # Errors and results
    "CacheError",
    "CacheResult",
    "ConfigurationError",
    "ErrorCode",
    # Components
    "CacheFacade",
    "CacheMetrics",
    "CacheRuntime",
    "CacheWarmer",
    "DomainConfig",
    "PerformanceMonitor",
    "StoreAdapter",
    "VersionManager",
    "Versioning",
]

_LAZY_IMPORTS = {
    "CacheFacade": ".facade",
    "CacheMetrics": ".metrics",
    "CacheRuntime": ".runtime",
    "CacheWarmer": ".warmer",
    "DomainConfig": ".domain_config",
    "PerformanceMonitor": ".performance_monitor",
    "StoreAdapter": ".store",
    "VersionManager": ".version_manager",
    "Versioning": ".versioning",
}


def __getattr__(name: str):
    """Lazy import components to avoid circular imports."""
    module_name = _LAZY_IMPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    import importlib

    module = importlib.import_module(module_name, __name__)
    return getattr(module, name)
