"""
Relay Cache - caching core for a game-event notification relay

Versioned, TTL-aware caching of character, corporation, alliance, system,
type and killmail data, with deployment-safe schema versioning, background
warming and performance monitoring.

Usage as library:
    from relay_cache.cache.runtime import CacheRuntime

    runtime = CacheRuntime.build(enrichment=registry)
    await runtime.start()
    result = runtime.facade.get_character(95465499)

Usage as CLI:
    python -m relay_cache status
    python -m relay_cache deploy 1.3.0 --strategy gradual
    python -m relay_cache ttl killmail

Package structure:
    relay_cache/
    ├── core/           # Settings, logging, retry, detached tasks
    ├── cache/          # Store adapter, facade, versioning, warmer, monitor
    └── commands/       # CLI command implementations
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
