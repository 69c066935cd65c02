"""
Relay Cache Commands

Operator commands for cache status, versions and deployments.

Each invocation builds a fresh runtime from settings, so with the
in-memory backend only ``ttl`` and ``compat`` are meaningful across runs.
Point ``RELAY_CACHE_BACKEND=redis`` at a shared Redis to inspect and
deploy a live cache.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from ..cache.domain_config import DomainConfig
from ..cache.errors import CacheResult, ConfigurationError
from ..cache.runtime import CacheRuntime
from ..cache.version_manager import DeploymentStrategy
from ..cache.versioning import compare_versions, compatible_versions
from ..core.config import get_settings
from ..core.formatters import format_epoch, format_ttl, get_utc_timestamp

HOOK_WAIT_SECONDS = 5.0


def _error(error: str, message: str, query_ts: str, **extra: Any) -> dict:
    return {"error": error, "message": message, "query_timestamp": query_ts, **extra}


def _result_error(result: CacheResult, query_ts: str) -> dict:
    code = result.error.value if result.error else "error"
    return _error(code, result.detail, query_ts)


def _with_runtime(query_ts: str, action: Callable[[CacheRuntime], Awaitable[dict]]) -> dict:
    """Build and initialize a runtime, run ``action`` on an event loop."""
    try:
        runtime = CacheRuntime.build(get_settings())
    except ConfigurationError as e:
        return _error(e.code.value, e.message, query_ts)

    async def runner() -> dict:
        runtime.initialize()
        try:
            return await action(runtime)
        finally:
            await runtime.versioning.wait_for_hooks(timeout=HOOK_WAIT_SECONDS)

    return asyncio.run(runner())


# =============================================================================
# Status Commands
# =============================================================================


def cmd_status(args: argparse.Namespace) -> dict:
    """Show cache, versioning, warmer and monitor status."""
    query_ts = get_utc_timestamp()

    async def action(runtime: CacheRuntime) -> dict:
        check = runtime.monitor.force_check()
        return {
            "query_timestamp": query_ts,
            "health": check["status"],
            **runtime.get_status(),
        }

    return _with_runtime(query_ts, action)


def cmd_versions(args: argparse.Namespace) -> dict:
    """Show the cache version history."""
    query_ts = get_utc_timestamp()

    async def action(runtime: CacheRuntime) -> dict:
        history = []
        for record in runtime.versioning.get_version_history():
            history.append(
                {
                    "version": record.version,
                    "status": record.status.value,
                    "created_at": format_epoch(record.created_at),
                    "deployed_at": format_epoch(record.deployed_at),
                    "invalidated_at": format_epoch(record.invalidated_at),
                }
            )
        return {
            "query_timestamp": query_ts,
            "current_version": runtime.versioning.current_version(),
            "history": history,
            "stats": runtime.versioning.get_version_stats(),
        }

    return _with_runtime(query_ts, action)


def cmd_ttl(args: argparse.Namespace) -> dict:
    """Show effective TTLs (all domains, or one)."""
    query_ts = get_utc_timestamp()
    try:
        domain_config = DomainConfig.from_settings(get_settings())
    except ConfigurationError as e:
        return _error(e.code.value, e.message, query_ts)

    table = domain_config.ttl_table()
    if args.domain:
        domain = args.domain.lower()
        ttl = domain_config.ttl_for(domain)
        return {
            "query_timestamp": query_ts,
            "domain": domain,
            "configured": domain in table,
            "ttl": format_ttl(ttl),
        }

    return {
        "query_timestamp": query_ts,
        "cache_name": domain_config.cache_name(),
        "ttls": {domain: format_ttl(ttl) for domain, ttl in sorted(table.items())},
    }


def cmd_compat(args: argparse.Namespace) -> dict:
    """Compare two versions."""
    query_ts = get_utc_timestamp()
    comparison = compare_versions(args.version_a, args.version_b)
    compatible = compatible_versions(args.version_a, args.version_b)
    return {
        "query_timestamp": query_ts,
        "version_a": args.version_a,
        "version_b": args.version_b,
        "comparison": comparison,
        "compatible": compatible,
        "migration_required": not compatible,
        "rollback_safe": comparison == "gt" and compatible,
    }


# =============================================================================
# Deployment Commands
# =============================================================================


def cmd_deploy(args: argparse.Namespace) -> dict:
    """Deploy a new cache version."""
    query_ts = get_utc_timestamp()

    async def action(runtime: CacheRuntime) -> dict:
        result = await runtime.version_manager.handle_deployment(args.version, args.strategy)
        if not result.ok:
            return _error(
                result.error.value if result.error else "deployment_failed",
                result.detail,
                query_ts,
                deployment=result.to_dict(),
            )
        return {"query_timestamp": query_ts, "deployment": result.to_dict()}

    return _with_runtime(query_ts, action)


def cmd_rollback(args: argparse.Namespace) -> dict:
    """Roll back to the previous cache version."""
    query_ts = get_utc_timestamp()

    async def action(runtime: CacheRuntime) -> dict:
        abandoned = runtime.versioning.current_version()
        result = runtime.version_manager.rollback()
        if not result.ok:
            return _result_error(result, query_ts)
        return {
            "query_timestamp": query_ts,
            "rolled_back_from": abandoned,
            "current_version": result.value,
        }

    return _with_runtime(query_ts, action)


def cmd_cleanup(args: argparse.Namespace) -> dict:
    """Invalidate versions older than the most recent N."""
    query_ts = get_utc_timestamp()

    if args.keep < 1:
        return _error("invalid_argument", "--keep must be at least 1", query_ts)

    async def action(runtime: CacheRuntime) -> dict:
        result = runtime.version_manager.cleanup_old_versions(args.keep)
        if not result.ok:
            return _result_error(result, query_ts)
        return {"query_timestamp": query_ts, **result.value}

    return _with_runtime(query_ts, action)


# =============================================================================
# Parser Registration
# =============================================================================


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register cache command parsers."""

    status_parser = subparsers.add_parser("status", help="Show cache runtime status")
    status_parser.set_defaults(func=cmd_status)

    versions_parser = subparsers.add_parser("versions", help="Show cache version history")
    versions_parser.set_defaults(func=cmd_versions)

    ttl_parser = subparsers.add_parser("ttl", help="Show effective domain TTLs")
    ttl_parser.add_argument("domain", nargs="?", help="Single domain to show")
    ttl_parser.set_defaults(func=cmd_ttl)

    compat_parser = subparsers.add_parser("compat", help="Compare two cache versions")
    compat_parser.add_argument("version_a", help="First version (MAJOR.MINOR.PATCH)")
    compat_parser.add_argument("version_b", help="Second version (MAJOR.MINOR.PATCH)")
    compat_parser.set_defaults(func=cmd_compat)

    deploy_parser = subparsers.add_parser("deploy", help="Deploy a new cache version")
    deploy_parser.add_argument("version", help="Version to deploy (MAJOR.MINOR.PATCH)")
    deploy_parser.add_argument(
        "--strategy",
        "-s",
        choices=[s.value for s in DeploymentStrategy],
        default=DeploymentStrategy.SAFE.value,
        help="Deployment strategy (default: safe)",
    )
    deploy_parser.set_defaults(func=cmd_deploy)

    rollback_parser = subparsers.add_parser("rollback", help="Roll back to the previous version")
    rollback_parser.set_defaults(func=cmd_rollback)

    cleanup_parser = subparsers.add_parser("cleanup", help="Invalidate old cache versions")
    cleanup_parser.add_argument(
        "--keep",
        "-k",
        type=int,
        default=3,
        help="Number of most recent versions to keep (default: 3)",
    )
    cleanup_parser.set_defaults(func=cmd_cleanup)
