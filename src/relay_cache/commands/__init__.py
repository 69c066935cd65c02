"""
Relay Cache Commands

Operator command implementations for the CLI.
"""

from . import cache

__all__ = ["cache"]
