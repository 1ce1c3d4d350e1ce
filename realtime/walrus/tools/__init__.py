"""
CLI tools for walrus administration.

This module provides command-line tools for:
- evaluate: Dry-run visibility evaluation of change events
- validate: Filter validation against live grants and column types
- subscriptions: Subscription listing

Invariants:
    - Tools never publish to the change stream
"""

from .walrus_cli import WalrusCLI

__all__ = ["WalrusCLI"]
