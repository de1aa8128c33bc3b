"""
Storefront product monitoring service package.

This package contains modules for discovering storefront catalogs,
reconciling them against persisted product state, notifying Discord and
coordinating the polling loop.
"""

__all__ = [
    "access",
    "config",
    "db",
    "discovery",
    "keywords",
    "main",
    "models",
    "normalize",
    "notifier",
    "reconcile",
    "utils",
]
