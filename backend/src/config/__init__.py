"""
Configuration module for the room calendar backend.

Provides centralized configuration for:
- Application settings loaded from the environment
- The explicit reconciliation config handed to services
"""

from backend.src.config.settings import (
    AppSettings,
    ReconcileConfig,
    get_settings,
    get_reconcile_config,
)

__all__ = [
    "AppSettings",
    "ReconcileConfig",
    "get_settings",
    "get_reconcile_config",
]
