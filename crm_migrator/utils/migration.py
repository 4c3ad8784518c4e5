"""
Utility helpers for migration feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_migrations_enabled(app=None) -> bool:
    """Return True when the migrations feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("MIGRATIONS_ENABLED", False))


def get_migration_sources(app=None) -> Tuple[str, ...]:
    """Return the configured migration source identifiers."""
    config = _get_config(app)
    sources: Iterable[str] = config.get("MIGRATION_SOURCES", ())
    return tuple(sources)
