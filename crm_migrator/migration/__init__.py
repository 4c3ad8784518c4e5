"""
Migration engine feature package.

Registers the ``flask migrations`` CLI and the Celery worker, validating the
configured source list, while staying inert when migrations are disabled.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from crm_migrator.utils.migration import get_migration_sources, is_migrations_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_migrations_group, migrations_cli
from .registry import SourceDescriptor, get_source_registry, resolve_sources

MIGRATIONS_EXTENSION_KEY = "migrations"

__all__ = [
    "init_migrations",
    "MIGRATIONS_EXTENSION_KEY",
    "get_celery_app",
    "get_active_sources",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        MIGRATIONS_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_sources": (),
            "active_sources": (),
            "worker_enabled": False,
            "celery_app": None,
            "adapter_factory": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = migrations_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(migrations_cli)
    else:
        app.cli.add_command(get_disabled_migrations_group())


def init_migrations(app: Flask) -> None:
    """
    Conditionally wire the migration CLI and worker based on configuration.

    Records state inside ``app.extensions['migrations']`` for reuse by the
    API, CLI and Celery helpers.
    """
    enabled = is_migrations_enabled(app)
    configured_sources: Tuple[str, ...] = get_migration_sources(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_sources": configured_sources,
            "worker_enabled": bool(app.config.get("MIGRATION_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_sources"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Migrations disabled via MIGRATIONS_ENABLED flag; skipping registration.")
        return

    active: Iterable[SourceDescriptor] = resolve_sources(configured_sources, get_source_registry())
    state["active_sources"] = tuple(active)
    ensure_celery_app(app, state)
    _set_cli(app, enabled=True)

    source_names = ", ".join(descriptor.name for descriptor in state["active_sources"]) or "none"
    app.logger.info("Migrations enabled with sources: %s", source_names)


def get_active_sources(app: Flask) -> Tuple[SourceDescriptor, ...]:
    """Return the source descriptors resolved at start-up."""
    state = _ensure_extension_state(app)
    return tuple(state.get("active_sources", ()))
