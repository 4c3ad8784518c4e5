"""
Celery wiring for the migration worker.

Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` the worker talks to a
SQLite file in the instance folder, which is enough for a single host.
Delivery is at-least-once (late acks, prefetch 1); the job checkpoint makes
a redelivered ``migrations.run_job`` resume instead of starting over.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "migrations"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
# Large hosted-CRM exports run for hours; the soft limit leaves time to checkpoint.
DEFAULT_TIME_LIMIT = 6 * 60 * 60
DEFAULT_SOFT_TIME_LIMIT = DEFAULT_TIME_LIMIT - 300

TASK_MODULES = ("crm_migrator.migration.tasks",)


def _sqlite_transport_path(app: Flask) -> Path:
    """``CELERY_SQLITE_PATH`` (relative to the instance folder) or ``instance/celery.sqlite``."""
    sqlite_path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not sqlite_path.is_absolute():
        sqlite_path = Path(app.instance_path) / sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _transport_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    sqlite_file = _sqlite_transport_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{sqlite_file}", result_backend or f"db+sqlite:///{sqlite_file}"


def _worker_settings(app: Flask) -> dict[str, Any]:
    return {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("MIGRATION_TASK_TIME_LIMIT", DEFAULT_TIME_LIMIT),
        "task_soft_time_limit": app.config.get("MIGRATION_TASK_SOFT_TIME_LIMIT", DEFAULT_SOFT_TIME_LIMIT),
        "worker_hijack_root_logger": False,
        "worker_log_format": "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        "worker_task_log_format": (
            "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
        ),
    }


def _extra_settings(app: Flask) -> Mapping[str, Any] | None:
    """``CELERY_CONFIG`` as a mapping; a JSON string is accepted from the environment."""
    extra = app.config.get("CELERY_CONFIG")
    if not isinstance(extra, str):
        return extra
    try:
        return json.loads(extra)
    except json.JSONDecodeError:
        app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
        return None


def create_celery_app(app: Flask) -> Celery:
    """
    Build the Celery instance for ``app``.

    ``CELERY_CONFIG`` is applied last, which is how tests switch on
    ``task_always_eager``.
    """
    broker_url, result_backend = _transport_urls(app)
    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=TASK_MODULES)
    celery_app.conf.update(_worker_settings(app))

    extra = _extra_settings(app)
    if extra:
        celery_app.conf.update(extra)
    app.logger.info(
        "Migration Celery configuration resolved",
        extra={
            "migration_celery_extra_conf": extra,
            "migration_celery_broker_url": broker_url,
            "migration_celery_result_backend": result_backend,
            "migration_worker_enabled": app.config.get("MIGRATION_WORKER_ENABLED"),
        },
    )

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Every migration task runs inside an app context so ``db.session`` works."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the Celery instance once and cache it in the migrations extension state."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = state["celery_app"] = create_celery_app(app)
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """The app's Celery instance, or ``None`` when migrations are disabled."""
    state: dict[str, Any] | None = app.extensions.get("migrations")  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
