"""
Factories wiring migration services to the Flask configuration.

Routes, the CLI and Celery tasks build their orchestrator here so every
entry point shares the same retry policy, batch limits and artifact store.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Mapping

from flask import Flask, current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from crm_migrator.models import MigrationJob, MigrationJobStatus, db

from .adapters.base import SourceAdapter
from .attachments import HTTPAttachmentFetcher
from .pipeline.orchestrator import AdapterFactory, MigrationOrchestrator, default_adapter_factory
from .pipeline.rollback import RollbackManager
from .pipeline.state import transition
from .registry import build_source_adapter
from .retry import RetryPolicy

DEFAULT_ARTIFACT_DIRNAME = "migration_artifacts"
DEFAULT_UPLOAD_DIRNAME = "migration_uploads"


def _instance_directory(app: Flask, config_key: str, default_name: str) -> Path:
    configured = app.config.get(config_key)
    if configured:
        path = Path(configured)
        if not path.is_absolute():
            path = Path(app.instance_path) / path
    else:
        path = Path(app.instance_path) / default_name
    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_artifact_directory(app: Flask | None = None) -> Path:
    return _instance_directory(app or current_app, "MIGRATION_ARTIFACT_DIR", DEFAULT_ARTIFACT_DIRNAME)


def store_csv_upload(upload: FileStorage, org_id: int, *, app: Flask | None = None) -> Path:
    """
    Save an uploaded CSV export under ``<upload dir>/<org_id>/`` and return its path.

    The API never accepts a server path for CSV jobs; this is the only way
    a file reaches ``CSVSourceAdapter`` from a request.
    """

    org_dir = _instance_directory(app or current_app, "MIGRATION_UPLOAD_DIR", DEFAULT_UPLOAD_DIRNAME) / str(org_id)
    org_dir.mkdir(parents=True, exist_ok=True)
    filename = secure_filename(upload.filename or "") or "export.csv"
    target = org_dir / f"{uuid.uuid4().hex}-{filename}"
    upload.save(target)
    return target


def build_attachment_fetcher(app: Flask | None = None) -> HTTPAttachmentFetcher:
    app = app or current_app
    return HTTPAttachmentFetcher(
        resolve_artifact_directory(app),
        timeout=float(app.config.get("MIGRATION_HTTP_TIMEOUT", 30.0)),
    )


def _adapter_factory(app: Flask) -> AdapterFactory:
    state = app.extensions.get("migrations") or {}
    override = state.get("adapter_factory")
    if override is not None:
        return override
    return default_adapter_factory(http_timeout=float(app.config.get("MIGRATION_HTTP_TIMEOUT", 30.0)))


def build_orchestrator(app: Flask | None = None, **overrides: Any) -> MigrationOrchestrator:
    app = app or current_app
    kwargs: dict[str, Any] = {
        "adapter_factory": _adapter_factory(app),
        "attachment_fetcher": build_attachment_fetcher(app),
        "retry_policy": RetryPolicy.from_config(app.config),
        "default_batch_size": int(app.config.get("MIGRATION_DEFAULT_BATCH_SIZE", 100)),
        "max_batch_size": int(app.config.get("MIGRATION_MAX_BATCH_SIZE", 1000)),
    }
    kwargs.update(overrides)
    return MigrationOrchestrator(db.session, **kwargs)


def build_rollback_manager(app: Flask | None = None) -> RollbackManager:
    app = app or current_app
    return RollbackManager(db.session, attachment_fetcher=build_attachment_fetcher(app))


def worker_enabled(app: Flask | None = None) -> bool:
    app = app or current_app
    return bool(app.config.get("MIGRATION_WORKER_ENABLED", False))


def dispatch_job(job_id: int, *, app: Flask | None = None) -> str | None:
    """
    Hand a RUNNING job to the worker, or run it inline when no worker is configured.

    Returns the Celery task id when the job was enqueued.
    """

    app = app or current_app
    if not worker_enabled(app):
        build_orchestrator(app).run(job_id)
        return None

    from .celery_app import get_celery_app

    celery_app = get_celery_app(app)
    if celery_app is None:
        raise RuntimeError("Migration worker is not configured.")
    async_result = celery_app.send_task("migrations.run_job", kwargs={"job_id": job_id})
    app.logger.info(
        "Migration job enqueued",
        extra={"migration_job_id": job_id, "migration_task_id": async_result.id},
    )
    return async_result.id


def hold_after_dispatch_failure(job_id: int, exc: Exception, *, app: Flask | None = None) -> None:
    """Park a RUNNING job as PAUSED when it could not be handed to the worker."""

    app = app or current_app
    db.session.rollback()
    job = db.session.get(MigrationJob, job_id)
    if job is None:
        return
    job.last_error = f"Failed to enqueue migration job: {exc}"
    if job.status == MigrationJobStatus.RUNNING:
        transition(job, MigrationJobStatus.PAUSED)
    db.session.commit()
    app.logger.error(
        "Migration job %s could not be enqueued; paused for resume",
        job_id,
        extra={"migration_job_id": job_id},
        exc_info=exc,
    )


def build_preview_adapter(source: str, params: Mapping[str, Any], *, app: Flask | None = None) -> SourceAdapter:
    """Adapter for a pre-flight source check; no job row exists yet."""
    app = app or current_app
    return build_source_adapter(source, params, http_timeout=float(app.config.get("MIGRATION_HTTP_TIMEOUT", 30.0)))
