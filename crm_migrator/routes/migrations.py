"""
JSON control API for migration jobs.

Every route is scoped to the signed-in user's organization; jobs belonging to
other organizations are reported as not found.
"""

from __future__ import annotations

import io
import json
import time
from http import HTTPStatus
from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import NoResultFound
from werkzeug.datastructures import FileStorage

from config.monitoring import MigrationApiMonitoring
from crm_migrator.migration import get_active_sources
from crm_migrator.migration.adapters import CSVSourceAdapter
from crm_migrator.migration.errors import InvalidStateTransition, RollbackIncompleteError, ValidationError
from crm_migrator.migration.pipeline.job_service import JobFilters, MigrationJobService
from crm_migrator.migration.pipeline.orchestrator import MigrationOrchestrator
from crm_migrator.migration.pipeline.preflight import build_preflight_report, check_source
from crm_migrator.migration.pipeline.progress import estimate_duration, status_payload
from crm_migrator.migration.services import (
    build_orchestrator,
    build_preview_adapter,
    build_rollback_manager,
    dispatch_job,
    hold_after_dispatch_failure,
    store_csv_upload,
    worker_enabled,
)
from crm_migrator.models import MigrationJob, db
from crm_migrator.utils.migration import get_migration_sources, is_migrations_enabled

migrations_api_blueprint = Blueprint("migrations_api", __name__, url_prefix="/api/migrations")
_job_service = MigrationJobService()

CONTROL_ACTIONS = ("pause", "resume", "cancel", "rollback")
_PARAM_KEYS = ("apiKey", "api_key", "records")
# Never accepted from a request; CSV paths come from stored uploads and endpoints from the adapters.
_SERVER_ONLY_PARAMS = ("path", "baseUrl", "base_url")
UPLOAD_SOURCES = ("csv",)


@migrations_api_blueprint.before_request
def _ensure_migrations_enabled():
    if not is_migrations_enabled(current_app):
        return jsonify({"error": "Migrations are disabled."}), HTTPStatus.NOT_FOUND
    return None


@migrations_api_blueprint.errorhandler(ValidationError)
def _handle_validation_error(exc: ValidationError):
    return jsonify({"error": "Invalid migration request.", "details": list(exc.errors)}), HTTPStatus.BAD_REQUEST


@migrations_api_blueprint.errorhandler(InvalidStateTransition)
def _handle_invalid_transition(exc: InvalidStateTransition):
    return (
        jsonify({"error": str(exc), "currentStatus": exc.current, "requestedStatus": exc.target}),
        HTTPStatus.CONFLICT,
    )


@migrations_api_blueprint.errorhandler(NoResultFound)
def _handle_not_found(exc: NoResultFound):
    return jsonify({"error": str(exc)}), HTTPStatus.NOT_FOUND


@migrations_api_blueprint.errorhandler(RollbackIncompleteError)
def _handle_rollback_incomplete(exc: RollbackIncompleteError):
    current_app.logger.error("Rollback incomplete: %s", exc, extra={"migration_job_id": exc.job_id})
    return (
        jsonify({"error": str(exc), "remainingRows": exc.remaining, "jobId": exc.job_id}),
        HTTPStatus.INTERNAL_SERVER_ERROR,
    )


def _current_org_id() -> int | None:
    return getattr(current_user, "organization_id", None)


def _no_organization():
    return jsonify({"error": "Your account is not attached to an organization."}), HTTPStatus.FORBIDDEN


def _json_body() -> Mapping[str, Any] | None:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        return None
    return payload


def _reject_server_only(*sections: Mapping[str, Any]) -> None:
    offending = sorted({key for section in sections for key in section if key in _SERVER_ONLY_PARAMS})
    if offending:
        raise ValidationError([f"'{key}' cannot be set through the API." for key in offending])


def _split_body(payload: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate job options from source parameters in a start request body."""
    options = payload.get("options")
    if options is None:
        options = {key: value for key, value in payload.items() if key not in _PARAM_KEYS and key != "params"}
    elif not isinstance(options, Mapping):
        raise ValidationError(["options must be an object."])

    params = payload.get("params")
    if params is None:
        params = {key: payload[key] for key in _PARAM_KEYS if key in payload}
    elif not isinstance(params, Mapping):
        raise ValidationError(["params must be an object."])
    _reject_server_only(payload, options, params)
    return dict(options), dict(params)


def _form_options() -> dict[str, Any]:
    raw = request.form.get("options")
    if not raw:
        return {}
    try:
        options = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError(["options must be a JSON object."]) from None
    if not isinstance(options, Mapping):
        raise ValidationError(["options must be a JSON object."])
    _reject_server_only(options)
    return dict(options)


def _uploaded_file() -> FileStorage:
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError(["CSV Flat File requires an uploaded 'file'."])
    if not upload.filename.lower().endswith(".csv"):
        raise ValidationError(["CSV Flat File uploads must be .csv files."])
    return upload


def _request_input(source: str) -> tuple[dict[str, Any], dict[str, Any], FileStorage | None]:
    """
    Options, source parameters and the uploaded export for a start/dry-run request.

    Upload sources take a multipart form (``file`` plus ``options`` as a JSON
    string); every other source takes a JSON body.
    """

    if source in UPLOAD_SOURCES:
        return _form_options(), {}, _uploaded_file()
    payload = _json_body()
    if payload is None:
        raise ValidationError(["Request body must be a JSON object."])
    options, params = _split_body(payload)
    return options, params, None


def _start_job(
    orchestrator: MigrationOrchestrator,
    org_id: int,
    source: str,
    options: dict[str, Any],
    params: dict[str, Any],
    upload: FileStorage | None,
    *,
    execute: bool,
) -> MigrationJob:
    if upload is None:
        return orchestrator.start(
            org_id, source, options, created_by=current_user.id, source_params=params, execute=execute
        )
    stored = store_csv_upload(upload, org_id)
    try:
        return orchestrator.start(
            org_id,
            source,
            options,
            created_by=current_user.id,
            source_params={"path": str(stored)},
            execute=execute,
        )
    except ValidationError:
        stored.unlink(missing_ok=True)
        raise


def _require_enabled_source(source: str) -> str:
    normalized = source.strip().lower()
    if normalized not in get_migration_sources(current_app):
        raise ValidationError([f"Migration source '{source}' is not enabled."])
    return normalized


@migrations_api_blueprint.get("/sources")
@login_required
def list_sources():
    return jsonify({"sources": [descriptor.as_dict() for descriptor in get_active_sources(current_app)]})


@migrations_api_blueprint.get("/estimate")
@login_required
def estimate():
    counts: dict[str, int] = {}
    for name in ("contacts", "jobs"):
        raw = request.args.get(name, "0")
        try:
            counts[name] = int(raw)
        except ValueError:
            return jsonify({"error": f"Query parameter '{name}' must be an integer."}), HTTPStatus.BAD_REQUEST
        if counts[name] < 0:
            return jsonify({"error": f"Query parameter '{name}' must not be negative."}), HTTPStatus.BAD_REQUEST
    return jsonify(
        {
            "contacts": counts["contacts"],
            "jobs": counts["jobs"],
            "estimatedDuration": estimate_duration(counts["contacts"], counts["jobs"]),
        }
    )


@migrations_api_blueprint.post("/<source>/start")
@login_required
def start_migration(source: str):
    org_id = _current_org_id()
    if org_id is None:
        return _no_organization()
    normalized = _require_enabled_source(source)
    options, params, upload = _request_input(normalized)

    orchestrator = build_orchestrator()
    job = _start_job(orchestrator, org_id, normalized, options, params, upload, execute=False)
    job_id = job.id

    try:
        task_id = dispatch_job(job_id)
    except Exception as exc:
        if worker_enabled():
            hold_after_dispatch_failure(job_id, exc)
            MigrationApiMonitoring.record_action(action="start", status="enqueue_failed")
            return (
                jsonify(
                    {
                        "error": "Failed to enqueue migration job; resume it once the worker is available.",
                        "job": orchestrator.get_status(job_id),
                    }
                ),
                HTTPStatus.SERVICE_UNAVAILABLE,
            )
        current_app.logger.exception("Inline migration job %s stopped", job_id, extra={"migration_job_id": job_id})
        MigrationApiMonitoring.record_action(action="start", status="error")
        return (
            jsonify({"error": "Migration job stopped unexpectedly.", "job": orchestrator.get_status(job_id)}),
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    MigrationApiMonitoring.record_action(action="start", status="ok")
    db.session.expire_all()
    response = {"jobId": job_id, "taskId": task_id, "job": orchestrator.get_status(job_id)}
    return jsonify(response), HTTPStatus.ACCEPTED if task_id else HTTPStatus.CREATED


@migrations_api_blueprint.post("/<source>/dry-run")
@login_required
def dry_run_migration(source: str):
    """Run a dry-run inline and return its pre-flight report."""
    org_id = _current_org_id()
    if org_id is None:
        return _no_organization()
    normalized = _require_enabled_source(source)
    options, params, upload = _request_input(normalized)
    options["dryRun"] = True
    options.pop("dry_run", None)

    orchestrator = build_orchestrator()
    job = _start_job(orchestrator, org_id, normalized, options, params, upload, execute=True)
    MigrationApiMonitoring.record_action(action="dry_run", status=job.status.value)
    report = build_preflight_report(db.session, job)
    report["job"] = status_payload(job)
    return jsonify(report), HTTPStatus.OK


@migrations_api_blueprint.post("/<source>/preflight")
@login_required
def preflight_source(source: str):
    """Check credentials and size the import before any job exists."""
    if _current_org_id() is None:
        return _no_organization()
    normalized = _require_enabled_source(source)
    if normalized in UPLOAD_SOURCES:
        # Parsed in memory; nothing is stored until a job starts.
        text = _uploaded_file().read().decode("utf-8-sig", errors="replace")
        adapter = CSVSourceAdapter(file_obj=io.StringIO(text, newline=""))
    else:
        payload = _json_body()
        if payload is None:
            raise ValidationError(["Request body must be a JSON object."])
        _, params = _split_body(payload)
        adapter = build_preview_adapter(normalized, params)
    try:
        result = check_source(adapter)
    finally:
        adapter.close()

    MigrationApiMonitoring.record_action(action="preflight", status="ok" if result["ok"] else "rejected")
    if not result["ok"]:
        current_app.logger.warning(
            "Pre-flight check for %s failed: %s",
            normalized,
            "; ".join(result["warnings"]),
            extra={"migration_source": normalized, "user_id": current_user.id},
        )
    return jsonify({"source": normalized, **result}), HTTPStatus.OK


@migrations_api_blueprint.get("/jobs")
@login_required
def list_jobs():
    org_id = _current_org_id()
    if org_id is None:
        return _no_organization()
    try:
        filters = JobFilters.coerce(
            page=request.args.get("page"),
            page_size=request.args.get("pageSize") or request.args.get("page_size"),
            statuses=request.args.getlist("status"),
            sources=request.args.getlist("source"),
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST
    return jsonify(_job_service.list_jobs(org_id, filters).as_dict())


@migrations_api_blueprint.get("/status/<int:job_id>")
@login_required
def job_status(job_id: int):
    started = time.perf_counter()
    org_id = _current_org_id()
    if org_id is None:
        return _no_organization()
    try:
        job = _job_service.get_job(job_id, org_id=org_id)
    except NoResultFound:
        MigrationApiMonitoring.record_status(duration_seconds=time.perf_counter() - started, status="not_found")
        raise
    payload = status_payload(job)
    MigrationApiMonitoring.record_status(duration_seconds=time.perf_counter() - started, status=job.status.value)
    return jsonify(payload)


@migrations_api_blueprint.post("/status/<int:job_id>")
@login_required
def control_job(job_id: int):
    org_id = _current_org_id()
    if org_id is None:
        return _no_organization()
    payload = _json_body()
    if payload is None:
        return jsonify({"error": "Request body must be a JSON object."}), HTTPStatus.BAD_REQUEST
    action = str(payload.get("action") or "").strip().lower()
    if action not in CONTROL_ACTIONS:
        return (
            jsonify({"error": f"action must be one of: {', '.join(CONTROL_ACTIONS)}."}),
            HTTPStatus.BAD_REQUEST,
        )

    # Ownership check before any state change.
    _job_service.get_job(job_id, org_id=org_id)
    orchestrator = build_orchestrator()
    task_id = None
    try:
        if action == "pause":
            orchestrator.pause(job_id)
        elif action == "cancel":
            orchestrator.cancel(job_id)
        elif action == "rollback":
            build_rollback_manager().rollback(job_id)
        else:
            orchestrator.resume(job_id, execute=False)
            try:
                task_id = dispatch_job(job_id)
            except Exception as exc:
                if not worker_enabled():
                    raise
                hold_after_dispatch_failure(job_id, exc)
                MigrationApiMonitoring.record_action(action=action, status="enqueue_failed")
                return (
                    jsonify({"error": "Failed to enqueue migration job.", "job": orchestrator.get_status(job_id)}),
                    HTTPStatus.SERVICE_UNAVAILABLE,
                )
    except (InvalidStateTransition, RollbackIncompleteError):
        MigrationApiMonitoring.record_action(action=action, status="rejected")
        raise

    MigrationApiMonitoring.record_action(action=action, status="ok")
    current_app.logger.info(
        "Migration job %s %s requested",
        job_id,
        action,
        extra={"migration_job_id": job_id, "user_id": current_user.id},
    )
    db.session.expire_all()
    response = {"jobId": job_id, "action": action, "job": orchestrator.get_status(job_id)}
    if task_id:
        response["taskId"] = task_id
    return jsonify(response)


@migrations_api_blueprint.get("/status/<int:job_id>/items")
@login_required
def job_items(job_id: int):
    org_id = _current_org_id()
    if org_id is None:
        return _no_organization()
    job = _job_service.get_job(job_id, org_id=org_id)
    try:
        page = _job_service.list_items(
            job,
            page=request.args.get("page"),
            page_size=request.args.get("pageSize") or request.args.get("page_size"),
            decision=request.args.get("decision"),
            entity_type=request.args.get("entityType") or request.args.get("entity_type"),
            errors_only=request.args.get("errorsOnly", "").lower() in {"1", "true", "yes"},
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST
    return jsonify(page.as_dict())


def register_migration_routes(app):
    """Register the migrations API blueprint."""
    app.register_blueprint(migrations_api_blueprint)
