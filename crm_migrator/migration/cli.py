"""
CLI commands for migration jobs.

``flask migrations run`` drives a job inline or queues it on the worker;
the remaining commands inspect and control existing jobs by id.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo, with_appcontext
from sqlalchemy.exc import NoResultFound

from crm_migrator.models import db
from crm_migrator.utils.migration import get_migration_sources, is_migrations_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import InvalidStateTransition, MigrationError, RollbackIncompleteError, ValidationError
from .pipeline.progress import estimate_duration
from .registry import get_source_registry
from .services import build_orchestrator, build_rollback_manager, hold_after_dispatch_failure


@click.group(name="migrations", invoke_without_command=True)
@click.pass_context
def migrations_cli(ctx):
    """
    Migration management commands.

    Displays configured sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_migrations_enabled(app):
        raise click.ClickException(
            "Migrations are disabled via MIGRATIONS_ENABLED=false. Enable them to run migration CLI commands."
        )
    if ctx.invoked_subcommand is None:
        ctx.invoke(migrations_sources)


def get_disabled_migrations_group() -> click.Group:
    """
    Return a minimal command group that informs the operator migrations are disabled.
    """

    @click.group(name="migrations", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Migration commands are unavailable because MIGRATIONS_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Migration Celery app is unavailable. Ensure MIGRATIONS_ENABLED=true and the "
            "migrations package initialises before running worker commands."
        )
    return celery_app


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _load_records(records_file: Path) -> list[Any]:
    try:
        payload = json.loads(records_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{records_file} is not valid JSON: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("records")
    if not isinstance(payload, list):
        raise click.ClickException(f"{records_file} must contain a list of records or a 'records' list.")
    return payload


def _source_params(
    source: str,
    file_path: Optional[Path],
    records_file: Optional[Path],
    api_key: Optional[str],
) -> dict[str, Any]:
    if source == "csv":
        if file_path is None:
            raise click.ClickException("CSV source requires the --file option.")
        return {"path": str(file_path.resolve())}
    if source == "other":
        if records_file is None:
            raise click.ClickException("The 'other' source requires the --records-file option.")
        return {"records": _load_records(records_file)}
    if not api_key:
        raise click.ClickException(f"Source '{source}' requires --api-key.")
    return {"api_key": api_key}


@migrations_cli.command("sources")
@click.pass_context
def migrations_sources(ctx):
    """List the migration sources enabled for this deployment."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    registry = get_source_registry()
    sources = [name for name in get_migration_sources(app) if name in registry]
    if not sources:
        click.echo("No migration sources configured.")
        return
    click.echo("Enabled migration sources:")
    for name in sources:
        descriptor = registry[name]
        click.echo(f"  - {descriptor.name} ({descriptor.title})")


@migrations_cli.command("estimate")
@click.option("--contacts", default=0, show_default=True, type=click.IntRange(min=0))
@click.option("--jobs", default=0, show_default=True, type=click.IntRange(min=0))
def migrations_estimate(contacts: int, jobs: int):
    """Print the estimated duration for a migration of the given size."""
    click.echo(estimate_duration(contacts, jobs))


@migrations_cli.command("run")
@with_appcontext
@click.option("--org-id", required=True, type=int, help="Organization that owns the migrated records.")
@click.option("--source", required=True, help="Migration source identifier.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the CSV export (csv source).",
)
@click.option(
    "--records-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file with canonical records (other source).",
)
@click.option("--api-key", envvar="MIGRATION_SOURCE_API_KEY", help="API key for hosted CRM sources.")
@click.option("--dry-run", is_flag=True, help="Detect duplicates and report without writing staging rows.")
@click.option("--batch-size", type=int, help="Records fetched per page.")
@click.option("--skip-contacts", is_flag=True)
@click.option("--skip-jobs", is_flag=True)
@click.option("--skip-documents", is_flag=True)
@click.option("--overwrite-existing", is_flag=True, help="Fill blank fields on matched rows.")
@click.option("--date-after", help="Only migrate records on or after this date (YYYY-MM-DD).")
@click.option("--date-before", help="Only migrate records on or before this date (YYYY-MM-DD).")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def migrations_run(
    ctx,
    org_id: int,
    source: str,
    file_path: Optional[Path],
    records_file: Optional[Path],
    api_key: Optional[str],
    dry_run: bool,
    batch_size: Optional[int],
    skip_contacts: bool,
    skip_jobs: bool,
    skip_documents: bool,
    overwrite_existing: bool,
    date_after: Optional[str],
    date_before: Optional[str],
    inline: bool,
):
    """Start a migration job for the provided source."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    normalized_source = source.strip().lower()
    if normalized_source not in get_migration_sources(app):
        raise click.ClickException(f"Source '{source}' is not enabled. Check MIGRATION_SOURCES.")

    params = _source_params(normalized_source, file_path, records_file, api_key)
    options = {
        "dryRun": dry_run,
        "batchSize": batch_size,
        "skipContacts": skip_contacts,
        "skipJobs": skip_jobs,
        "skipDocuments": skip_documents,
        "overwriteExisting": overwrite_existing,
        "dateFilter": {"after": date_after, "before": date_before},
    }

    orchestrator = build_orchestrator(app)
    try:
        job = orchestrator.start(org_id, normalized_source, options, source_params=params, execute=False)
    except ValidationError as exc:
        raise click.ClickException("; ".join(exc.errors)) from exc
    job_id = job.id

    if not inline:
        celery_app = _resolve_celery(app)
        try:
            async_result = celery_app.send_task("migrations.run_job", kwargs={"job_id": job_id})
        except Exception as exc:
            hold_after_dispatch_failure(job_id, exc, app=app)
            raise click.ClickException(f"Failed to enqueue migration job {job_id}: {exc}") from exc

        app.logger.info(
            "Migration job queued via CLI",
            extra={
                "migration_job_id": job_id,
                "migration_task_id": async_result.id,
                "migration_source": normalized_source,
                "dry_run": dry_run,
            },
        )
        click.echo(
            json.dumps(
                {
                    "job_id": job_id,
                    "task_id": async_result.id,
                    "status": "queued",
                    "dry_run": dry_run,
                    "source": normalized_source,
                }
            )
        )
        return

    try:
        orchestrator.run(job_id)
    except Exception as exc:
        raise click.ClickException(f"Migration job {job_id} stopped: {exc}") from exc
    _echo_json(orchestrator.get_status(job_id))


@migrations_cli.command("status")
@with_appcontext
@click.argument("job_id", type=int)
def migrations_status(job_id: int):
    """Show the status snapshot of a migration job."""
    try:
        _echo_json(build_orchestrator().get_status(job_id))
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc


def _control(action: str, job_id: int, *, inline: bool = False) -> dict[str, Any]:
    orchestrator = build_orchestrator()
    try:
        if action == "pause":
            orchestrator.pause(job_id)
        elif action == "cancel":
            orchestrator.cancel(job_id)
        elif action == "resume":
            orchestrator.resume(job_id, execute=inline)
        elif action == "rollback":
            build_rollback_manager().rollback(job_id)
    except (NoResultFound, InvalidStateTransition, RollbackIncompleteError) as exc:
        raise click.ClickException(str(exc)) from exc
    db.session.expire_all()
    return orchestrator.get_status(job_id)


@migrations_cli.command("pause")
@with_appcontext
@click.argument("job_id", type=int)
def migrations_pause(job_id: int):
    """Pause a running job after the record in flight."""
    _echo_json(_control("pause", job_id))


@migrations_cli.command("resume")
@with_appcontext
@click.argument("job_id", type=int)
@click.option("--inline/--no-inline", default=False, help="Continue inline instead of queueing via Celery.")
@click.pass_context
def migrations_resume(ctx, job_id: int, inline: bool):
    """Resume a paused job from its checkpoint."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    payload = _control("resume", job_id, inline=inline)
    if not inline:
        celery_app = _resolve_celery(app)
        try:
            async_result = celery_app.send_task("migrations.run_job", kwargs={"job_id": job_id})
        except Exception as exc:
            hold_after_dispatch_failure(job_id, exc, app=app)
            raise click.ClickException(f"Failed to enqueue migration job {job_id}: {exc}") from exc
        payload["taskId"] = async_result.id
    _echo_json(payload)


@migrations_cli.command("cancel")
@with_appcontext
@click.argument("job_id", type=int)
def migrations_cancel(job_id: int):
    """Cancel a running or paused job. Rows already written are kept."""
    _echo_json(_control("cancel", job_id))


@migrations_cli.command("rollback")
@with_appcontext
@click.argument("job_id", type=int)
def migrations_rollback(job_id: int):
    """Remove the staging rows a completed or failed job wrote."""
    try:
        _echo_json(_control("rollback", job_id))
    except MigrationError as exc:
        raise click.ClickException(str(exc)) from exc


@migrations_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the migration background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("migrations", {})
    if not state.get("worker_enabled") and not app.config.get("MIGRATION_WORKER_ENABLED"):
        click.echo(
            "Warning: MIGRATION_WORKER_ENABLED is false. Commands will still run, "
            "but API-started jobs will execute inline until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("migrations", {})
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting migration worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("migrations.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'migrations.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
