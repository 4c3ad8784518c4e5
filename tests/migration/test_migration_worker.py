import json
from typing import Any, Dict

from celery.exceptions import SoftTimeLimitExceeded
from flask import Flask

from crm_migrator.migration import get_celery_app, init_migrations
from crm_migrator.migration.celery_app import DEFAULT_QUEUE_NAME
from crm_migrator.migration.pipeline.orchestrator import MigrationOrchestrator
from crm_migrator.migration.services import build_orchestrator
from crm_migrator.models import MigrationJob, MigrationJobStatus, db

EAGER_CELERY = {"task_always_eager": True, "task_eager_propagates": True}


def build_migrations_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with migrations enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
        app.config["INSTANCE_PATH"] = instance_path_override
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        MIGRATIONS_ENABLED=True,
        MIGRATION_SOURCES=("csv",),
    )
    app.config.update(overrides)
    init_migrations(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_migrations_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER_CELERY,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True


def test_celery_config_accepts_json_string(tmp_path):
    app = build_migrations_app(
        CELERY_CONFIG=json.dumps({"task_always_eager": True}),
        INSTANCE_PATH=str(tmp_path),
    )

    assert get_celery_app(app).conf.task_always_eager is True


def test_disabled_migrations_have_no_celery_app(tmp_path):
    app = build_migrations_app(MIGRATIONS_ENABLED=False, INSTANCE_PATH=str(tmp_path))

    assert get_celery_app(app) is None
    result = app.test_cli_runner().invoke(args=["migrations"])
    assert result.exit_code != 0
    assert "unavailable because MIGRATIONS_ENABLED=false" in result.output


def test_worker_ping_cli(tmp_path):
    app = build_migrations_app(
        MIGRATION_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER_CELERY,
        INSTANCE_PATH=str(tmp_path),
    )

    runner = app.test_cli_runner()
    result = runner.invoke(args=["migrations", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_migrations_app(
        MIGRATION_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER_CELERY,
        INSTANCE_PATH=str(tmp_path),
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "migrations",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "migrations-bulk",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "migrations-bulk",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]
    assert app.extensions["migrations"]["worker_enabled"] is True


def test_run_job_task_drives_job_from_checkpoint(app, test_organization):
    job = build_orchestrator().start(
        test_organization.id,
        "other",
        {"batchSize": 1},
        source_params={
            "records": [
                {"external_id": "c1", "fields": {"first_name": "Ada", "email": "ada@example.com"}},
                {"external_id": "c2", "fields": {"first_name": "Grace", "email": "grace@example.com"}},
            ]
        },
        execute=False,
    )
    job_id = job.id
    db.session.commit()

    task = get_celery_app(app).tasks["migrations.run_job"]
    payload = task.apply(kwargs={"job_id": job_id}).get()

    assert payload["status"] == "completed"
    assert payload["totals"]["imported"] == 2
    assert db.session.get(MigrationJob, job_id).status == MigrationJobStatus.COMPLETED


def test_run_job_task_is_a_no_op_for_paused_jobs(app, test_organization):
    orchestrator = build_orchestrator()
    job = orchestrator.start(
        test_organization.id,
        "other",
        {},
        source_params={"records": [{"external_id": "c1", "fields": {"first_name": "Ada"}}]},
        execute=False,
    )
    orchestrator.pause(job.id)
    job_id = job.id
    db.session.commit()

    payload = get_celery_app(app).tasks["migrations.run_job"].apply(kwargs={"job_id": job_id}).get()

    assert payload["status"] == "paused"
    assert payload["totals"]["imported"] == 0


def test_run_job_task_requeues_itself_at_the_soft_time_limit(app, test_organization, monkeypatch):
    job = build_orchestrator().start(
        test_organization.id,
        "other",
        {"batchSize": 5},
        source_params={
            "records": [
                {"external_id": "c1", "fields": {"first_name": "Ada", "email": "ada@example.com"}},
                {"external_id": "c2", "fields": {"first_name": "Grace", "email": "grace@example.com"}},
            ]
        },
        execute=False,
    )
    job_id = job.id
    db.session.commit()

    original = MigrationOrchestrator._process_record

    def out_of_time_on_second(self, job, record, options):
        if record.external_id == "c2":
            raise SoftTimeLimitExceeded()
        return original(self, job, record, options)

    sent = []

    class FakeResult:
        id = "requeued-task"

    def fake_send_task(name, kwargs=None, **extra):
        sent.append((name, kwargs))
        return FakeResult()

    task = get_celery_app(app).tasks["migrations.run_job"]
    monkeypatch.setattr(MigrationOrchestrator, "_process_record", out_of_time_on_second)
    monkeypatch.setattr(task.app, "send_task", fake_send_task)

    payload = task.apply(kwargs={"job_id": job_id}).get()

    assert sent == [("migrations.run_job", {"job_id": job_id})]
    assert payload["requeued"] is True
    assert payload["requeuedTaskId"] == "requeued-task"
    assert payload["status"] == "running"
    db.session.expire_all()
    stuck = db.session.get(MigrationJob, job_id)
    assert stuck.status == MigrationJobStatus.RUNNING
    assert stuck.processed_records == 1
    assert stuck.cursor_json["last_external_id"] == "c1"
    assert stuck.last_error is None

    # The requeued message picks up at the checkpoint.
    monkeypatch.setattr(MigrationOrchestrator, "_process_record", original)
    payload = task.apply(kwargs={"job_id": job_id}).get()

    assert payload["status"] == "completed"
    assert payload["totals"]["imported"] == 2
    assert db.session.get(MigrationJob, job_id).processed_records == 2
