import io
import json
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from crm_migrator.migration.errors import TerminalSourceError

from crm_migrator.models import (
    MigrationJob,
    MigrationJobStatus,
    MigrationSource,
    Organization,
    StagingContact,
    User,
    db,
)

RECORDS = [
    {"external_id": "c1", "entity_type": "contact", "fields": {"first_name": "Ada", "email": "ada@example.com"}},
    {"external_id": "c2", "entity_type": "contact", "fields": {"email": "ada@example.com", "phone": "5551234567"}},
    {"external_id": "j1", "entity_type": "job", "fields": {"name": "Roof", "address": "1 Main St", "status": "won"}},
]


def _job_count():
    return db.session.scalar(select(func.count()).select_from(MigrationJob))


def _start(client, **options):
    return client.post("/api/migrations/other/start", json={"options": options, "records": RECORDS})


def test_requires_login(client):
    response = client.get("/api/migrations/sources")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication required."}


def test_user_without_organization_is_forbidden(client, test_organization):
    user = User(username="drifter", email="drifter@example.com")
    user.set_password("drifterpass123")
    db.session.add(user)
    db.session.commit()
    with client.session_transaction() as session:
        session["_user_id"] = str(user.id)

    response = _start(client)

    assert response.status_code == 403


def test_list_sources(logged_in_client):
    response = logged_in_client.get("/api/migrations/sources")

    assert response.status_code == 200
    sources = response.get_json()["sources"]
    assert [source["name"] for source in sources] == ["acculynx", "jobnimbus", "csv", "roofr", "hover", "other"]
    assert sources[0]["requiredParams"] == ["api_key"]


def test_disabled_migrations_return_not_found(app, logged_in_client):
    app.config["MIGRATIONS_ENABLED"] = False

    response = logged_in_client.get("/api/migrations/sources")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Migrations are disabled."


def test_estimate_endpoint(logged_in_client):
    response = logged_in_client.get("/api/migrations/estimate?contacts=500&jobs=200")
    assert response.get_json() == {"contacts": 500, "jobs": 200, "estimatedDuration": "9 minutes"}

    assert logged_in_client.get("/api/migrations/estimate?contacts=lots").status_code == 400
    assert logged_in_client.get("/api/migrations/estimate?jobs=-1").status_code == 400


def test_start_runs_inline_without_worker(logged_in_client, test_user):
    response = _start(logged_in_client, batchSize=2)

    assert response.status_code == 201
    body = response.get_json()
    assert body["taskId"] is None
    assert body["job"]["status"] == "completed"
    assert body["job"]["totals"] == {"total": 3, "imported": 3, "skipped": 0, "errors": 0}

    job = db.session.get(MigrationJob, body["jobId"])
    assert job.created_by == test_user.id
    assert job.source == MigrationSource.OTHER


def test_start_rejects_invalid_options(logged_in_client):
    response = _start(logged_in_client, batchSize=0, dryRun="sometimes")

    assert response.status_code == 400
    assert response.get_json()["details"] == ["batchSize must be greater than 0.", "dryRun must be a boolean."]
    assert _job_count() == 0


def test_start_rejects_disabled_source_and_missing_params(app, logged_in_client):
    response = logged_in_client.post("/api/migrations/acculynx/start", json={"options": {}})
    assert response.status_code == 400
    assert response.get_json()["details"] == ["AccuLynx requires 'api_key'."]

    app.config["MIGRATION_SOURCES"] = ("csv",)
    response = _start(logged_in_client)
    assert response.status_code == 400
    assert response.get_json()["details"] == ["Migration source 'other' is not enabled."]

    assert logged_in_client.post("/api/migrations/other/start", json=[1, 2]).status_code == 400
    assert _job_count() == 0


def test_start_enqueues_when_worker_enabled(app, logged_in_client, monkeypatch):
    sent = []

    def send_task(name, kwargs):
        sent.append((name, kwargs))
        return SimpleNamespace(id="task-123")

    app.config["MIGRATION_WORKER_ENABLED"] = True
    monkeypatch.setattr(
        "crm_migrator.migration.celery_app.get_celery_app",
        lambda _app: SimpleNamespace(send_task=send_task),
    )

    response = _start(logged_in_client)

    assert response.status_code == 202
    body = response.get_json()
    assert body["taskId"] == "task-123"
    assert body["job"]["status"] == "running"
    assert sent == [("migrations.run_job", {"job_id": body["jobId"]})]


def test_start_holds_job_when_enqueue_fails(app, logged_in_client, monkeypatch):
    def send_task(name, kwargs):
        raise ConnectionError("broker unreachable")

    app.config["MIGRATION_WORKER_ENABLED"] = True
    monkeypatch.setattr(
        "crm_migrator.migration.celery_app.get_celery_app",
        lambda _app: SimpleNamespace(send_task=send_task),
    )

    response = _start(logged_in_client)

    assert response.status_code == 503
    job_payload = response.get_json()["job"]
    assert job_payload["status"] == "paused"
    assert job_payload["lastError"] == "Failed to enqueue migration job: broker unreachable"


def test_dry_run_endpoint_returns_preflight_report(logged_in_client):
    response = logged_in_client.post("/api/migrations/other/dry-run", json={"records": RECORDS})

    assert response.status_code == 200
    report = response.get_json()
    assert report["summary"]["totalRecords"] == 3
    assert report["summary"]["duplicatesFound"] == 1
    assert report["summary"]["contactsToImport"] == 1
    assert report["job"]["dryRun"] is True
    assert report["job"]["status"] == "completed"
    assert db.session.scalar(select(func.count()).select_from(StagingContact)) == 0


def test_status_list_and_items(logged_in_client):
    job_id = _start(logged_in_client).get_json()["jobId"]

    status = logged_in_client.get(f"/api/migrations/status/{job_id}")
    assert status.status_code == 200
    assert status.get_json()["percentComplete"] == 100

    listing = logged_in_client.get("/api/migrations/jobs?status=completed&source=other").get_json()
    assert listing["total"] == 1
    assert listing["items"][0]["id"] == job_id
    assert logged_in_client.get("/api/migrations/jobs?status=stuck").status_code == 400

    items = logged_in_client.get(f"/api/migrations/status/{job_id}/items?decision=updated").get_json()
    assert items["total"] == 1
    assert items["items"][0]["externalId"] == "c2"
    assert items["items"][0]["matchStrategy"] == "email"

    contacts = logged_in_client.get(f"/api/migrations/status/{job_id}/items?entityType=contact").get_json()
    assert contacts["total"] == 2


def test_jobs_of_other_organizations_are_not_found(logged_in_client):
    other = Organization(name="Rival Roofing", slug="rival-roofing")
    db.session.add(other)
    db.session.flush()
    job = MigrationJob(org_id=other.id, source=MigrationSource.CSV, options_json={})
    db.session.add(job)
    db.session.commit()

    assert logged_in_client.get(f"/api/migrations/status/{job.id}").status_code == 404
    assert logged_in_client.post(f"/api/migrations/status/{job.id}", json={"action": "cancel"}).status_code == 404
    assert logged_in_client.get(f"/api/migrations/status/{job.id}/items").status_code == 404
    assert logged_in_client.get("/api/migrations/status/999999").status_code == 404


@pytest.mark.parametrize("action", ["pause", "resume", "cancel"])
def test_invalid_control_actions_conflict(logged_in_client, action):
    job_id = _start(logged_in_client).get_json()["jobId"]

    response = logged_in_client.post(f"/api/migrations/status/{job_id}", json={"action": action})

    assert response.status_code == 409
    body = response.get_json()
    assert body["currentStatus"] == "completed"


def test_unknown_control_action_is_rejected(logged_in_client):
    job_id = _start(logged_in_client).get_json()["jobId"]

    response = logged_in_client.post(f"/api/migrations/status/{job_id}", json={"action": "restart"})

    assert response.status_code == 400


def test_pause_resume_and_rollback_through_api(logged_in_client, test_organization):
    from crm_migrator.migration.services import build_orchestrator

    job = build_orchestrator().start(
        test_organization.id,
        "other",
        {},
        source_params={"records": RECORDS},
        execute=False,
    )
    job_id = job.id

    paused = logged_in_client.post(f"/api/migrations/status/{job_id}", json={"action": "pause"})
    assert paused.status_code == 200
    assert paused.get_json()["job"]["status"] == "paused"

    resumed = logged_in_client.post(f"/api/migrations/status/{job_id}", json={"action": "resume"})
    assert resumed.status_code == 200
    assert resumed.get_json()["job"]["status"] == "completed"
    assert "taskId" not in resumed.get_json()

    rolled_back = logged_in_client.post(f"/api/migrations/status/{job_id}", json={"action": "rollback"})
    assert rolled_back.status_code == 200
    body = rolled_back.get_json()["job"]
    assert body["status"] == "cancelled"
    assert body["rolledBackAt"] is not None
    assert db.session.get(MigrationJob, job_id).status == MigrationJobStatus.CANCELLED
    assert db.session.scalar(select(func.count()).select_from(StagingContact)) == 0


def _csv_upload(content: bytes, **options):
    return {"file": (io.BytesIO(content), "contacts.csv"), "options": json.dumps(options)}


def test_start_rejects_server_side_paths_and_endpoints(logged_in_client):
    response = logged_in_client.post(
        "/api/migrations/other/start",
        json={"records": RECORDS, "path": "/etc/passwd"},
    )
    assert response.status_code == 400
    assert response.get_json()["details"] == ["'path' cannot be set through the API."]

    response = logged_in_client.post(
        "/api/migrations/acculynx/start",
        json={"params": {"apiKey": "ak_live_0123456789", "baseUrl": "http://169.254.169.254/latest"}},
    )
    assert response.status_code == 400
    assert response.get_json()["details"] == ["'baseUrl' cannot be set through the API."]

    response = logged_in_client.post("/api/migrations/csv/start", json={"path": "/etc/passwd"})
    assert response.status_code == 400
    assert response.get_json()["details"] == ["CSV Flat File requires an uploaded 'file'."]

    response = logged_in_client.post(
        "/api/migrations/csv/dry-run",
        data={"file": (io.BytesIO(b"external_id\nc1\n"), "a.csv"), "options": json.dumps({"path": "/etc/passwd"})},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert _job_count() == 0


def test_csv_start_uses_the_uploaded_file(app, logged_in_client, test_organization):
    export = b"external_id,first_name,email\nc1,Ada,ada@example.com\nc2,Grace,\n,Nobody,\n"

    response = logged_in_client.post(
        "/api/migrations/csv/start",
        data=_csv_upload(export, batchSize=2),
        content_type="multipart/form-data",
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["job"]["status"] == "completed"
    assert body["job"]["totals"] == {"total": 3, "imported": 2, "skipped": 0, "errors": 1}

    stored = Path(db.session.get(MigrationJob, body["jobId"]).source_params_json["path"])
    upload_dir = Path(app.config["MIGRATION_UPLOAD_DIR"]) / str(test_organization.id)
    assert stored.parent == upload_dir
    assert stored.name.endswith("-contacts.csv")
    assert stored.read_bytes() == export


def test_rejected_csv_start_keeps_no_upload(app, logged_in_client, test_organization):
    response = logged_in_client.post(
        "/api/migrations/csv/start",
        data=_csv_upload(b"external_id\nc1\n", batchSize=0),
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["details"] == ["batchSize must be greater than 0."]
    upload_dir = Path(app.config["MIGRATION_UPLOAD_DIR"]) / str(test_organization.id)
    assert list(upload_dir.iterdir()) == []
    assert _job_count() == 0


def test_preflight_counts_records_without_creating_a_job(logged_in_client):
    response = logged_in_client.post("/api/migrations/other/preflight", json={"records": RECORDS})

    assert response.status_code == 200
    body = response.get_json()
    assert body["source"] == "other"
    assert body["ok"] is True
    assert body["entityCounts"] == {"contact": 2, "job": 1, "document": 0}
    assert body["estimatedDuration"]
    assert body["warnings"] == []
    assert _job_count() == 0


def test_preflight_reports_rejected_credentials(logged_in_client, monkeypatch):
    class RejectingAdapter:
        closed = False

        def count_entities(self):
            raise TerminalSourceError("AccuLynx rejected the credentials (HTTP 401).")

        def close(self):
            RejectingAdapter.closed = True

    built = []

    def build_preview_adapter(source, params):
        built.append((source, params))
        return RejectingAdapter()

    monkeypatch.setattr("crm_migrator.routes.migrations.build_preview_adapter", build_preview_adapter)

    response = logged_in_client.post("/api/migrations/acculynx/preflight", json={"apiKey": "ak_live_0123456789"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["ok"] is False
    assert body["warnings"] == ["AccuLynx rejected the credentials (HTTP 401)."]
    assert built == [("acculynx", {"apiKey": "ak_live_0123456789"})]
    assert RejectingAdapter.closed is True

    response = logged_in_client.post(
        "/api/migrations/acculynx/preflight",
        json={"apiKey": "ak_live_0123456789", "baseUrl": "http://10.0.0.5"},
    )
    assert response.status_code == 400


def test_preflight_parses_csv_upload_in_memory(app, logged_in_client):
    response = logged_in_client.post(
        "/api/migrations/csv/preflight",
        data={"file": (io.BytesIO(b"external_id,first_name\nc1,Ada\nc2,Grace\n"), "contacts.csv")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["ok"] is True
    assert body["entityCounts"] == {"contact": 2, "job": 0, "document": 0}
    assert not Path(app.config["MIGRATION_UPLOAD_DIR"]).exists()

    missing_header = logged_in_client.post(
        "/api/migrations/csv/preflight",
        data={"file": (io.BytesIO(b"first_name\nAda\n"), "contacts.csv")},
        content_type="multipart/form-data",
    ).get_json()
    assert missing_header["ok"] is False
    assert "external_id" in missing_header["warnings"][0]


def test_csv_upload_must_be_a_csv_file(logged_in_client):
    response = logged_in_client.post(
        "/api/migrations/csv/start",
        data={"file": (io.BytesIO(b"external_id\nc1\n"), "contacts.xlsx")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["details"] == ["CSV Flat File uploads must be .csv files."]
    assert _job_count() == 0
