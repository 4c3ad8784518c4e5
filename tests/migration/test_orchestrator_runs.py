import pytest
from sqlalchemy import func, select, update

from crm_migrator.migration.errors import (
    AttachmentError,
    InvalidStateTransition,
    TerminalSourceError,
    TransientSourceError,
    ValidationError,
)
from crm_migrator.models import (
    MatchDecision,
    MigrationItem,
    MigrationJob,
    MigrationJobStatus,
    StagingContact,
    StagingJob,
    db,
)


def _count(model, *criteria):
    return db.session.scalar(select(func.count()).select_from(model).where(*criteria)) or 0


def _items(job_id):
    return list(
        db.session.scalars(select(MigrationItem).where(MigrationItem.job_id == job_id).order_by(MigrationItem.id))
    )


def test_start_runs_job_to_completion(orchestrator, fake_adapter_cls, sample_records, test_organization):
    adapter = fake_adapter_cls(sample_records)

    job = orchestrator.start(test_organization.id, "other", {"batchSize": 1}, adapter=adapter)

    assert job.status == MigrationJobStatus.COMPLETED
    assert job.total_records == 2
    assert job.imported_records == 2
    assert job.progress_percent == 100
    assert job.started_at is not None and job.completed_at is not None
    assert job.cursor_json["last_external_id"] == "j1"
    assert adapter.calls == [None, "1"]
    assert adapter.closed is False

    contact = db.session.scalars(select(StagingContact)).one()
    assert contact.source_job_id == job.id
    assert contact.full_name == "Ada Lovelace"
    assert contact.email_normalized == "ada@example.com"
    staged_job = db.session.scalars(select(StagingJob)).one()
    assert staged_job.status == "COMPLETED"
    assert [item.match_decision for item in _items(job.id)] == [MatchDecision.NEW, MatchDecision.NEW]


def test_start_rejects_invalid_options_without_creating_job(orchestrator, fake_adapter_cls, test_organization):
    with pytest.raises(ValidationError):
        orchestrator.start(test_organization.id, "other", {"batchSize": 0}, adapter=fake_adapter_cls([]))
    with pytest.raises(ValidationError):
        orchestrator.start(test_organization.id, "salesforce", {}, adapter=fake_adapter_cls([]))
    with pytest.raises(ValidationError):
        orchestrator.start(test_organization.id, "acculynx", {}, source_params={"apiKey": "short"})

    assert _count(MigrationJob) == 0


def test_start_without_execute_leaves_job_running(orchestrator, test_organization):
    job = orchestrator.start(
        test_organization.id,
        "other",
        {},
        source_params={"records": [{"external_id": "c1", "fields": {"first_name": "Ada"}}]},
        execute=False,
    )

    assert job.status == MigrationJobStatus.RUNNING
    assert job.source_params_json == {"records": [{"external_id": "c1", "fields": {"first_name": "Ada"}}]}

    finished = orchestrator.run(job.id)
    assert finished.status == MigrationJobStatus.COMPLETED
    assert finished.imported_records == 1


def test_replaying_the_same_source_creates_no_new_rows(
    orchestrator,
    fake_adapter_cls,
    sample_records,
    test_organization,
):
    first = orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(sample_records))
    second = orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(sample_records))

    assert first.imported_records == 2
    assert second.status == MigrationJobStatus.COMPLETED
    assert second.imported_records == 0
    assert second.skipped_records == 2
    assert {item.match_decision for item in _items(second.id)} == {MatchDecision.DUPLICATE}
    assert {item.match_strategy for item in _items(second.id)} == {"external_id"}
    assert _count(StagingContact) == 1
    assert _count(StagingJob) == 1
    assert _count(StagingContact, StagingContact.source_job_id == second.id) == 0


def test_second_source_fills_blank_fields_on_matched_contact(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    sample_records,
    test_organization,
):
    orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(sample_records))
    update_job = orchestrator.start(
        test_organization.id,
        "other",
        {},
        adapter=fake_adapter_cls([record_factory("c9", email="ADA@example.com ", phone="(555) 123-4567")]),
    )

    item = _items(update_job.id)[0]
    assert item.match_decision == MatchDecision.UPDATED
    assert item.match_strategy == "email"
    assert item.match_confidence == 1.0
    assert item.changes_json == {"phone": {"before": None, "after": "(555) 123-4567"}}

    contact = db.session.scalars(select(StagingContact)).one()
    assert contact.phone_normalized == "5551234567"
    assert contact.source_job_id != update_job.id


def test_pause_mid_page_then_resume_from_checkpoint(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    test_organization,
    monkeypatch,
):
    records = [record_factory(f"c{n}", first_name=f"Person {n}") for n in range(1, 6)]
    adapter = fake_adapter_cls(records)
    original_write = orchestrator.writer.write
    pause_after = {"c2"}

    def pausing_write(job, record, match, **kwargs):
        result = original_write(job, record, match, **kwargs)
        if record.external_id in pause_after:
            db.session.execute(
                update(MigrationJob).where(MigrationJob.id == job.id).values(status=MigrationJobStatus.PAUSED)
            )
        return result

    monkeypatch.setattr(orchestrator.writer, "write", pausing_write)
    job = orchestrator.start(test_organization.id, "other", {"batchSize": 5}, adapter=adapter)

    assert job.status == MigrationJobStatus.PAUSED
    assert job.processed_records == 2
    assert job.cursor_json == {"page_cursor": None, "next_cursor": None, "last_external_id": "c2", "page_index": 1}

    pause_after.clear()
    resumed = orchestrator.resume(job.id, adapter=adapter)

    assert resumed.status == MigrationJobStatus.COMPLETED
    assert [item.external_id for item in _items(job.id)] == ["c1", "c2", "c3", "c4", "c5"]
    assert resumed.imported_records == 5
    assert _count(StagingContact) == 5
    assert adapter.calls == [None, None]


def test_pause_and_cancel_control_actions(orchestrator, test_organization):
    job = orchestrator.start(
        test_organization.id,
        "other",
        {},
        source_params={"records": [{"external_id": "c1"}]},
        execute=False,
    )

    orchestrator.pause(job.id)
    assert orchestrator.get_status(job.id)["status"] == "paused"

    orchestrator.cancel(job.id)
    assert job.status == MigrationJobStatus.CANCELLED
    assert job.completed_at is not None

    with pytest.raises(InvalidStateTransition):
        orchestrator.resume(job.id)
    assert job.status == MigrationJobStatus.CANCELLED


def test_run_ignores_jobs_that_are_not_running(orchestrator, fake_adapter_cls, sample_records, test_organization):
    job = orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(sample_records))
    adapter = fake_adapter_cls(sample_records)

    assert orchestrator.run(job.id, adapter=adapter).status == MigrationJobStatus.COMPLETED
    assert adapter.calls == []


def test_transient_failures_exhausting_retries_pause_the_job(
    orchestrator,
    fake_adapter_cls,
    sample_records,
    test_organization,
):
    error = TransientSourceError("HTTP 429 rate limited", retry_after=1)
    adapter = fake_adapter_cls(sample_records, failures={None: [error, error, error]})

    job = orchestrator.start(test_organization.id, "other", {}, adapter=adapter)

    assert job.status == MigrationJobStatus.PAUSED
    assert "rate limited" in job.last_error
    assert adapter.calls == [None, None, None]
    assert job.processed_records == 0

    resumed = orchestrator.resume(job.id, adapter=adapter)
    assert resumed.status == MigrationJobStatus.COMPLETED
    assert resumed.last_error is None
    assert resumed.imported_records == 2


def test_transient_failure_recovered_within_retry_budget(
    orchestrator,
    fake_adapter_cls,
    sample_records,
    test_organization,
):
    error = TransientSourceError("timeout")
    adapter = fake_adapter_cls(sample_records, failures={None: [error, error]})

    job = orchestrator.start(test_organization.id, "other", {}, adapter=adapter)

    assert job.status == MigrationJobStatus.COMPLETED
    assert adapter.calls == [None, None, None]


def test_terminal_failure_fails_the_job(orchestrator, fake_adapter_cls, sample_records, test_organization):
    adapter = fake_adapter_cls(
        sample_records,
        failures={"1": [TerminalSourceError("acculynx rejected the credentials (HTTP 401).")]},
    )

    job = orchestrator.start(test_organization.id, "other", {"batchSize": 1}, adapter=adapter)

    assert job.status == MigrationJobStatus.FAILED
    assert job.imported_records == 1
    assert "HTTP 401" in job.last_error
    assert job.completed_at is not None
    assert adapter.calls == [None, "1"]

    with pytest.raises(InvalidStateTransition):
        orchestrator.resume(job.id, adapter=adapter)


def test_unexpected_error_keeps_job_running_for_a_later_rerun(
    orchestrator,
    fake_adapter_cls,
    sample_records,
    test_organization,
    monkeypatch,
):
    adapter = fake_adapter_cls(sample_records)

    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(orchestrator, "_apply_result", boom)
    with pytest.raises(RuntimeError):
        orchestrator.start(test_organization.id, "other", {}, adapter=adapter)

    job = db.session.scalars(select(MigrationJob)).one()
    assert job.status == MigrationJobStatus.RUNNING
    assert job.last_error == "RuntimeError: database went away"
    assert _items(job.id) == []

    monkeypatch.undo()
    finished = orchestrator.run(job.id, adapter=adapter)
    assert finished.status == MigrationJobStatus.COMPLETED
    assert [item.external_id for item in _items(job.id)] == ["c1", "j1"]


def test_document_failure_is_recorded_per_record(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    attachment_fetcher,
    test_organization,
):
    attachment_fetcher.fail["d2"] = ValueError("Document d2 download failed (HTTP 404).")
    records = [
        record_factory("d1", "document", url="https://files.example.com/d1.pdf", filename="d1.pdf"),
        record_factory("d2", "document", url="https://files.example.com/d2.pdf", filename="d2.pdf"),
        record_factory("c1", first_name="Ada"),
    ]

    job = orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(records))

    assert job.status == MigrationJobStatus.COMPLETED
    assert job.imported_records == 2
    assert job.error_records == 1
    assert "HTTP 404" in job.last_error

    items = {item.external_id: item for item in _items(job.id)}
    assert items["d1"].changes_json["file"]["after"]["path"] == f"/artifacts/{job.id}/d1"
    assert items["d2"].error.startswith("ValueError:")
    assert attachment_fetcher.fetched == ["d1"]


def test_documents_are_not_downloaded_twice(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    attachment_fetcher,
    test_organization,
):
    records = [record_factory("d1", "document", url="https://files.example.com/d1.pdf")]

    orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(records))
    replay = orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(records))

    assert attachment_fetcher.fetched == ["d1"]
    assert _items(replay.id)[0].match_decision == MatchDecision.DUPLICATE
    assert replay.skipped_records == 1


def test_skip_flags_record_skip_reason(orchestrator, fake_adapter_cls, sample_records, test_organization):
    job = orchestrator.start(
        test_organization.id,
        "other",
        {"skipContacts": True},
        adapter=fake_adapter_cls(sample_records),
    )

    items = {item.external_id: item for item in _items(job.id)}
    assert items["c1"].skip_reason == "skip_contacts"
    assert items["c1"].match_decision is None
    assert items["j1"].skip_reason is None
    assert job.skipped_records == 1
    assert job.imported_records == 1
    assert _count(StagingContact) == 0


def test_date_filter_excludes_records_without_items(orchestrator, fake_adapter_cls, record_factory, test_organization):
    records = [
        record_factory("c-old", first_name="Old", created_at="2023-01-01"),
        record_factory("c-new", first_name="New", created_at="2024-06-01T10:00:00Z"),
        record_factory("c-undated", first_name="Undated"),
    ]

    job = orchestrator.start(
        test_organization.id,
        "other",
        {"dateFilter": {"after": "2024-01-01"}},
        adapter=fake_adapter_cls(records, total_count=3),
    )

    assert job.status == MigrationJobStatus.COMPLETED
    assert [item.external_id for item in _items(job.id)] == ["c-new", "c-undated"]
    assert job.total_records == 2
    assert job.imported_records == 2
    assert job.progress_percent == 100


def test_totals_reconcile_on_completion(orchestrator, fake_adapter_cls, sample_records, test_organization):
    job = orchestrator.start(
        test_organization.id,
        "other",
        {"batchSize": 1},
        adapter=fake_adapter_cls(sample_records, total_count=10),
    )

    status = orchestrator.get_status(job.id)
    assert status["totals"] == {"total": 2, "imported": 2, "skipped": 0, "errors": 0}
    assert status["percentComplete"] == 100
    assert status["successRate"] == 100
    assert status["estimatedRemaining"] == "0s"


def test_percent_stays_provisional_until_completion(orchestrator, fake_adapter_cls, record_factory, test_organization):
    records = [record_factory(f"c{n}", first_name=f"Person {n}") for n in range(1, 5)]
    seen = []

    def snapshot(cursor):
        job = db.session.scalars(select(MigrationJob)).one()
        seen.append((cursor, orchestrator.get_status(job.id)["percentComplete"], job.progress_percent))

    original_write = orchestrator.writer.write

    def observing_write(job, record, match, **kwargs):
        result = original_write(job, record, match, **kwargs)
        seen.append((record.external_id, orchestrator.get_status(job.id)["percentComplete"], job.progress_percent))
        return result

    orchestrator.writer.write = observing_write
    # Without a source total the known total only grows page by page.
    job = orchestrator.start(
        test_organization.id,
        "other",
        {"batchSize": 2},
        adapter=fake_adapter_cls(records, on_fetch=snapshot),
    )

    reported = [percent for _, percent, _ in seen]
    stored = [percent for _, _, percent in seen if percent is not None]
    assert ("2", 99, 99) in seen
    assert all(0 <= percent < 100 for percent in reported)
    assert reported == sorted(reported)
    assert stored == sorted(stored)
    assert job.progress_percent == 100
    assert orchestrator.get_status(job.id)["percentComplete"] == 100


def test_rejected_source_rows_become_error_items(orchestrator, test_organization):
    records = [
        {"entity_type": "contact", "fields": {"first_name": "No Id"}},
        {"external_id": "c1", "fields": {"first_name": "Ada", "last_name": "Lovelace"}},
        {"external_id": "x1", "entity_type": "invoice"},
    ]

    job = orchestrator.start(test_organization.id, "other", {"batchSize": 2}, source_params={"records": records})

    assert job.status == MigrationJobStatus.COMPLETED
    assert job.imported_records == 1
    assert job.error_records == 2
    assert job.processed_records == job.total_records == 3
    items = {item.external_id: item for item in _items(job.id)}
    assert items["record-0"].error == "ValueError: Record 0: Canonical records require an external_id."
    assert items["record-0"].match_decision is None
    assert "Unknown entity_type 'invoice'" in items["record-2"].error
    assert items["c1"].error is None
    assert _count(StagingContact) == 1


def test_expired_document_link_fails_only_that_document(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    attachment_fetcher,
    test_organization,
):
    attachment_fetcher.fail["d1"] = AttachmentError("Document d1 download was refused (HTTP 403).")
    records = [
        record_factory("d1", "document", url="https://files.example.com/d1.pdf"),
        record_factory("c1", first_name="Ada"),
        record_factory("d2", "document", url="https://files.example.com/d2.pdf"),
    ]

    job = orchestrator.start(test_organization.id, "other", {}, adapter=fake_adapter_cls(records))

    assert job.status == MigrationJobStatus.COMPLETED
    assert job.imported_records == 2
    assert job.error_records == 1
    assert attachment_fetcher.fetched == ["d2"]
    items = {item.external_id: item for item in _items(job.id)}
    assert items["d1"].error.startswith("AttachmentError:")
    assert _count(StagingContact) == 1


def test_resume_after_repeated_external_id_on_a_page(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    test_organization,
    monkeypatch,
):
    records = [
        record_factory("c1", first_name="Ada"),
        record_factory("x", first_name="First Copy"),
        record_factory("x", first_name="Second Copy"),
        record_factory("c4", first_name="Grace"),
    ]
    adapter = fake_adapter_cls(records)
    original_write = orchestrator.writer.write
    writes = []

    def pausing_write(job, record, match, **kwargs):
        result = original_write(job, record, match, **kwargs)
        writes.append(record.fields["first_name"])
        if len(writes) == 3:
            db.session.execute(
                update(MigrationJob).where(MigrationJob.id == job.id).values(status=MigrationJobStatus.PAUSED)
            )
        return result

    monkeypatch.setattr(orchestrator.writer, "write", pausing_write)
    job = orchestrator.start(test_organization.id, "other", {"batchSize": 10}, adapter=adapter)

    assert job.status == MigrationJobStatus.PAUSED
    assert job.cursor_json["last_external_id"] == "x"
    assert job.cursor_json["page_index"] == 2

    resumed = orchestrator.resume(job.id, adapter=adapter)

    assert resumed.status == MigrationJobStatus.COMPLETED
    assert writes == ["Ada", "First Copy", "Second Copy", "Grace"]
    assert [item.external_id for item in _items(job.id)] == ["c1", "x", "x", "c4"]
    assert resumed.processed_records == resumed.total_records == 4


def test_checkpoint_without_page_index_resumes_after_the_id(
    orchestrator,
    fake_adapter_cls,
    record_factory,
    test_organization,
):
    records = [record_factory(f"c{n}", first_name=f"Person {n}") for n in range(1, 4)]
    adapter = fake_adapter_cls(records)
    job = orchestrator.start(test_organization.id, "other", {}, adapter=adapter, execute=False)
    job.cursor_json = {"page_cursor": None, "next_cursor": None, "last_external_id": "c1"}
    db.session.commit()

    finished = orchestrator.run(job.id, adapter=adapter)

    assert finished.status == MigrationJobStatus.COMPLETED
    assert [item.external_id for item in _items(job.id)] == ["c2", "c3"]
