from datetime import datetime, timezone

import pytest

from crm_migrator.migration.errors import InvalidStateTransition, ValidationError
from crm_migrator.migration.options import MigrationOptions
from crm_migrator.migration.pipeline.state import ALLOWED_TRANSITIONS, can_transition, transition
from crm_migrator.models import MigrationJob, MigrationJobStatus, MigrationSource, db

S = MigrationJobStatus


def _make_job(org, status=S.PENDING):
    job = MigrationJob(org_id=org.id, source=MigrationSource.CSV, status=status, options_json={})
    db.session.add(job)
    db.session.commit()
    return job


def test_options_coerce_defaults():
    options = MigrationOptions.coerce({})
    assert options.batch_size == 100
    assert options.dry_run is False
    assert options.date_after is None


def test_options_coerce_accepts_camel_case_and_dates():
    options = MigrationOptions.coerce(
        {
            "dryRun": "true",
            "batchSize": "250",
            "skipDocuments": True,
            "dateFilter": {"after": "2024-01-01", "before": "2024-01-31"},
        }
    )

    assert options.dry_run is True
    assert options.batch_size == 250
    assert options.skip_documents is True
    assert options.date_after == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert options.date_before.date().isoformat() == "2024-01-31"
    assert options.in_window(datetime(2024, 1, 31, 23, 0, tzinfo=timezone.utc))
    assert not options.in_window(datetime(2023, 12, 31, tzinfo=timezone.utc))
    assert options.in_window(None)


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"batchSize": 0}, "batchSize must be greater than 0."),
        ({"batchSize": 5000}, "batchSize must be at most 1000."),
        ({"batchSize": True}, "batchSize must be an integer."),
        ({"dryRun": "maybe"}, "dryRun must be a boolean."),
        ({"dateFilter": {"after": "yesterday"}}, "dateFilter.after must be an ISO-8601 date or datetime."),
        (
            {"dateFilter": {"after": "2024-02-01", "before": "2024-01-01"}},
            "dateFilter.after must not be later than dateFilter.before.",
        ),
    ],
)
def test_options_coerce_rejects_invalid_input(payload, message):
    with pytest.raises(ValidationError) as excinfo:
        MigrationOptions.coerce(payload)
    assert message in excinfo.value.errors


def test_options_round_trip_through_job_json():
    options = MigrationOptions.coerce({"dateFilter": {"after": "2024-03-01T12:00:00Z"}, "overwriteExisting": 1})
    restored = MigrationOptions.from_json(options.as_json())
    assert restored == options


def test_transition_table_matches_lifecycle():
    assert ALLOWED_TRANSITIONS[S.PENDING] == {S.RUNNING}
    assert ALLOWED_TRANSITIONS[S.RUNNING] == {S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELLED}
    assert ALLOWED_TRANSITIONS[S.PAUSED] == {S.RUNNING, S.CANCELLED}
    assert ALLOWED_TRANSITIONS[S.COMPLETED] == {S.ROLLING_BACK}
    assert ALLOWED_TRANSITIONS[S.FAILED] == {S.ROLLING_BACK}
    assert ALLOWED_TRANSITIONS[S.CANCELLED] == frozenset()
    assert can_transition(S.ROLLING_BACK, S.CANCELLED)
    assert not can_transition(S.CANCELLED, S.RUNNING)


def test_transition_stamps_lifecycle_timestamps(test_organization):
    job = _make_job(test_organization)

    transition(job, S.RUNNING)
    assert job.started_at is not None
    assert job.completed_at is None

    transition(job, S.COMPLETED)
    assert job.completed_at is not None


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.PAUSED),
        (S.PENDING, S.COMPLETED),
        (S.PAUSED, S.COMPLETED),
        (S.COMPLETED, S.RUNNING),
        (S.CANCELLED, S.ROLLING_BACK),
        (S.RUNNING, S.ROLLING_BACK),
    ],
)
def test_invalid_transition_has_no_side_effect(test_organization, current, target):
    job = _make_job(test_organization, status=current)

    with pytest.raises(InvalidStateTransition) as excinfo:
        transition(job, target)

    assert job.status == current
    assert job.started_at is None
    assert excinfo.value.current == current.value
    assert excinfo.value.target == target.value
