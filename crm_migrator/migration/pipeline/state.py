"""Migration job state machine."""

from __future__ import annotations

import logging

from crm_migrator.models import MigrationJob, MigrationJobStatus, utcnow

from ..errors import InvalidStateTransition
from ..metrics import record_transition

logger = logging.getLogger(__name__)

S = MigrationJobStatus

ALLOWED_TRANSITIONS: dict[MigrationJobStatus, frozenset[MigrationJobStatus]] = {
    S.PENDING: frozenset({S.RUNNING}),
    S.RUNNING: frozenset({S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELLED}),
    S.PAUSED: frozenset({S.RUNNING, S.CANCELLED}),
    S.COMPLETED: frozenset({S.ROLLING_BACK}),
    S.FAILED: frozenset({S.ROLLING_BACK}),
    # A partial rollback may be retried; only success leaves ROLLING_BACK.
    S.ROLLING_BACK: frozenset({S.ROLLING_BACK, S.CANCELLED}),
    S.CANCELLED: frozenset(),
}

FINISHED_STATUSES = frozenset({S.COMPLETED, S.FAILED, S.CANCELLED})


def can_transition(current: MigrationJobStatus, target: MigrationJobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(job: MigrationJob, target: MigrationJobStatus) -> None:
    """
    Move ``job`` to ``target`` in memory; the caller commits.

    Raises:
        InvalidStateTransition: when the table does not allow the move. The
            job is left untouched.
    """

    current = job.status
    if not can_transition(current, target):
        raise InvalidStateTransition(job.id, current.value, target.value)

    job.status = target
    now = utcnow()
    if target == S.RUNNING and job.started_at is None:
        job.started_at = now
    if target in FINISHED_STATUSES and job.completed_at is None:
        job.completed_at = now

    record_transition(job.source.value, target.value)
    logger.info(
        "Migration job %s moved from %s to %s",
        job.id,
        current.value,
        target.value,
        extra={
            "migration_job_id": job.id,
            "migration_source": job.source.value,
            "from_status": current.value,
            "to_status": target.value,
        },
    )
