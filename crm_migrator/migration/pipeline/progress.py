"""
Progress and estimation helpers for migration jobs.

Rounding is half-up (``2.5 -> 3``) rather than Python's banker's rounding so
the numbers match what operators see in the onboarding UI.
"""

from __future__ import annotations

import math
from datetime import datetime

from crm_migrator.models import MigrationJob, MigrationJobStatus, as_utc, utcnow

# Totals stay provisional until the source is exhausted, so an unfinished job
# never reports 100.
PROVISIONAL_PERCENT_CAP = 99
_UNFINISHED = (MigrationJobStatus.PENDING, MigrationJobStatus.RUNNING, MigrationJobStatus.PAUSED)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percent_complete(imported: int, skipped: int, errors: int, total: int) -> int:
    """Share of records processed, clamped to ``[0, 100]``; 0 when ``total`` is 0."""
    if not total or total <= 0:
        return 0
    value = round_half_up((imported + skipped + errors) / total * 100)
    return max(0, min(100, value))


def success_rate(imported: int, total: int) -> int:
    if not total or total <= 0:
        return 0
    return round_half_up(imported / total * 100)


def format_duration(seconds: float) -> str:
    """
    Render a duration the way the migration screens do.

    >>> format_duration(45), format_duration(90), format_duration(3661)
    ('45s', '1m 30s', '1h 1m')
    """

    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total % 3600) // 60}m"


def estimate_duration(contacts: int, jobs: int) -> str:
    """Coarse pre-flight estimate: 100 contacts or 50 jobs per minute."""
    minutes = math.ceil(contacts / 100 + jobs / 50)
    if minutes < 60:
        return f"{minutes} minutes"
    return f"{math.ceil(minutes / 60)} hours"


def estimate_remaining(job: MigrationJob, now: datetime | None = None) -> str | None:
    """Extrapolate the time left from the job's throughput so far."""

    processed = job.processed_records
    started_at = as_utc(job.started_at)
    if not processed or started_at is None or not job.total_records:
        return None
    remaining = max(0, job.total_records - processed)
    if remaining == 0:
        return format_duration(0)
    elapsed = ((now or utcnow()) - started_at).total_seconds()
    if elapsed <= 0:
        return None
    return format_duration(elapsed / processed * remaining)


def job_percent(job: MigrationJob) -> int:
    return percent_complete(
        job.imported_records or 0,
        job.skipped_records or 0,
        job.error_records or 0,
        job.total_records or 0,
    )


def reported_percent(job: MigrationJob) -> int:
    """
    ``percentComplete`` as shown to callers.

    While the job is unfinished the value is the stored high-water mark, or
    the current formula value when higher, capped below 100.
    """
    current = job_percent(job)
    if job.status in _UNFINISHED:
        current = min(current, PROVISIONAL_PERCENT_CAP)
    return max(job.progress_percent or 0, current)


def status_payload(job: MigrationJob, now: datetime | None = None) -> dict:
    """Status snapshot returned by ``get_status`` and the status endpoint."""

    return {
        "id": job.id,
        "source": job.source.value,
        "status": job.status.value,
        "dryRun": job.dry_run,
        "totals": {
            "total": job.total_records or 0,
            "imported": job.imported_records or 0,
            "skipped": job.skipped_records or 0,
            "errors": job.error_records or 0,
        },
        "percentComplete": reported_percent(job),
        "successRate": success_rate(job.imported_records or 0, job.total_records or 0),
        "estimatedRemaining": estimate_remaining(job, now),
        "lastError": job.last_error,
        "cursor": job.cursor_json,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "rolledBackAt": job.rolled_back_at.isoformat() if job.rolled_back_at else None,
    }
