"""Prometheus metrics helpers for the migration engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_records_counter = Counter(
    "migration_records_processed_total",
    "Migration records processed by source and outcome.",
    ["source", "outcome"],
)
_transition_counter = Counter(
    "migration_job_transitions_total",
    "Migration job status transitions.",
    ["source", "status"],
)
_fetch_retry_counter = Counter(
    "migration_source_fetch_retries_total",
    "Transient source failures that triggered a retry.",
    ["source"],
)
_page_duration = Histogram(
    "migration_page_duration_seconds",
    "Time spent processing one source page.",
    ["source"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
)
_rollback_duration = Histogram(
    "migration_rollback_duration_seconds",
    "Duration of migration rollbacks in seconds.",
    ["result"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)


def record_record_outcome(source: str, outcome: Literal["imported", "skipped", "error"]) -> None:
    _records_counter.labels(source=source, outcome=outcome).inc()


def record_transition(source: str, status: str) -> None:
    _transition_counter.labels(source=source, status=status).inc()


def record_fetch_retry(source: str) -> None:
    _fetch_retry_counter.labels(source=source).inc()


def record_page_duration(source: str, duration_seconds: float) -> None:
    _page_duration.labels(source=source).observe(duration_seconds)


def record_rollback(*, result: Literal["success", "incomplete"], duration_seconds: float) -> None:
    """Capture metrics for a rollback attempt."""

    _rollback_duration.labels(result=result).observe(duration_seconds)
