"""Exception taxonomy for the migration engine."""

from __future__ import annotations

from typing import Sequence


class MigrationError(Exception):
    """Base error for migration engine failures."""


class ValidationError(MigrationError):
    """Raised when job options are rejected; no job row is created."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("Invalid migration options: " + "; ".join(self.errors))


class InvalidStateTransition(MigrationError):
    """Raised when a control action is not allowed from the job's current status."""

    def __init__(self, job_id: int | None, current: str, target: str) -> None:
        super().__init__(f"Migration job {job_id} cannot move from '{current}' to '{target}'.")
        self.job_id = job_id
        self.current = current
        self.target = target


class SourceError(MigrationError):
    """Base error raised by source adapters and external collaborators."""


class TransientSourceError(SourceError):
    """Timeouts, rate limits and other failures worth retrying."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TerminalSourceError(SourceError):
    """Authentication failures or bad credentials; the job cannot continue."""


class AttachmentError(SourceError):
    """A single document could not be downloaded; only that item is marked as an error."""


class ConstraintConflictError(MigrationError):
    """Raised when a racing writer keeps winning the upsert for the same external id."""

    def __init__(self, external_id: str, attempts: int) -> None:
        super().__init__(f"Upsert for external id '{external_id}' conflicted {attempts} times.")
        self.external_id = external_id
        self.attempts = attempts


class RollbackIncompleteError(MigrationError):
    """Raised when a rollback stops partway; the job stays ROLLING_BACK."""

    def __init__(self, job_id: int, remaining: int, reason: str) -> None:
        super().__init__(
            f"Rollback of migration job {job_id} is incomplete ({remaining} staged rows remain): {reason}"
        )
        self.job_id = job_id
        self.remaining = remaining
        self.reason = reason
