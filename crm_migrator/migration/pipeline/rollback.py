"""
Rollback of a finished migration job.

Removes exactly the staging rows tagged with the job's id (never by
external id alone) and reverts the job's blank-fills on rows other jobs own.
Audit items are left in place.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import delete, func, select
from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_migrator.models import (
    STAGING_MODELS,
    MatchDecision,
    MigrationItem,
    MigrationJob,
    MigrationJobStatus,
    db,
    utcnow,
)

from ..attachments import AttachmentFetcher
from ..errors import RollbackIncompleteError
from ..metrics import record_rollback
from .normalize import build_match_keys
from .state import transition

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500


class RollbackManager:
    """Undo the destination writes of one migration job."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        attachment_fetcher: AttachmentFetcher | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.session: Session = session or db.session
        self.attachment_fetcher = attachment_fetcher
        self.chunk_size = max(1, chunk_size)

    def rollback(self, job_id: int) -> MigrationJob:
        """
        Roll back a COMPLETED or FAILED job (or retry a partial rollback).

        Raises:
            InvalidStateTransition: the job is in any other status.
            RollbackIncompleteError: deletion stopped partway; the job stays
                ROLLING_BACK with ``last_error`` set.
        """

        job = self.session.get(MigrationJob, job_id)
        if job is None:
            raise NoResultFound(f"Migration job {job_id} not found.")

        transition(job, MigrationJobStatus.ROLLING_BACK)
        job.last_error = None
        self.session.commit()

        started = time.perf_counter()
        try:
            reverted = 0 if job.dry_run else self._revert_fills(job)
            deleted = self._delete_tagged(job)
            removed_files = 0
            if self.attachment_fetcher is not None and not job.dry_run:
                removed_files = self.attachment_fetcher.remove_job(job)
            remaining = self.count_tagged(job.id)
            if remaining:
                raise RollbackIncompleteError(job.id, remaining, "tagged staging rows remain after delete")
        except RollbackIncompleteError as exc:
            self._mark_incomplete(job_id, str(exc), started)
            raise
        except (SQLAlchemyError, OSError) as exc:
            remaining = self._mark_incomplete(job_id, str(exc), started)
            raise RollbackIncompleteError(job_id, remaining, str(exc)) from exc

        transition(job, MigrationJobStatus.CANCELLED)
        job.rolled_back_at = utcnow()
        self.session.commit()
        record_rollback(result="success", duration_seconds=time.perf_counter() - started)
        logger.info(
            "Rolled back migration job %s",
            job.id,
            extra={
                "migration_job_id": job.id,
                "rows_deleted": deleted,
                "rows_reverted": reverted,
                "files_removed": removed_files,
            },
        )
        return job

    def count_tagged(self, job_id: int) -> int:
        total = 0
        for model in STAGING_MODELS.values():
            total += self.session.scalar(
                select(func.count()).select_from(model).where(model.source_job_id == job_id)
            ) or 0
        return total

    # Internal helpers -----------------------------------------------------------

    def _delete_tagged(self, job: MigrationJob) -> int:
        deleted = 0
        for model in STAGING_MODELS.values():
            while True:
                ids = list(
                    self.session.scalars(
                        select(model.id).where(model.source_job_id == job.id).limit(self.chunk_size)
                    )
                )
                if not ids:
                    break
                self.session.execute(
                    delete(model).where(model.id.in_(ids)).execution_options(synchronize_session=False)
                )
                self.session.commit()
                deleted += len(ids)
        self.session.expire_all()
        return deleted

    def _revert_fills(self, job: MigrationJob) -> int:
        """Restore values this job filled in, where nobody has changed them since."""

        items = list(
            self.session.scalars(
                select(MigrationItem)
                .where(
                    MigrationItem.job_id == job.id,
                    MigrationItem.match_decision == MatchDecision.UPDATED,
                    MigrationItem.target_id.is_not(None),
                    MigrationItem.error.is_(None),
                )
                .order_by(MigrationItem.id.desc())
            )
        )
        reverted = 0
        pending = 0
        for item in items:
            model = STAGING_MODELS.get(item.entity_type)
            if model is None:
                continue
            row = self.session.get(model, item.target_id)
            if row is None or row.source_job_id == job.id:
                continue
            changed = False
            for field_name, change in (item.changes_json or {}).items():
                if field_name in model.FILLABLE_FIELDS and getattr(row, field_name) == change.get("after"):
                    setattr(row, field_name, change.get("before"))
                    changed = True
            if changed:
                for column, value in build_match_keys(row.field_values()).items():
                    setattr(row, column, value)
                reverted += 1
                pending += 1
            if pending >= self.chunk_size:
                self.session.commit()
                pending = 0
        self.session.commit()
        return reverted

    def _mark_incomplete(self, job_id: int, reason: str, started: float) -> int:
        self.session.rollback()
        job = self.session.get(MigrationJob, job_id)
        remaining = self.count_tagged(job_id)
        job.last_error = f"Rollback incomplete: {reason}"
        self.session.commit()
        record_rollback(result="incomplete", duration_seconds=time.perf_counter() - started)
        logger.error(
            "Rollback of migration job %s is incomplete: %s",
            job_id,
            reason,
            extra={"migration_job_id": job_id, "rows_remaining": remaining},
        )
        return remaining
