"""
Migration job orchestrator.

Owns the job lifecycle and the batch loop. All job state lives on the
``MigrationJob`` row: each record's audit item, staging write, counters and
checkpoint are committed together, so any process can pick a RUNNING job up
from its checkpoint after a crash exactly as it would after a pause.

Pause and cancel are cooperative. The loop re-reads the persisted status
between records and stops as soon as it is no longer RUNNING.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from crm_migrator.models import (
    MigrationJob,
    MigrationJobStatus,
    MigrationSource,
    db,
)

from ..adapters.base import CanonicalRecord, SourceAdapter, SourcePage
from ..attachments import AttachmentFetcher
from ..errors import TerminalSourceError, TransientSourceError, ValidationError
from ..metrics import record_fetch_retry, record_page_duration, record_record_outcome
from ..options import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE, MigrationOptions
from ..registry import build_source_adapter, validate_source_params
from ..retry import RetryPolicy, call_with_retry
from .dedupe import DuplicateDetector
from .progress import PROVISIONAL_PERCENT_CAP, job_percent, status_payload
from .staging_writer import OUTCOME_ERROR, OUTCOME_IMPORTED, OUTCOME_SKIPPED, StagingWriter, WriteResult
from .state import transition

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[MigrationJob], SourceAdapter]

SKIP_REASONS = {
    "contact": "skip_contacts",
    "job": "skip_jobs",
    "document": "skip_documents",
}


def default_adapter_factory(*, http_timeout: float = 30.0) -> AdapterFactory:
    def _factory(job: MigrationJob) -> SourceAdapter:
        return build_source_adapter(job.source.value, job.source_params_json, http_timeout=http_timeout)

    return _factory


class MigrationOrchestrator:
    """Start, drive, pause, resume and cancel migration jobs."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        adapter_factory: AdapterFactory | None = None,
        attachment_fetcher: AttachmentFetcher | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self.session: Session = session or db.session
        self.adapter_factory = adapter_factory or default_adapter_factory()
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep_fn
        self.default_batch_size = default_batch_size
        self.max_batch_size = max_batch_size
        self.detector = DuplicateDetector(self.session)
        self.writer = StagingWriter(
            self.session,
            attachment_fetcher=attachment_fetcher,
            retry_policy=self.retry_policy,
            sleep_fn=sleep_fn,
        )

    # ---------------------------------------------------------------------
    # Control surface
    # ---------------------------------------------------------------------

    def start(
        self,
        org_id: int,
        source: str | MigrationSource,
        options: MigrationOptions | Mapping[str, Any] | None = None,
        *,
        created_by: int | None = None,
        adapter: SourceAdapter | None = None,
        source_params: Mapping[str, Any] | None = None,
        execute: bool = True,
    ) -> MigrationJob:
        """
        Validate input, create the job and move it to RUNNING.

        When ``execute`` is true the batch loop runs inline before returning;
        otherwise the caller hands the job id to a worker.

        Raises:
            ValidationError: bad options or source parameters. No job row is
                created.
        """

        try:
            resolved_source = MigrationSource(source)
        except ValueError as exc:
            raise ValidationError([f"Unknown migration source '{source}'."]) from exc

        if not isinstance(options, MigrationOptions):
            options = MigrationOptions.coerce(
                options,
                default_batch_size=self.default_batch_size,
                max_batch_size=self.max_batch_size,
            )
        if adapter is None:
            params = validate_source_params(resolved_source.value, source_params)
        else:
            params = dict(source_params) if source_params is not None else adapter.describe()

        job = MigrationJob(
            org_id=org_id,
            source=resolved_source,
            status=MigrationJobStatus.PENDING,
            options_json=options.as_json(),
            source_params_json=params or None,
            created_by=created_by,
        )
        self.session.add(job)
        self.session.commit()
        logger.info(
            "Created migration job %s",
            job.id,
            extra={
                "migration_job_id": job.id,
                "migration_source": resolved_source.value,
                "org_id": org_id,
                "dry_run": options.dry_run,
            },
        )

        transition(job, MigrationJobStatus.RUNNING)
        self.session.commit()

        if execute:
            self.run(job.id, adapter=adapter)
        return job

    def run(self, job_id: int, *, adapter: SourceAdapter | None = None) -> MigrationJob:
        """
        Drive a RUNNING job from its checkpoint until it finishes or stops.

        Jobs in any other status are returned untouched, so a late or
        duplicate worker delivery is harmless.
        """

        job = self.get_job(job_id)
        if job.status != MigrationJobStatus.RUNNING:
            logger.info(
                "Migration job %s is %s; nothing to run",
                job.id,
                job.status.value,
                extra={"migration_job_id": job.id},
            )
            return job

        owns_adapter = adapter is None
        try:
            if adapter is None:
                try:
                    adapter = self.adapter_factory(job)
                except (ValidationError, TerminalSourceError) as exc:
                    self._fail(job, exc)
                    return job
            self._run_loop(job, adapter)
        except SoftTimeLimitExceeded:
            # Committed records stay committed; the job stays RUNNING at its checkpoint.
            self.session.rollback()
            logger.warning(
                "Migration job %s hit the task time limit at its checkpoint",
                job_id,
                extra={"migration_job_id": job_id},
            )
            raise
        except Exception as exc:
            self.session.rollback()
            self._record_error(job_id, exc)
            raise
        finally:
            self.detector.forget(job_id)
            if owns_adapter and adapter is not None:
                adapter.close()
        return job

    def pause(self, job_id: int) -> MigrationJob:
        job = self.get_job(job_id)
        transition(job, MigrationJobStatus.PAUSED)
        self.session.commit()
        return job

    def resume(self, job_id: int, *, execute: bool = True, adapter: SourceAdapter | None = None) -> MigrationJob:
        job = self.get_job(job_id)
        transition(job, MigrationJobStatus.RUNNING)
        job.last_error = None
        self.session.commit()
        if execute:
            self.run(job.id, adapter=adapter)
        return job

    def cancel(self, job_id: int) -> MigrationJob:
        job = self.get_job(job_id)
        transition(job, MigrationJobStatus.CANCELLED)
        self.session.commit()
        return job

    def get_status(self, job_id: int) -> dict[str, Any]:
        return status_payload(self.get_job(job_id))

    def get_job(self, job_id: int) -> MigrationJob:
        job = self.session.get(MigrationJob, job_id)
        if job is None:
            raise NoResultFound(f"Migration job {job_id} not found.")
        return job

    # ---------------------------------------------------------------------
    # Batch loop
    # ---------------------------------------------------------------------

    def _run_loop(self, job: MigrationJob, adapter: SourceAdapter) -> None:
        options = MigrationOptions.from_json(job.options_json)
        source = job.source.value

        while True:
            checkpoint = dict(job.cursor_json or {})
            page_cursor = checkpoint.get("page_cursor")

            try:
                page = self._fetch_page(adapter, page_cursor, options.batch_size, source)
            except TransientSourceError as exc:
                self._pause_for_error(job, exc)
                return
            except TerminalSourceError as exc:
                self._fail(job, exc)
                return

            page_started = time.perf_counter()
            first = self._resume_index(page, checkpoint)
            in_window = [
                (index, record)
                for index, record in enumerate(page.records)
                if index >= first and options.in_window(record.occurred_at)
            ]
            self._raise_total(job, page, len(in_window), options)
            self.session.commit()

            for index, record in in_window:
                self.session.refresh(job)
                if job.status != MigrationJobStatus.RUNNING:
                    logger.info(
                        "Migration job %s stopped at %s",
                        job.id,
                        job.status.value,
                        extra={"migration_job_id": job.id, "cursor": job.cursor_json},
                    )
                    return
                result = self._process_record(job, record, options)
                self._apply_result(job, result, page_cursor, page.next_cursor, record.external_id, index)
                self.session.commit()

            record_page_duration(source, time.perf_counter() - page_started)

            self.session.refresh(job)
            if job.status != MigrationJobStatus.RUNNING:
                return
            if page.next_cursor is None:
                self._complete(job)
                return
            job.cursor_json = {
                "page_cursor": page.next_cursor,
                "next_cursor": None,
                "last_external_id": None,
                "page_index": None,
            }
            self.session.commit()

    def _fetch_page(self, adapter: SourceAdapter, cursor: str | None, page_size: int, source: str) -> SourcePage:
        return call_with_retry(
            lambda: adapter.fetch_page(cursor, page_size=page_size),
            self.retry_policy,
            sleep_fn=self.sleep,
            on_retry=lambda attempt, exc: record_fetch_retry(source),
            description=f"{source} page fetch",
        )

    @staticmethod
    def _resume_index(page: SourcePage, checkpoint: Mapping[str, Any]) -> int:
        """Position on the refetched page of the first record the checkpoint does not cover."""
        last_external_id = checkpoint.get("last_external_id")
        if not last_external_id:
            return 0
        records = page.records
        page_index = checkpoint.get("page_index")
        if isinstance(page_index, int) and 0 <= page_index < len(records):
            if records[page_index].external_id == last_external_id:
                return page_index + 1
        # Checkpoints written without a page index, or a page that shifted.
        for index, record in enumerate(records):
            if record.external_id == last_external_id:
                return index + 1
        logger.warning(
            "Checkpoint record %s not found on refetched page; reprocessing the page",
            last_external_id,
        )
        return 0

    def _raise_total(
        self,
        job: MigrationJob,
        page: SourcePage,
        pending: int,
        options: MigrationOptions,
    ) -> None:
        candidates = [job.total_records or 0, job.processed_records + pending]
        # A source-wide count includes records the date filter will drop.
        if page.total_count is not None and options.date_after is None and options.date_before is None:
            candidates.append(page.total_count)
        job.total_records = max(candidates)

    def _process_record(self, job: MigrationJob, record: CanonicalRecord, options: MigrationOptions) -> WriteResult:
        if record.error:
            logger.warning(
                "Migration record %s rejected by the source adapter: %s",
                record.external_id,
                record.error,
                extra={"migration_job_id": job.id, "external_id": record.external_id},
            )
            return self.writer.write_error(job, record, ValueError(record.error))
        if options.skips(record.entity_type):
            return self.writer.write_skipped(job, record, SKIP_REASONS[record.entity_type])

        match = None
        try:
            with self.session.begin_nested():
                match = self.detector.detect(job, record, overwrite=options.overwrite_existing)
                result = self.writer.write(
                    job,
                    record,
                    match,
                    dry_run=options.dry_run,
                    overwrite=options.overwrite_existing,
                )
        except SoftTimeLimitExceeded:
            # The worker is out of time; the record is retried after requeue.
            raise
        except Exception as exc:
            logger.warning(
                "Migration record %s failed: %s",
                record.external_id,
                exc,
                extra={
                    "migration_job_id": job.id,
                    "external_id": record.external_id,
                    "entity_type": record.entity_type,
                },
            )
            result = self.writer.write_error(job, record, exc, match)
        self.detector.remember(job, result.item)
        return result

    def _apply_result(
        self,
        job: MigrationJob,
        result: WriteResult,
        page_cursor: str | None,
        next_cursor: str | None,
        external_id: str,
        page_index: int,
    ) -> None:
        if result.outcome == OUTCOME_IMPORTED:
            job.imported_records = (job.imported_records or 0) + 1
        elif result.outcome == OUTCOME_SKIPPED:
            job.skipped_records = (job.skipped_records or 0) + 1
        elif result.outcome == OUTCOME_ERROR:
            job.error_records = (job.error_records or 0) + 1
            job.last_error = result.item.error
        record_record_outcome(job.source.value, result.outcome)

        job.total_records = max(job.total_records or 0, job.processed_records)
        provisional = min(job_percent(job), PROVISIONAL_PERCENT_CAP)
        job.progress_percent = max(job.progress_percent or 0, provisional)
        job.cursor_json = {
            "page_cursor": page_cursor,
            "next_cursor": next_cursor,
            "last_external_id": external_id,
            "page_index": page_index,
        }

    # ---------------------------------------------------------------------
    # Terminal handling
    # ---------------------------------------------------------------------

    def _complete(self, job: MigrationJob) -> None:
        job.total_records = job.processed_records
        job.progress_percent = max(job.progress_percent or 0, job_percent(job))
        transition(job, MigrationJobStatus.COMPLETED)
        self.session.commit()
        logger.info(
            "Migration job %s completed",
            job.id,
            extra={
                "migration_job_id": job.id,
                "imported": job.imported_records,
                "skipped": job.skipped_records,
                "errors": job.error_records,
            },
        )

    def _pause_for_error(self, job: MigrationJob, exc: Exception) -> None:
        self.session.refresh(job)
        job.last_error = str(exc)
        if job.status == MigrationJobStatus.RUNNING:
            transition(job, MigrationJobStatus.PAUSED)
        self.session.commit()
        logger.warning(
            "Migration job %s paused after exhausting retries: %s",
            job.id,
            exc,
            extra={"migration_job_id": job.id, "cursor": job.cursor_json},
        )

    def _fail(self, job: MigrationJob, exc: Exception) -> None:
        self.session.refresh(job)
        job.last_error = str(exc)
        if job.status == MigrationJobStatus.RUNNING:
            transition(job, MigrationJobStatus.FAILED)
        self.session.commit()
        logger.error(
            "Migration job %s failed: %s",
            job.id,
            exc,
            extra={"migration_job_id": job.id, "cursor": job.cursor_json},
        )

    def _record_error(self, job_id: int, exc: Exception) -> None:
        job = self.session.get(MigrationJob, job_id)
        if job is None:
            return
        job.last_error = f"{type(exc).__name__}: {exc}"
        self.session.commit()
        logger.exception(
            "Migration job %s stopped unexpectedly; it stays %s and can be re-run from its checkpoint",
            job_id,
            job.status.value,
            extra={"migration_job_id": job_id},
        )
