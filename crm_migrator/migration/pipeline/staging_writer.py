"""Apply match decisions to the staging tables and append audit items."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_migrator.models import (
    STAGING_MODELS,
    EntityType,
    MatchDecision,
    MigrationItem,
    MigrationJob,
    utcnow,
)

from ..adapters.base import CanonicalRecord
from ..attachments import AttachmentFetcher
from ..errors import ConstraintConflictError
from ..retry import RetryPolicy, call_with_retry
from .dedupe import MatchResult
from .normalize import build_match_keys, build_staging_values

logger = logging.getLogger(__name__)

MAX_UPSERT_ATTEMPTS = 3

OUTCOME_IMPORTED = "imported"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


@dataclass(frozen=True)
class WriteResult:
    """Item written for a record plus the counter it feeds."""

    item: MigrationItem
    outcome: str


class StagingWriter:
    """
    Persist one record according to its match decision.

    ``new`` upserts by ``(org, source, external_id)`` inside a savepoint and
    retries a lost race as an update; ``updated`` fills blanks on the matched
    row without touching its ``source_job_id``; ``duplicate`` writes nothing.
    A ``MigrationItem`` is appended in every case, dry runs included.
    """

    def __init__(
        self,
        session: Session,
        *,
        attachment_fetcher: AttachmentFetcher | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        max_upsert_attempts: int = MAX_UPSERT_ATTEMPTS,
    ) -> None:
        self.session = session
        self.attachment_fetcher = attachment_fetcher
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep_fn
        self.max_upsert_attempts = max_upsert_attempts

    # Public API -----------------------------------------------------------------

    def write(
        self,
        job: MigrationJob,
        record: CanonicalRecord,
        match: MatchResult,
        *,
        dry_run: bool,
        overwrite: bool = False,
    ) -> WriteResult:
        entity_type = EntityType(record.entity_type)
        item = self._new_item(job, record)
        item.match_decision = match.decision
        item.match_strategy = match.strategy
        item.match_confidence = match.confidence
        item.target_id = match.target_id
        item.matched_item_id = match.matched_item_id

        if match.decision == MatchDecision.DUPLICATE:
            outcome = OUTCOME_SKIPPED
        elif entity_type == EntityType.DOCUMENT:
            if not dry_run:
                stored = self._fetch_attachment(job, record)
                item.changes_json = {"file": {"before": None, "after": stored}}
            outcome = OUTCOME_IMPORTED
        elif match.decision == MatchDecision.NEW:
            if not dry_run:
                row = self._upsert(job, record, entity_type, overwrite=overwrite)
                item.target_id = row.id
            outcome = OUTCOME_IMPORTED
        else:
            item.changes_json = match.changes
            if not dry_run and match.candidate is not None and match.candidate.row is not None:
                self._apply_changes(match.candidate.row, match.changes)
            outcome = OUTCOME_IMPORTED

        self.session.add(item)
        self.session.flush()
        return WriteResult(item=item, outcome=outcome)

    def write_skipped(self, job: MigrationJob, record: CanonicalRecord, reason: str) -> WriteResult:
        item = self._new_item(job, record)
        item.skip_reason = reason
        self.session.add(item)
        self.session.flush()
        return WriteResult(item=item, outcome=OUTCOME_SKIPPED)

    def write_error(
        self,
        job: MigrationJob,
        record: CanonicalRecord,
        error: BaseException,
        match: MatchResult | None = None,
    ) -> WriteResult:
        item = self._new_item(job, record)
        if match is not None:
            item.match_decision = match.decision
            item.match_strategy = match.strategy
            item.match_confidence = match.confidence
        item.error = f"{type(error).__name__}: {error}"
        self.session.add(item)
        self.session.flush()
        return WriteResult(item=item, outcome=OUTCOME_ERROR)

    # Internal helpers -----------------------------------------------------------

    @staticmethod
    def _new_item(job: MigrationJob, record: CanonicalRecord) -> MigrationItem:
        return MigrationItem(
            job_id=job.id,
            external_id=record.external_id,
            entity_type=EntityType(record.entity_type),
            canonical_payload=record.as_payload(),
            processed_at=utcnow(),
        )

    def _upsert(self, job: MigrationJob, record: CanonicalRecord, entity_type: EntityType, *, overwrite: bool):
        model = STAGING_MODELS[entity_type]
        values, extra = build_staging_values(entity_type.value, record.as_payload()["fields"], model.FILLABLE_FIELDS)

        for attempt in range(1, self.max_upsert_attempts + 1):
            try:
                with self.session.begin_nested():
                    row = self.session.scalars(
                        select(model).where(
                            model.org_id == job.org_id,
                            model.source == job.source,
                            model.external_id == record.external_id,
                        )
                    ).first()
                    if row is None:
                        row = model(
                            org_id=job.org_id,
                            source=job.source,
                            external_id=record.external_id,
                            source_job_id=job.id,
                            extra_json=extra or None,
                            **values,
                        )
                        self._refresh_keys(row)
                        self.session.add(row)
                    else:
                        changes = {
                            key: {"before": getattr(row, key), "after": value}
                            for key, value in values.items()
                            if getattr(row, key) in (None, "") or (overwrite and getattr(row, key) != value)
                        }
                        self._apply_changes(row, changes)
                    self.session.flush()
                return row
            except IntegrityError:
                logger.info(
                    "Staging upsert lost a race; retrying as update",
                    extra={
                        "migration_job_id": job.id,
                        "external_id": record.external_id,
                        "attempt": attempt,
                    },
                )
        raise ConstraintConflictError(record.external_id, self.max_upsert_attempts)

    def _apply_changes(self, row, changes) -> None:
        for key, change in changes.items():
            setattr(row, key, change["after"])
        self._refresh_keys(row)
        self.session.flush()

    @staticmethod
    def _refresh_keys(row) -> None:
        for column, value in build_match_keys(row.field_values()).items():
            setattr(row, column, value)

    def _fetch_attachment(self, job: MigrationJob, record: CanonicalRecord) -> dict:
        if self.attachment_fetcher is None:
            raise RuntimeError("No attachment fetcher configured for document records.")
        return call_with_retry(
            lambda: self.attachment_fetcher.fetch(job, record),
            self.retry_policy,
            sleep_fn=self.sleep,
            description=f"Document {record.external_id} download",
        )
