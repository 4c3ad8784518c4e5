"""
Service helpers for migration job listing and audit-log queries.

The API and CLI consume these helpers for paginated job listings and item
payloads, keeping SQLAlchemy logic in one testable place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from crm_migrator.models import (
    EntityType,
    MatchDecision,
    MigrationItem,
    MigrationJob,
    MigrationJobStatus,
    MigrationSource,
    db,
)

from .progress import status_payload

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class JobFilters:
    """Canonical set of filter options applied to migration job listings."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[MigrationJobStatus, ...] = field(default_factory=tuple)
    sources: tuple[MigrationSource, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
        sources: Iterable[str] | None = None,
    ) -> "JobFilters":
        resolved_statuses = []
        for value in statuses or ():
            if not value:
                continue
            try:
                resolved_statuses.append(MigrationJobStatus(str(value).strip().lower()))
            except ValueError:
                raise ValueError(f"Unsupported status filter '{value}'.") from None
        resolved_sources = []
        for value in sources or ():
            if not value:
                continue
            try:
                resolved_sources.append(MigrationSource(str(value).strip().lower()))
            except ValueError:
                raise ValueError(f"Unsupported source filter '{value}'.") from None
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            statuses=tuple(resolved_statuses),
            sources=tuple(resolved_sources),
        )


@dataclass(slots=True)
class PageResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


class MigrationJobService:
    """Org-scoped read access to migration jobs and their audit items."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def get_job(self, job_id: int, *, org_id: int | None = None) -> MigrationJob:
        job = self.session.get(MigrationJob, job_id)
        if job is None or (org_id is not None and job.org_id != org_id):
            raise NoResultFound(f"Migration job {job_id} not found.")
        return job

    def list_jobs(self, org_id: int, filters: JobFilters) -> PageResult:
        stmt = select(MigrationJob).where(MigrationJob.org_id == org_id)
        if filters.statuses:
            stmt = stmt.where(MigrationJob.status.in_(filters.statuses))
        if filters.sources:
            stmt = stmt.where(MigrationJob.source.in_(filters.sources))

        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        jobs = self.session.scalars(
            stmt.order_by(MigrationJob.created_at.desc(), MigrationJob.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        )
        return PageResult(
            items=[status_payload(job) for job in jobs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
        )

    def list_items(
        self,
        job: MigrationJob,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        decision: str | None = None,
        entity_type: str | None = None,
        errors_only: bool = False,
    ) -> PageResult:
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        stmt = select(MigrationItem).where(MigrationItem.job_id == job.id)
        if decision:
            try:
                stmt = stmt.where(MigrationItem.match_decision == MatchDecision(decision.strip().lower()))
            except ValueError:
                raise ValueError(f"Unsupported decision filter '{decision}'.") from None
        if entity_type:
            try:
                stmt = stmt.where(MigrationItem.entity_type == EntityType(entity_type.strip().lower()))
            except ValueError:
                raise ValueError(f"Unsupported entity type filter '{entity_type}'.") from None
        if errors_only:
            stmt = stmt.where(MigrationItem.error.is_not(None))

        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        items = self.session.scalars(
            stmt.order_by(MigrationItem.id.asc()).offset((resolved_page - 1) * resolved_size).limit(resolved_size)
        )
        return PageResult(
            items=[serialize_item(item) for item in items],
            total=total,
            page=resolved_page,
            page_size=resolved_size,
        )


def serialize_item(item: MigrationItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "externalId": item.external_id,
        "entityType": item.entity_type.value,
        "matchDecision": item.match_decision.value if item.match_decision else None,
        "matchStrategy": item.match_strategy,
        "matchConfidence": item.match_confidence,
        "targetId": item.target_id,
        "matchedItemId": item.matched_item_id,
        "changes": item.changes_json,
        "skipReason": item.skip_reason,
        "error": item.error,
        "processedAt": item.processed_at.isoformat() if item.processed_at else None,
    }


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")
