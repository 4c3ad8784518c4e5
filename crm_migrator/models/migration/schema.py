"""
SQLAlchemy models for CRM data migrations.

``MigrationJob`` owns the persisted state machine and resume checkpoint,
``MigrationItem`` is the append-only audit log written once per processed
record, and the staging tables hold the contact/job rows a job created,
tagged with ``source_job_id`` so a rollback can find exactly those rows.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class MigrationSource(str, enum.Enum):
    """External systems records can be migrated from."""

    ACCULYNX = "acculynx"
    JOBNIMBUS = "jobnimbus"
    CSV = "csv"
    ROOFR = "roofr"
    HOVER = "hover"
    OTHER = "other"


class MigrationJobStatus(str, enum.Enum):
    """Lifecycle states for a migration job."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLING_BACK = "rolling_back"


class EntityType(str, enum.Enum):
    CONTACT = "contact"
    JOB = "job"
    DOCUMENT = "document"


class MatchDecision(str, enum.Enum):
    """Outcome of duplicate detection for a single record."""

    NEW = "new"
    DUPLICATE = "duplicate"
    UPDATED = "updated"


class MigrationJob(BaseModel):
    """A single migration from one source into one organization."""

    __tablename__ = "migration_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    source: Mapped[MigrationSource] = mapped_column(
        Enum(MigrationSource, name="migration_source_enum"),
        nullable=False,
        index=True,
    )
    status: Mapped[MigrationJobStatus] = mapped_column(
        Enum(MigrationJobStatus, name="migration_job_status_enum"),
        nullable=False,
        default=MigrationJobStatus.PENDING,
        index=True,
    )
    options_json: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    cursor_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Resume checkpoint: page_cursor, next_cursor and last_external_id.",
    )
    source_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Adapter parameters needed to rebuild the source adapter on resume.",
    )
    total_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    imported_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    progress_percent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    rolled_back_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    organization = relationship("Organization", back_populates="migration_jobs")
    creator = relationship("User", foreign_keys=[created_by])
    items = relationship(
        "MigrationItem",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MigrationItem.id",
    )

    __table_args__ = (Index("idx_migration_jobs_org_status", "org_id", "status"),)

    @property
    def dry_run(self) -> bool:
        return bool((self.options_json or {}).get("dry_run", False))

    @property
    def processed_records(self) -> int:
        return (self.imported_records or 0) + (self.skipped_records or 0) + (self.error_records or 0)

    def __repr__(self):
        return f"<MigrationJob {self.id} {self.source.value} {self.status.value}>"


class MigrationItem(BaseModel):
    """
    Append-only audit row for one processed source record.

    Written even for dry runs; never updated or deleted, rollback included.
    """

    __tablename__ = "migration_items"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("migration_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    entity_type: Mapped[EntityType] = mapped_column(
        Enum(EntityType, name="migration_entity_type_enum"),
        nullable=False,
    )
    canonical_payload: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    match_decision: Mapped[MatchDecision | None] = mapped_column(
        Enum(MatchDecision, name="migration_match_decision_enum"),
        nullable=True,
        index=True,
    )
    match_strategy: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    match_confidence: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    target_id: Mapped[int | None] = mapped_column(
        db.Integer,
        nullable=True,
        comment="Staging row created or updated for this record.",
    )
    matched_item_id: Mapped[int | None] = mapped_column(
        db.Integer,
        nullable=True,
        comment="Earlier item of the same dry run that this record matched.",
    )
    changes_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    job = relationship("MigrationJob", back_populates="items")

    __table_args__ = (
        Index("idx_migration_items_job_external", "job_id", "external_id"),
        Index("idx_migration_items_job_decision", "job_id", "entity_type", "match_decision"),
    )


class StagingRecordMixin:
    """Columns shared by every destination row this engine writes."""

    FILLABLE_FIELDS = ()

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    source: Mapped[MigrationSource] = mapped_column(
        Enum(MigrationSource, name="migration_source_enum"),
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    source_job_id: Mapped[int | None] = mapped_column(
        ForeignKey("migration_jobs.id"),
        nullable=True,
        index=True,
    )
    email_normalized: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    phone_normalized: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    address_normalized: Mapped[str | None] = mapped_column(db.String(500), nullable=True, index=True)
    name_normalized: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    extra_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    def field_values(self) -> dict[str, object | None]:
        return {name: getattr(self, name) for name in self.FILLABLE_FIELDS}


class StagingContact(StagingRecordMixin, BaseModel):
    """Contact row created by a migration job."""

    __tablename__ = "staging_contacts"

    FILLABLE_FIELDS = (
        "first_name",
        "last_name",
        "full_name",
        "email",
        "phone",
        "address",
        "city",
        "state",
        "postal_code",
        "company",
    )

    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    company: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("org_id", "source", "external_id", name="uq_staging_contacts_external_key"),
        Index("idx_staging_contacts_org_email", "org_id", "email_normalized"),
        Index("idx_staging_contacts_org_phone", "org_id", "phone_normalized"),
    )


class StagingJob(StagingRecordMixin, BaseModel):
    """Job (claim/project) row created by a migration job."""

    __tablename__ = "staging_jobs"

    FILLABLE_FIELDS = (
        "name",
        "status",
        "full_name",
        "email",
        "phone",
        "address",
        "city",
        "state",
        "postal_code",
        "claim_number",
        "insurance_carrier",
        "contact_external_id",
        "description",
    )

    name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(30), nullable=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    claim_number: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    insurance_carrier: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    contact_external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("org_id", "source", "external_id", name="uq_staging_jobs_external_key"),
        Index("idx_staging_jobs_org_address", "org_id", "address_normalized"),
    )


STAGING_MODELS = {
    EntityType.CONTACT: StagingContact,
    EntityType.JOB: StagingJob,
}
