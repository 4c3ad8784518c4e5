"""Migration engine models."""

from .schema import (
    STAGING_MODELS,
    EntityType,
    MatchDecision,
    MigrationItem,
    MigrationJob,
    MigrationJobStatus,
    MigrationSource,
    StagingContact,
    StagingJob,
)

__all__ = [
    "STAGING_MODELS",
    "EntityType",
    "MatchDecision",
    "MigrationItem",
    "MigrationJob",
    "MigrationJobStatus",
    "MigrationSource",
    "StagingContact",
    "StagingJob",
]
