# crm_migrator/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, as_utc, db, utcnow
from .migration import (
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
from .organization import Organization
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "as_utc",
    "utcnow",
    "User",
    "Organization",
    # Migration models
    "MigrationJob",
    "MigrationItem",
    "StagingContact",
    "StagingJob",
    "STAGING_MODELS",
    # Migration enums
    "MigrationSource",
    "MigrationJobStatus",
    "EntityType",
    "MatchDecision",
]
