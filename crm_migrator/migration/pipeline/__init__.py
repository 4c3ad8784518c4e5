"""Migration pipeline: matching, staging writes, orchestration and rollback."""

from __future__ import annotations

from .dedupe import Candidate, DuplicateDetector, MatchResult
from .job_service import JobFilters, MigrationJobService, PageResult, serialize_item
from .normalize import map_external_status, normalize_address, normalize_email, normalize_name, normalize_phone
from .orchestrator import MigrationOrchestrator, default_adapter_factory
from .preflight import build_preflight_report, check_source
from .progress import estimate_duration, estimate_remaining, format_duration, percent_complete, success_rate
from .rollback import RollbackManager
from .staging_writer import StagingWriter, WriteResult
from .state import ALLOWED_TRANSITIONS, can_transition, transition

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Candidate",
    "DuplicateDetector",
    "JobFilters",
    "MatchResult",
    "MigrationJobService",
    "MigrationOrchestrator",
    "PageResult",
    "RollbackManager",
    "StagingWriter",
    "WriteResult",
    "build_preflight_report",
    "check_source",
    "can_transition",
    "default_adapter_factory",
    "estimate_duration",
    "estimate_remaining",
    "format_duration",
    "map_external_status",
    "normalize_address",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    "percent_complete",
    "serialize_item",
    "success_rate",
    "transition",
]
