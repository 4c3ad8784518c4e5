"""Source adapter interfaces and concrete implementations."""

from __future__ import annotations

from .base import CanonicalRecord, SourceAdapter, SourcePage
from .csv_records import CSVHeaderError, CSVSourceAdapter
from .http import AccuLynxAdapter, HoverAdapter, HTTPSourceAdapter, JobNimbusAdapter, RoofrAdapter
from .records import RecordListAdapter

__all__ = [
    "AccuLynxAdapter",
    "CanonicalRecord",
    "CSVHeaderError",
    "CSVSourceAdapter",
    "HoverAdapter",
    "HTTPSourceAdapter",
    "JobNimbusAdapter",
    "RecordListAdapter",
    "RoofrAdapter",
    "SourceAdapter",
    "SourcePage",
]
