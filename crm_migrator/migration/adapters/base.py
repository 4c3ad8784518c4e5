"""
Source adapter contract.

Adapters turn a source system's native payloads into ``CanonicalRecord``
objects and expose one capability: fetch the page that starts at an opaque
cursor. Checkpoint/resume relies on ``fetch_page`` being repeatable for the
same cursor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

_TIMESTAMP_FIELDS = ("created_at", "updated_at", "date_created")
ENTITY_TYPES = ("contact", "job", "document")


def _parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            return datetime.fromtimestamp(float(text), tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class CanonicalRecord:
    """
    A source record mapped onto the platform's canonical field names.

    ``error`` is set on rows the adapter could not map (no id, unknown
    entity type). They stay on the page so the orchestrator records them as
    error items instead of dropping them or failing the job.
    """

    external_id: str
    entity_type: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def rejected(
        cls,
        placeholder_id: str,
        reason: str,
        *,
        entity_type: str = "contact",
        fields: Mapping[str, Any] | None = None,
    ) -> "CanonicalRecord":
        if entity_type not in ENTITY_TYPES:
            entity_type = "contact"
        return cls(external_id=placeholder_id, entity_type=entity_type, fields=dict(fields or {}), error=reason)

    @property
    def occurred_at(self) -> datetime | None:
        """First parseable timestamp among created_at/updated_at/date_created."""
        for name in _TIMESTAMP_FIELDS:
            parsed = _parse_timestamp(self.fields.get(name))
            if parsed is not None:
                return parsed
        return None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key, value in self.fields.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return {"external_id": self.external_id, "entity_type": self.entity_type, "fields": payload}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "CanonicalRecord":
        """Build a record from ``{"external_id", "entity_type", "fields"}`` or a flat dict."""
        if "fields" in payload:
            fields = dict(payload.get("fields") or {})
        else:
            fields = {k: v for k, v in payload.items() if k not in {"external_id", "entity_type", "id"}}
        external_id = payload.get("external_id") or payload.get("id")
        if external_id in (None, ""):
            raise ValueError("Canonical records require an external_id.")
        entity_type = str(payload.get("entity_type") or "contact").strip().lower()
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity_type '{entity_type}' for record {external_id}.")
        return cls(external_id=str(external_id), entity_type=entity_type, fields=fields)


def count_by_entity(records: Sequence[CanonicalRecord]) -> dict[str, int]:
    counts: dict[str, int] = {entity: 0 for entity in ENTITY_TYPES}
    for record in records:
        counts[record.entity_type] += 1
    return counts


@dataclass(frozen=True)
class SourcePage:
    """One page of records plus the cursor of the next page (``None`` when exhausted)."""

    records: Sequence[CanonicalRecord]
    next_cursor: str | None
    total_count: int | None = None


class SourceAdapter(ABC):
    """Base class for every migration source."""

    source: str = "other"

    @abstractmethod
    def fetch_page(self, cursor: str | None, *, page_size: int) -> SourcePage:
        """
        Return the page starting at ``cursor`` (``None`` for the first page).

        Raises:
            TransientSourceError: timeouts, rate limits, 5xx responses.
            TerminalSourceError: bad credentials or an unusable cursor. A
                single bad row is returned as a rejected record instead.
        """

    def count_entities(self) -> dict[str, int | None]:
        """
        Cheap per-entity record counts for the pre-flight check.

        Sources that cannot break their total down report it under
        ``"records"``; ``None`` means the source gave no count.
        """
        page = self.fetch_page(None, page_size=1)
        return {"records": page.total_count}

    def describe(self) -> dict[str, Any]:
        """Parameters persisted on the job so the adapter can be rebuilt on resume."""
        return {}

    def close(self) -> None:
        """Release any held resources."""
