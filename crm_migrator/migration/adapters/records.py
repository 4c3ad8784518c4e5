"""In-memory adapter for the ``other`` source (uploaded JSON records)."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from ..errors import TerminalSourceError
from .base import CanonicalRecord, SourceAdapter, SourcePage, count_by_entity


def _to_record(position: int, payload: Any) -> CanonicalRecord:
    if not isinstance(payload, Mapping):
        return CanonicalRecord.rejected(f"record-{position}", f"Record {position} is not an object.")
    try:
        return CanonicalRecord.from_mapping(payload)
    except ValueError as exc:
        fields = payload.get("fields")
        return CanonicalRecord.rejected(
            f"record-{position}",
            f"Record {position}: {exc}",
            entity_type=str(payload.get("entity_type") or "contact").strip().lower(),
            fields=fields if isinstance(fields, Mapping) else None,
        )


class RecordListAdapter(SourceAdapter):
    """
    Pages through a list of canonical dicts; the cursor is the list offset.

    Entries without an id or with an unknown entity type are kept as
    rejected records at their position.
    """

    source = "other"

    def __init__(self, records: Iterable[Mapping[str, Any] | CanonicalRecord] = ()) -> None:
        self._raw = [record.as_payload() if isinstance(record, CanonicalRecord) else record for record in records]
        self._records = [_to_record(position, record) for position, record in enumerate(self._raw)]

    def describe(self) -> dict[str, Any]:
        return {"records": self._raw}

    def fetch_page(self, cursor: str | None, *, page_size: int) -> SourcePage:
        try:
            offset = int(cursor) if cursor else 0
        except ValueError as exc:
            raise TerminalSourceError(f"Unrecognized record cursor '{cursor}'.") from exc
        end = offset + page_size
        return SourcePage(
            records=self._records[offset:end],
            next_cursor=str(end) if end < len(self._records) else None,
            total_count=len(self._records),
        )

    def count_entities(self) -> dict[str, int]:
        return count_by_entity(self._records)
