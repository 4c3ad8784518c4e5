"""CSV adapter for canonical-column exports.
Every row is one record. ``external_id`` is required; ``entity_type``
defaults to ``contact``; remaining headers are canonical field names. The
cursor is the zero-based row offset so a page can be re-read after a crash.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import IO, Any

from ..errors import TerminalSourceError
from .base import ENTITY_TYPES, CanonicalRecord, SourceAdapter, SourcePage, count_by_entity

REQUIRED_HEADERS = ("external_id",)


class CSVHeaderError(TerminalSourceError):
    """Raised when the CSV header row lacks required columns."""

    def __init__(self, missing: tuple[str, ...]) -> None:
        super().__init__("CSV header validation failed. Missing required columns: " + ", ".join(missing) + ".")
        self.missing = missing


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff").lower().replace(" ", "_")


def _row_is_blank(row: dict[str, Any]) -> bool:
    return all(value is None or (isinstance(value, str) and value.strip() == "") for value in row.values())


class CSVSourceAdapter(SourceAdapter):
    """Pages through a CSV file or text stream by row offset."""

    source = "csv"

    def __init__(self, *, path: str | Path | None = None, file_obj: IO[str] | None = None) -> None:
        if path is None and file_obj is None:
            raise ValueError("CSVSourceAdapter requires a path or a file object.")
        self.path = Path(path) if path is not None else None
        self._file_obj = file_obj
        self._rows: list[CanonicalRecord] | None = None

    def describe(self) -> dict[str, Any]:
        return {"path": str(self.path)} if self.path is not None else {}

    def _load(self) -> list[CanonicalRecord]:
        if self._rows is not None:
            return self._rows
        if self.path is not None:
            if not self.path.exists():
                raise TerminalSourceError(f"CSV file '{self.path}' does not exist.")
            with self.path.open(newline="", encoding="utf-8-sig") as handle:
                self._rows = self._parse(handle)
        else:
            self._file_obj.seek(0)
            self._rows = self._parse(self._file_obj)
        return self._rows

    def _parse(self, handle: IO[str]) -> list[CanonicalRecord]:
        reader = csv.DictReader(handle)
        if reader.fieldnames is None:
            raise CSVHeaderError(REQUIRED_HEADERS)
        reader.fieldnames = [_sanitize_header(name) for name in reader.fieldnames]
        missing = tuple(name for name in REQUIRED_HEADERS if name not in reader.fieldnames)
        if missing:
            raise CSVHeaderError(missing)

        records: list[CanonicalRecord] = []
        for raw_row in reader:
            row = {key: (value.strip() if isinstance(value, str) else value) for key, value in raw_row.items() if key}
            if _row_is_blank(row):
                continue
            external_id = row.pop("external_id", None)
            entity_type = (row.pop("entity_type", None) or "contact").lower()
            fields = {key: value for key, value in row.items() if value not in (None, "")}
            problem = None
            if not external_id:
                problem = "external_id is required."
            elif entity_type not in ENTITY_TYPES:
                problem = f"unknown entity_type '{entity_type}'."
            if problem:
                records.append(
                    CanonicalRecord.rejected(
                        f"row-{reader.line_num}",
                        f"Row {reader.line_num}: {problem}",
                        entity_type=entity_type,
                        fields=fields,
                    )
                )
                continue
            records.append(CanonicalRecord(external_id=external_id, entity_type=entity_type, fields=fields))
        return records

    def fetch_page(self, cursor: str | None, *, page_size: int) -> SourcePage:
        rows = self._load()
        try:
            offset = int(cursor) if cursor else 0
        except ValueError as exc:
            raise TerminalSourceError(f"Unrecognized CSV cursor '{cursor}'.") from exc
        end = offset + page_size
        return SourcePage(
            records=rows[offset:end],
            next_cursor=str(end) if end < len(rows) else None,
            total_count=len(rows),
        )

    def count_entities(self) -> dict[str, int]:
        return count_by_entity(self._load())
