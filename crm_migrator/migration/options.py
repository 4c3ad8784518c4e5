"""
User-supplied options for a migration job.

``MigrationOptions.coerce`` accepts the camelCase payload the onboarding UI
sends as well as snake_case keys from the CLI, and rejects invalid input
before any job row is created.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Mapping

from .errors import ValidationError

DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 1000


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def _coerce_bool(value: Any, *, field: str, errors: list[str]) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in {"1", "true", "yes", "on"}:
        return True
    if token in {"0", "false", "no", "off", ""}:
        return False
    errors.append(f"{field} must be a boolean.")
    return False


def _coerce_datetime(value: Any, *, field: str, errors: list[str], end_of_day: bool = False) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.max if end_of_day else time.min)
    else:
        text = str(value).strip()
        try:
            if len(text) == 10:
                parsed = datetime.combine(date.fromisoformat(text), time.max if end_of_day else time.min)
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            errors.append(f"{field} must be an ISO-8601 date or datetime.")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class MigrationOptions:
    """Validated option set stored on ``MigrationJob.options_json``."""

    dry_run: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    skip_contacts: bool = False
    skip_jobs: bool = False
    skip_documents: bool = False
    date_after: datetime | None = None
    date_before: datetime | None = None
    overwrite_existing: bool = False

    @classmethod
    def coerce(
        cls,
        payload: Mapping[str, Any] | None = None,
        *,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> "MigrationOptions":
        """
        Coerce mixed user input into a validated ``MigrationOptions`` instance.

        Raises:
            ValidationError: listing every problem found in the payload.
        """

        payload = payload or {}
        errors: list[str] = []

        raw_batch = _pick(payload, "batchSize", "batch_size", default=default_batch_size)
        batch_size = default_batch_size
        if isinstance(raw_batch, bool):
            errors.append("batchSize must be an integer.")
        else:
            try:
                batch_size = int(raw_batch)
            except (TypeError, ValueError):
                errors.append("batchSize must be an integer.")
            else:
                if batch_size <= 0:
                    errors.append("batchSize must be greater than 0.")
                elif batch_size > max_batch_size:
                    errors.append(f"batchSize must be at most {max_batch_size}.")

        date_filter = _pick(payload, "dateFilter", "date_filter", default={}) or {}
        if not isinstance(date_filter, Mapping):
            errors.append("dateFilter must be an object with optional 'after' and 'before'.")
            date_filter = {}
        date_after = _coerce_datetime(
            _pick(date_filter, "after", default=_pick(payload, "date_after")),
            field="dateFilter.after",
            errors=errors,
        )
        date_before = _coerce_datetime(
            _pick(date_filter, "before", default=_pick(payload, "date_before")),
            field="dateFilter.before",
            errors=errors,
            end_of_day=True,
        )
        if date_after and date_before and date_after > date_before:
            errors.append("dateFilter.after must not be later than dateFilter.before.")

        options = cls(
            dry_run=_coerce_bool(_pick(payload, "dryRun", "dry_run"), field="dryRun", errors=errors),
            batch_size=batch_size,
            skip_contacts=_coerce_bool(
                _pick(payload, "skipContacts", "skip_contacts"), field="skipContacts", errors=errors
            ),
            skip_jobs=_coerce_bool(_pick(payload, "skipJobs", "skip_jobs"), field="skipJobs", errors=errors),
            skip_documents=_coerce_bool(
                _pick(payload, "skipDocuments", "skip_documents"), field="skipDocuments", errors=errors
            ),
            date_after=date_after,
            date_before=date_before,
            overwrite_existing=_coerce_bool(
                _pick(payload, "overwriteExisting", "overwrite_existing"),
                field="overwriteExisting",
                errors=errors,
            ),
        )
        if errors:
            raise ValidationError(errors)
        return options

    @classmethod
    def from_json(cls, payload: Mapping[str, Any] | None) -> "MigrationOptions":
        """Rebuild options previously stored with ``as_json``."""
        payload = dict(payload or {})
        for key in ("date_after", "date_before"):
            if payload.get(key):
                payload[key] = datetime.fromisoformat(payload[key])
        known = {name: payload[name] for name in cls.__dataclass_fields__ if name in payload}
        return cls(**known)

    def as_json(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("date_after", "date_before"):
            if payload[key] is not None:
                payload[key] = payload[key].isoformat()
        return payload

    def skips(self, entity_type: str) -> bool:
        """Return True when the entity type is excluded from writes."""
        return {
            "contact": self.skip_contacts,
            "job": self.skip_jobs,
            "document": self.skip_documents,
        }.get(entity_type, False)

    def in_window(self, occurred_at: datetime | None) -> bool:
        """Return True when a record's timestamp falls inside the date filter."""
        if occurred_at is None:
            return True
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        if self.date_after and occurred_at < self.date_after:
            return False
        if self.date_before and occurred_at > self.date_before:
            return False
        return True
