"""
Duplicate detection for incoming migration records.

Strategies run in a fixed order and stop at the first one that finds a
candidate:

====  ==============  ==========
step  strategy        confidence
====  ==============  ==========
0     external_id     1.0
1     email           1.0
2     phone           0.9
3     address         0.7
4     name_location   0.5
====  ==============  ==========

``name_location`` compares ZIP when the incoming record has one, else city;
a record with neither matches on the normalized full name alone.

Ties inside a strategy go to the most recently updated candidate, then the
highest id. Dry-run jobs never write staging rows, so they additionally
match against their own earlier ``new`` items (a shadow index) with later
blank-fills applied; a dry run therefore reports the decisions a real run
would make.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_migrator.models import (
    EntityType,
    MatchDecision,
    MigrationItem,
    MigrationJob,
    STAGING_MODELS,
    as_utc,
)

from ..adapters.base import CanonicalRecord
from .normalize import (
    build_match_keys,
    build_staging_values,
    diff_values,
    map_external_status,
    normalize_postal_code,
    normalize_text,
)

__all__ = ["DuplicateDetector", "MatchResult", "map_external_status"]

STRATEGY_CONFIDENCE = {
    "external_id": 1.0,
    "email": 1.0,
    "phone": 0.9,
    "address": 0.7,
    "name_location": 0.5,
}
STRATEGY_ORDER = tuple(STRATEGY_CONFIDENCE)

_KEY_COLUMNS = {
    "email": "email_normalized",
    "phone": "phone_normalized",
    "address": "address_normalized",
}
_INDEXED_COLUMNS = (*_KEY_COLUMNS.values(), "name_normalized")


@dataclass
class Candidate:
    """An existing record an incoming record may duplicate."""

    kind: str  # "staging" or "item"
    id: int
    values: dict[str, Any]
    updated_at: datetime | None
    external_key: tuple[str, str] | None = None
    row: Any = None

    def match_keys(self) -> dict[str, str | None]:
        keys = build_match_keys(self.values)
        keys["postal_code"] = normalize_postal_code(self.values.get("postal_code"))
        keys["city"] = normalize_text(self.values.get("city"))
        return keys


@dataclass(frozen=True)
class MatchResult:
    decision: MatchDecision
    strategy: str | None = None
    confidence: float | None = None
    candidate: Candidate | None = None
    changes: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def target_id(self) -> int | None:
        if self.candidate is not None and self.candidate.kind == "staging":
            return self.candidate.id
        return None

    @property
    def matched_item_id(self) -> int | None:
        if self.candidate is not None and self.candidate.kind == "item":
            return self.candidate.id
        return None


def _newest(candidates: Iterable[Candidate]) -> Candidate | None:
    best: Candidate | None = None
    for candidate in candidates:
        if best is None or _tie_key(candidate) > _tie_key(best):
            best = candidate
    return best


def _tie_key(candidate: Candidate) -> tuple:
    updated = as_utc(candidate.updated_at)
    return (updated is not None, updated.timestamp() if updated else 0.0, candidate.kind == "staging", candidate.id)


def _location_matcher(postal_code: str | None, city: str | None):
    """ZIP decides when the record has one, then city; with neither the name alone matches."""

    def matches(other: Mapping[str, str | None]) -> bool:
        if postal_code:
            return other.get("postal_code") == postal_code
        if city:
            return other.get("city") == city
        return True

    return matches


class _ShadowIndex:
    """
    In-memory view of a dry-run job's own ``new`` items, with fills applied.

    Candidates are bucketed by external key and by each normalized match key
    so a lookup costs one dict access, not a scan of every earlier item.
    """

    def __init__(self) -> None:
        self.items: dict[int, Candidate] = {}
        self.staging_fills: dict[int, dict[str, Any]] = {}
        self._keys: dict[int, dict[str, str | None]] = {}
        self._by_external: dict[tuple[str, str], list[int]] = defaultdict(list)
        self._by_key: dict[str, dict[str, list[int]]] = {column: defaultdict(list) for column in _INDEXED_COLUMNS}

    @classmethod
    def load(cls, session: Session, job: MigrationJob, entity_type: EntityType) -> "_ShadowIndex":
        index = cls()
        rows = session.scalars(
            select(MigrationItem)
            .where(
                MigrationItem.job_id == job.id,
                MigrationItem.entity_type == entity_type,
                MigrationItem.match_decision.in_([MatchDecision.NEW, MatchDecision.UPDATED]),
                MigrationItem.error.is_(None),
            )
            .order_by(MigrationItem.id)
        )
        fillable = STAGING_MODELS[entity_type].FILLABLE_FIELDS
        for item in rows:
            if item.match_decision == MatchDecision.NEW:
                values, _ = build_staging_values(
                    entity_type.value, (item.canonical_payload or {}).get("fields", {}), fillable
                )
                index.add_item(item, values, source=job.source.value)
            else:
                index.apply_fill(item.matched_item_id, item.target_id, item.changes_json or {}, item.processed_at)
        return index

    def add_item(self, item: MigrationItem, values: Mapping[str, Any], *, source: str) -> None:
        candidate = Candidate(
            kind="item",
            id=item.id,
            values=dict(values),
            updated_at=item.processed_at,
            external_key=(source, item.external_id),
        )
        self.items[item.id] = candidate
        self._by_external[candidate.external_key].append(candidate.id)
        self._index(candidate)

    def apply_fill(
        self,
        matched_item_id: int | None,
        target_id: int | None,
        changes: Mapping[str, Mapping[str, Any]],
        when: datetime | None,
    ) -> None:
        after = {key: change.get("after") for key, change in changes.items()}
        if matched_item_id is not None and matched_item_id in self.items:
            candidate = self.items[matched_item_id]
            self._unindex(candidate)
            candidate.values.update(after)
            candidate.updated_at = when or candidate.updated_at
            self._index(candidate)
        elif target_id is not None:
            self.staging_fills.setdefault(target_id, {}).update(after)

    def keys_for(self, candidate: Candidate) -> Mapping[str, str | None]:
        return self._keys[candidate.id]

    def by_external(self, key: tuple[str, str]) -> list[Candidate]:
        return [self.items[item_id] for item_id in self._by_external.get(key, ())]

    def by_key(self, column: str, token: str) -> list[Candidate]:
        return [self.items[item_id] for item_id in self._by_key[column].get(token, ())]

    def _index(self, candidate: Candidate) -> None:
        keys = candidate.match_keys()
        self._keys[candidate.id] = keys
        for column in _INDEXED_COLUMNS:
            token = keys.get(column)
            if token:
                self._by_key[column][token].append(candidate.id)

    def _unindex(self, candidate: Candidate) -> None:
        keys = self._keys.pop(candidate.id, {})
        for column in _INDEXED_COLUMNS:
            token = keys.get(column)
            bucket = self._by_key[column].get(token) if token else None
            if bucket and candidate.id in bucket:
                bucket.remove(candidate.id)


class DuplicateDetector:
    """Decide whether an incoming record is new, a duplicate, or an update."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self._shadows: dict[tuple[int, EntityType], _ShadowIndex] = {}

    # Public API -----------------------------------------------------------------

    def detect(self, job: MigrationJob, record: CanonicalRecord, *, overwrite: bool = False) -> MatchResult:
        entity_type = EntityType(record.entity_type)
        if entity_type == EntityType.DOCUMENT:
            return self._detect_document(job, record)

        model = STAGING_MODELS[entity_type]
        values, _ = build_staging_values(entity_type.value, record.as_payload()["fields"], model.FILLABLE_FIELDS)
        keys = build_match_keys(values)
        keys["postal_code"] = normalize_postal_code(values.get("postal_code"))
        keys["city"] = normalize_text(values.get("city"))
        shadow = self._shadow(job, entity_type) if job.dry_run else None

        for strategy in STRATEGY_ORDER:
            candidate = self._find(strategy, job, record, model, keys, shadow)
            if candidate is None:
                continue
            changes = diff_values(candidate.values, values, overwrite=overwrite)
            decision = MatchDecision.UPDATED if changes else MatchDecision.DUPLICATE
            return MatchResult(
                decision=decision,
                strategy=strategy,
                confidence=STRATEGY_CONFIDENCE[strategy],
                candidate=candidate,
                changes=changes,
            )
        return MatchResult(decision=MatchDecision.NEW)

    def remember(self, job: MigrationJob, item: MigrationItem) -> None:
        """Feed a freshly written dry-run item into the shadow index."""

        if not job.dry_run or item.entity_type == EntityType.DOCUMENT or item.error:
            return
        key = (job.id, item.entity_type)
        shadow = self._shadows.get(key)
        if shadow is None:
            return
        if item.match_decision == MatchDecision.NEW:
            values, _ = build_staging_values(
                item.entity_type.value,
                (item.canonical_payload or {}).get("fields", {}),
                STAGING_MODELS[item.entity_type].FILLABLE_FIELDS,
            )
            shadow.add_item(item, values, source=job.source.value)
        elif item.match_decision == MatchDecision.UPDATED:
            shadow.apply_fill(item.matched_item_id, item.target_id, item.changes_json or {}, item.processed_at)

    def forget(self, job_id: int) -> None:
        for key in [key for key in self._shadows if key[0] == job_id]:
            del self._shadows[key]

    # Internal helpers -----------------------------------------------------------

    def _shadow(self, job: MigrationJob, entity_type: EntityType) -> _ShadowIndex:
        key = (job.id, entity_type)
        if key not in self._shadows:
            self._shadows[key] = _ShadowIndex.load(self.session, job, entity_type)
        return self._shadows[key]

    def _find(
        self,
        strategy: str,
        job: MigrationJob,
        record: CanonicalRecord,
        model,
        keys: Mapping[str, str | None],
        shadow: _ShadowIndex | None,
    ) -> Candidate | None:
        base = select(model).where(model.org_id == job.org_id)
        shadow_candidates: list[Candidate] = []
        location_check = None
        if strategy == "external_id":
            external_key = (job.source.value, record.external_id)
            stmt = base.where(model.source == job.source, model.external_id == record.external_id)
            if shadow is not None:
                shadow_candidates = shadow.by_external(external_key)
        elif strategy in _KEY_COLUMNS:
            column = _KEY_COLUMNS[strategy]
            token = keys.get(column)
            if not token:
                return None
            stmt = base.where(getattr(model, column) == token)
            if shadow is not None:
                shadow_candidates = shadow.by_key(column, token)
        else:
            name = keys.get("name_normalized")
            if not name:
                return None
            stmt = base.where(model.name_normalized == name)
            location_check = _location_matcher(keys.get("postal_code"), keys.get("city"))
            if shadow is not None:
                shadow_candidates = [
                    c for c in shadow.by_key("name_normalized", name) if location_check(shadow.keys_for(c))
                ]

        candidates: list[Candidate] = []
        for row in self.session.scalars(stmt.order_by(model.updated_at.desc(), model.id.desc())):
            candidate = self._staging_candidate(row, shadow)
            if location_check is None:
                candidates.append(candidate)
                break
            if location_check(candidate.match_keys()):
                candidates.append(candidate)
        candidates.extend(shadow_candidates)
        return _newest(candidates)

    @staticmethod
    def _staging_candidate(row, shadow: _ShadowIndex | None) -> Candidate:
        values = row.field_values()
        if shadow is not None and row.id in shadow.staging_fills:
            values.update(shadow.staging_fills[row.id])
        return Candidate(
            kind="staging",
            id=row.id,
            values=values,
            updated_at=row.updated_at,
            external_key=(row.source.value, row.external_id),
            row=row,
        )

    def _detect_document(self, job: MigrationJob, record: CanonicalRecord) -> MatchResult:
        stmt = (
            select(MigrationItem)
            .join(MigrationJob, MigrationItem.job_id == MigrationJob.id)
            .where(
                MigrationJob.org_id == job.org_id,
                MigrationJob.source == job.source,
                MigrationJob.rolled_back_at.is_(None),
                MigrationItem.entity_type == EntityType.DOCUMENT,
                MigrationItem.external_id == record.external_id,
                MigrationItem.match_decision == MatchDecision.NEW,
                MigrationItem.error.is_(None),
            )
            .order_by(MigrationItem.id.desc())
        )
        for item in self.session.scalars(stmt):
            if item.job_id == job.id or not item.job.dry_run:
                return MatchResult(
                    decision=MatchDecision.DUPLICATE,
                    strategy="external_id",
                    confidence=STRATEGY_CONFIDENCE["external_id"],
                    candidate=Candidate(kind="item", id=item.id, values={}, updated_at=item.processed_at),
                )
        return MatchResult(decision=MatchDecision.NEW)
