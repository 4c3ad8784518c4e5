from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Iterable, Mapping

import pytest

from crm_migrator.migration.adapters.base import CanonicalRecord, SourceAdapter, SourcePage
from crm_migrator.migration.pipeline.orchestrator import MigrationOrchestrator
from crm_migrator.migration.pipeline.rollback import RollbackManager
from crm_migrator.migration.retry import RetryPolicy
from crm_migrator.models import db


def make_record(external_id: str, entity_type: str = "contact", **fields: Any) -> CanonicalRecord:
    return CanonicalRecord(external_id=external_id, entity_type=entity_type, fields=fields)


class FakeAdapter(SourceAdapter):
    """
    Offset-cursor adapter over an in-memory record list.

    ``failures`` maps a cursor (``None`` for the first page) to exceptions
    raised, in order, before that page is served.
    """

    source = "other"

    def __init__(
        self,
        records: Iterable[CanonicalRecord],
        *,
        failures: Mapping[str | None, list[Exception]] | None = None,
        total_count: int | None = None,
        on_fetch: Callable[[str | None], None] | None = None,
    ) -> None:
        self.records = list(records)
        self.failures = {cursor: list(errors) for cursor, errors in (failures or {}).items()}
        self.total_count = total_count
        self.on_fetch = on_fetch
        self.calls: list[str | None] = []
        self.closed = False

    def fetch_page(self, cursor: str | None, *, page_size: int) -> SourcePage:
        self.calls.append(cursor)
        pending = self.failures.get(cursor)
        if pending:
            raise pending.pop(0)
        if self.on_fetch is not None:
            self.on_fetch(cursor)
        offset = int(cursor) if cursor else 0
        end = offset + page_size
        return SourcePage(
            records=self.records[offset:end],
            next_cursor=str(end) if end < len(self.records) else None,
            total_count=self.total_count,
        )

    def close(self) -> None:
        self.closed = True


class FakeAttachmentFetcher:
    """Records fetches instead of downloading; ``fail`` maps external ids to errors."""

    def __init__(self, fail: Mapping[str, Exception] | None = None) -> None:
        self.fail = dict(fail or {})
        self.fetched: list[str] = []
        self.removed: dict[int, int] = defaultdict(int)

    def fetch(self, job, record: CanonicalRecord) -> dict[str, Any]:
        if record.external_id in self.fail:
            raise self.fail[record.external_id]
        self.fetched.append(record.external_id)
        return {"path": f"/artifacts/{job.id}/{record.external_id}", "bytes": 10, "sha256": "abc"}

    def remove_job(self, job) -> int:
        count = sum(1 for _ in self.fetched)
        self.removed[job.id] += count
        return count


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def sample_records():
    """One contact and one job, the smallest useful source export."""
    return [
        make_record("c1", first_name="Ada", last_name="Lovelace", email="ada@example.com"),
        make_record("j1", "job", name="Lovelace Roof", address="1 Main St", status="Won"),
    ]


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def attachment_fetcher():
    return FakeAttachmentFetcher()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def orchestrator(app, attachment_fetcher, retry_policy):
    return MigrationOrchestrator(
        db.session,
        attachment_fetcher=attachment_fetcher,
        retry_policy=retry_policy,
        sleep_fn=lambda _seconds: None,
    )


@pytest.fixture
def rollback_manager(app, attachment_fetcher):
    return RollbackManager(db.session, attachment_fetcher=attachment_fetcher, chunk_size=2)
