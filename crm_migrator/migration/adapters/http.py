"""
HTTP adapters for hosted CRM sources.

``HTTPSourceAdapter`` owns paging, authentication and error classification;
provider subclasses only declare endpoints and how native fields map onto
canonical ones. Cursors look like ``"contact:3"`` and walk contacts, then
jobs, then documents.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Mapping, Sequence

import requests

from ..errors import TerminalSourceError, TransientSourceError
from .base import CanonicalRecord, SourceAdapter, SourcePage

logger = logging.getLogger(__name__)

ENTITY_ORDER = ("contact", "job", "document")
TRANSIENT_STATUS_CODES = {408, 425, 429}


def _lookup(payload: Mapping[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _parse_retry_after(response: requests.Response) -> float | None:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        return None


def parse_cursor(cursor: str | None, entities: Sequence[str]) -> tuple[str, int]:
    if not cursor:
        return entities[0], 1
    entity, _, page = cursor.partition(":")
    if entity not in entities or not page.isdigit() or int(page) < 1:
        raise TerminalSourceError(f"Unrecognized source cursor '{cursor}'.")
    return entity, int(page)


class HTTPSourceAdapter(SourceAdapter):
    """Paged JSON API client shared by the hosted CRM sources."""

    BASE_URL: ClassVar[str] = ""
    ENDPOINTS: ClassVar[Mapping[str, str]] = {}
    RESULTS_KEYS: ClassVar[tuple[str, ...]] = ("items", "results", "data")
    TOTAL_KEYS: ClassVar[tuple[str, ...]] = ("total", "count", "totalCount")
    PAGE_PARAM: ClassVar[str] = "page"
    SIZE_PARAM: ClassVar[str] = "pageSize"
    ID_FIELDS: ClassVar[tuple[str, ...]] = ("id",)
    FIELD_MAPS: ClassVar[Mapping[str, Mapping[str, tuple[str, ...]]]] = {}

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._totals: dict[str, int] = {}

    @property
    def entities(self) -> tuple[str, ...]:
        return tuple(entity for entity in ENTITY_ORDER if entity in self.ENDPOINTS)

    def describe(self) -> dict[str, Any]:
        return {"api_key": self.api_key}

    def close(self) -> None:
        self.session.close()

    def fetch_page(self, cursor: str | None, *, page_size: int) -> SourcePage:
        entity, page = parse_cursor(cursor, self.entities)
        payload = self._get(self.ENDPOINTS[entity], params={self.PAGE_PARAM: page, self.SIZE_PARAM: page_size})
        rows = self._extract_rows(payload)
        total = self._extract_total(payload)
        if total is not None:
            self._totals[entity] = total

        records = [self._map_row(entity, row, f"{entity}:{page}:{index}") for index, row in enumerate(rows)]
        if len(rows) >= page_size and (total is None or page * page_size < total):
            next_cursor: str | None = f"{entity}:{page + 1}"
        else:
            position = self.entities.index(entity)
            next_cursor = f"{self.entities[position + 1]}:1" if position + 1 < len(self.entities) else None

        logger.debug(
            "Fetched source page",
            extra={
                "migration_source": self.source,
                "source_cursor": cursor,
                "records": len(records),
                "next_cursor": next_cursor,
            },
        )
        return SourcePage(
            records=records,
            next_cursor=next_cursor,
            total_count=sum(self._totals.values()) if self._totals else None,
        )

    def count_entities(self) -> dict[str, int | None]:
        counts: dict[str, int | None] = {}
        for entity in self.entities:
            page = self.fetch_page(f"{entity}:1", page_size=1)
            # Without a total in the response only an empty entity is known.
            counts[entity] = self._totals.get(entity, None if page.records else 0)
        return counts

    # Mapping -----------------------------------------------------------------

    def _map_row(self, entity: str, row: Any, position: str) -> CanonicalRecord:
        """Map one native row; unusable rows come back rejected, keyed by their page position."""
        if not isinstance(row, Mapping):
            return CanonicalRecord.rejected(
                position,
                f"{self.source} returned a non-object {entity} row.",
                entity_type=entity,
            )
        try:
            return self.map_record(entity, row)
        except ValueError as exc:
            logger.warning(
                "Rejected source row",
                extra={"migration_source": self.source, "source_position": position, "reason": str(exc)},
            )
            return CanonicalRecord.rejected(position, str(exc), entity_type=entity, fields=row)

    def map_record(self, entity: str, row: Mapping[str, Any]) -> CanonicalRecord:
        external_id = None
        for name in self.ID_FIELDS:
            external_id = _lookup(row, name)
            if external_id not in (None, ""):
                break
        if external_id in (None, ""):
            raise ValueError(f"{self.source} returned a {entity} without an id.")

        fields: dict[str, Any] = {}
        for canonical, native_paths in self.FIELD_MAPS.get(entity, {}).items():
            for path in native_paths:
                value = _lookup(row, path)
                if value not in (None, ""):
                    fields[canonical] = value
                    break
        return CanonicalRecord(external_id=str(external_id), entity_type=entity, fields=fields)

    # Transport ---------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def _get(self, path: str, *, params: Mapping[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, headers=self._headers(), params=dict(params), timeout=self.timeout)
        except requests.Timeout as exc:
            raise TransientSourceError(f"{self.source} request timed out: {exc}") from exc
        except requests.ConnectionError as exc:
            raise TransientSourceError(f"{self.source} connection failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise TerminalSourceError(f"{self.source} rejected the credentials (HTTP {status}).")
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise TransientSourceError(
                f"{self.source} responded with HTTP {status}.",
                retry_after=_parse_retry_after(response),
            )
        if status >= 400:
            raise TerminalSourceError(f"{self.source} request to {path} failed (HTTP {status}).")
        try:
            return response.json()
        except ValueError as exc:
            raise TransientSourceError(f"{self.source} returned a malformed JSON body.") from exc

    def _extract_rows(self, payload: Any) -> list[Any]:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, Mapping):
            for key in self.RESULTS_KEYS:
                rows = payload.get(key)
                if isinstance(rows, list):
                    return rows
        return []

    def _extract_total(self, payload: Any) -> int | None:
        if not isinstance(payload, Mapping):
            return None
        for key in self.TOTAL_KEYS:
            value = payload.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        return None


class AccuLynxAdapter(HTTPSourceAdapter):
    source = "acculynx"
    BASE_URL = "https://api.acculynx.com/api/v2"
    ENDPOINTS = {"contact": "/contacts", "job": "/jobs", "document": "/documents"}
    SIZE_PARAM = "pageSize"
    FIELD_MAPS = {
        "contact": {
            "first_name": ("firstName",),
            "last_name": ("lastName",),
            "email": ("emailAddress", "email"),
            "phone": ("phoneNumber", "phone"),
            "address": ("mailingAddress.street1", "address"),
            "city": ("mailingAddress.city",),
            "state": ("mailingAddress.state",),
            "postal_code": ("mailingAddress.zipCode",),
            "company": ("companyName",),
            "created_at": ("createdDate",),
            "updated_at": ("modifiedDate",),
        },
        "job": {
            "name": ("jobName", "name"),
            "status": ("currentMilestone", "status"),
            "address": ("locationAddress.street1",),
            "city": ("locationAddress.city",),
            "state": ("locationAddress.state",),
            "postal_code": ("locationAddress.zipCode",),
            "claim_number": ("insurance.claimNumber",),
            "insurance_carrier": ("insurance.company",),
            "contact_external_id": ("primaryContact.id",),
            "description": ("notes",),
            "created_at": ("createdDate",),
            "updated_at": ("modifiedDate",),
        },
        "document": {
            "filename": ("fileName", "name"),
            "url": ("downloadUrl", "url"),
            "job_external_id": ("jobId",),
            "created_at": ("createdDate",),
        },
    }


class JobNimbusAdapter(HTTPSourceAdapter):
    source = "jobnimbus"
    BASE_URL = "https://app.jobnimbus.com/api1"
    ENDPOINTS = {"contact": "/contacts", "job": "/jobs", "document": "/files"}
    RESULTS_KEYS = ("results",)
    TOTAL_KEYS = ("count",)
    PAGE_PARAM = "from_page"
    SIZE_PARAM = "size"
    ID_FIELDS = ("jnid", "id")
    FIELD_MAPS = {
        "contact": {
            "first_name": ("first_name",),
            "last_name": ("last_name",),
            "full_name": ("display_name",),
            "email": ("email",),
            "phone": ("mobile_phone", "home_phone", "work_phone"),
            "address": ("address_line1",),
            "city": ("city",),
            "state": ("state_text",),
            "postal_code": ("zip",),
            "company": ("company",),
            "date_created": ("date_created",),
            "updated_at": ("date_updated",),
        },
        "job": {
            "name": ("name",),
            "status": ("status_name",),
            "address": ("address_line1",),
            "city": ("city",),
            "state": ("state_text",),
            "postal_code": ("zip",),
            "claim_number": ("claim_number",),
            "insurance_carrier": ("insurance_company",),
            "contact_external_id": ("primary.id",),
            "description": ("description",),
            "date_created": ("date_created",),
            "updated_at": ("date_updated",),
        },
        "document": {
            "filename": ("filename",),
            "url": ("url",),
            "job_external_id": ("primary.id",),
            "date_created": ("date_created",),
        },
    }


class RoofrAdapter(HTTPSourceAdapter):
    source = "roofr"
    BASE_URL = "https://api.roofr.com/v1"
    ENDPOINTS = {"contact": "/customers", "job": "/jobs"}
    SIZE_PARAM = "per_page"
    FIELD_MAPS = {
        "contact": {
            "full_name": ("name",),
            "email": ("email",),
            "phone": ("phone",),
            "address": ("address.line1",),
            "city": ("address.city",),
            "state": ("address.state",),
            "postal_code": ("address.postal_code",),
            "created_at": ("created_at",),
            "updated_at": ("updated_at",),
        },
        "job": {
            "name": ("title", "name"),
            "status": ("stage", "status"),
            "address": ("property_address.line1",),
            "city": ("property_address.city",),
            "state": ("property_address.state",),
            "postal_code": ("property_address.postal_code",),
            "contact_external_id": ("customer_id",),
            "created_at": ("created_at",),
            "updated_at": ("updated_at",),
        },
    }


class HoverAdapter(HTTPSourceAdapter):
    source = "hover"
    BASE_URL = "https://hover.to/api/v2"
    ENDPOINTS = {"job": "/jobs", "document": "/images"}
    RESULTS_KEYS = ("results", "data")
    TOTAL_KEYS = ("count", "total")
    SIZE_PARAM = "per_page"
    FIELD_MAPS = {
        "job": {
            "name": ("name",),
            "status": ("state",),
            "address": ("location_line_1",),
            "city": ("location_city",),
            "state": ("location_region",),
            "postal_code": ("location_postal_code",),
            "full_name": ("customer_name",),
            "email": ("customer_email",),
            "phone": ("customer_phone",),
            "created_at": ("created_at",),
            "updated_at": ("updated_at",),
        },
        "document": {
            "filename": ("file_name",),
            "url": ("image_url", "url"),
            "job_external_id": ("job_id",),
            "created_at": ("created_at",),
        },
    }
