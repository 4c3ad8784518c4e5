"""
Pre-flight checks.

``check_source`` is the wizard's first step: it proves the credentials work
and sizes the import with one small request per entity. ``build_preflight_report``
summarizes what a real run would do from a dry run's audit items: counts,
the first duplicate matches, records with validation problems, and a few
operator recommendations.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_migrator.models import EntityType, MatchDecision, MigrationItem, MigrationJob

from ..adapters.base import SourceAdapter
from ..errors import SourceError, TransientSourceError
from ..options import MigrationOptions
from .normalize import resolve_full_name
from .progress import estimate_duration, round_half_up

REPORT_LIST_LIMIT = 20
SAMPLE_MAPPING_LIMIT = 5

DUPLICATE_RATE_THRESHOLD = 20
LARGE_CONTACT_COUNT = 5000
VALIDATION_WARNING_THRESHOLD = 10
LARGE_DOCUMENT_COUNT = 1000


def build_preflight_report(session: Session, job: MigrationJob) -> dict[str, Any]:
    """Return the dry-run summary payload for ``job``."""

    options = MigrationOptions.from_json(job.options_json)
    items = list(
        session.scalars(select(MigrationItem).where(MigrationItem.job_id == job.id).order_by(MigrationItem.id))
    )

    totals = {entity.value: 0 for entity in EntityType}
    matched = {entity.value: 0 for entity in EntityType}
    duplicates: list[dict[str, Any]] = []
    validation_errors: list[dict[str, Any]] = []
    sample_mappings: list[dict[str, Any]] = []

    for item in items:
        entity = item.entity_type.value
        totals[entity] += 1
        fields = (item.canonical_payload or {}).get("fields", {})

        if item.match_decision in (MatchDecision.DUPLICATE, MatchDecision.UPDATED):
            matched[entity] += 1
            duplicates.append(
                {
                    "type": entity,
                    "externalId": item.external_id,
                    "decision": item.match_decision.value,
                    "strategy": item.match_strategy,
                    "confidence": item.match_confidence,
                    "matchedInternalId": item.target_id,
                    "matchedItemId": item.matched_item_id,
                    "changes": item.changes_json or {},
                }
            )

        if item.entity_type == EntityType.CONTACT and not item.error:
            name = resolve_full_name(fields) or ""
            if len(name) < 2 or name.lower() == "unknown":
                validation_errors.append(
                    {
                        "type": entity,
                        "externalId": item.external_id,
                        "field": "name",
                        "error": "Missing or invalid contact name",
                        "value": name or None,
                    }
                )
        if item.error:
            validation_errors.append(
                {"type": entity, "externalId": item.external_id, "field": None, "error": item.error, "value": None}
            )

        if len(sample_mappings) < SAMPLE_MAPPING_LIMIT and item.match_decision is not None:
            sample_mappings.append({"type": entity, "externalId": item.external_id, "fields": fields})

    contacts = totals[EntityType.CONTACT.value]
    jobs = totals[EntityType.JOB.value]
    documents = totals[EntityType.DOCUMENT.value]
    duplicates_found = matched[EntityType.CONTACT.value] + matched[EntityType.JOB.value]
    duplicate_percent = round_half_up(duplicates_found / max(contacts + jobs, 1) * 100)

    recommendations: list[str] = []
    if duplicate_percent > DUPLICATE_RATE_THRESHOLD:
        recommendations.append(
            f"High duplicate rate ({duplicate_percent}%). Consider cleaning up existing data first "
            'or using "overwriteExisting" mode.'
        )
    if contacts > LARGE_CONTACT_COUNT:
        recommendations.append("Large contact list. Consider importing in batches by date range.")
    if len(validation_errors) > VALIDATION_WARNING_THRESHOLD:
        recommendations.append(f"{len(validation_errors)} records have validation issues. Review before importing.")
    if documents > LARGE_DOCUMENT_COUNT:
        recommendations.append("Many documents to import. Document migration may take significant time.")

    return {
        "jobId": job.id,
        "source": job.source.value,
        "summary": {
            "totalRecords": contacts + jobs,
            "contactsToImport": 0 if options.skip_contacts else contacts - matched[EntityType.CONTACT.value],
            "jobsToImport": 0 if options.skip_jobs else jobs - matched[EntityType.JOB.value],
            "documentsToImport": 0 if options.skip_documents else documents - matched[EntityType.DOCUMENT.value],
            "duplicatesFound": duplicates_found,
            "validationErrors": len(validation_errors),
        },
        "duplicates": duplicates[:REPORT_LIST_LIMIT],
        "validationErrors": validation_errors[:REPORT_LIST_LIMIT],
        "sampleMappings": sample_mappings,
        "estimatedDuration": estimate_duration(contacts, jobs),
        "recommendations": recommendations,
    }


def check_source(adapter: SourceAdapter) -> dict[str, Any]:
    """
    Verify the source answers and report how much it holds.

    Source failures are reported as ``ok: False`` with the reason in
    ``warnings``; nothing is written.
    """

    try:
        counts = adapter.count_entities()
    except SourceError as exc:
        reason = str(exc)
        if isinstance(exc, TransientSourceError):
            reason = f"Source is temporarily unavailable: {exc}"
        return {"ok": False, "entityCounts": {}, "estimatedDuration": None, "warnings": [reason]}

    contacts = counts.get("contact") or counts.get("records") or 0
    jobs = counts.get("job") or 0
    warnings: list[str] = []
    unknown = [entity for entity, count in counts.items() if count is None]
    if unknown:
        warnings.append("The source did not report totals for: " + ", ".join(unknown) + ".")
    if contacts > LARGE_CONTACT_COUNT:
        warnings.append("Large contact list. Consider importing in batches by date range.")
    if (counts.get("document") or 0) > LARGE_DOCUMENT_COUNT:
        warnings.append("Many documents to import. Document migration may take significant time.")
    return {
        "ok": True,
        "entityCounts": counts,
        "estimatedDuration": estimate_duration(contacts, jobs),
        "warnings": warnings,
    }
