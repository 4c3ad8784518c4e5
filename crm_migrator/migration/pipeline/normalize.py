"""
Normalization helpers shared by duplicate detection and the staging writer.
"""

from __future__ import annotations

import re
import string
from typing import Mapping

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = str.maketrans({char: " " for char in string.punctuation})

_STATUS_MAP = {
    "lead": "NEW",
    "new": "NEW",
    "open": "IN_PROGRESS",
    "in progress": "IN_PROGRESS",
    "working": "IN_PROGRESS",
    "pending": "PENDING",
    "closed": "COMPLETED",
    "won": "COMPLETED",
    "completed": "COMPLETED",
    "lost": "CANCELLED",
    "cancelled": "CANCELLED",
}


def _clean_text(value: object | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim an email address; blank input yields None."""

    token = _clean_text(value).lower()
    return token or None


def normalize_phone(value: object | None) -> str | None:
    """
    Strip every non-digit character and keep the last 10 digits.

    Absorbs country codes and formatting so ``(555) 123-4567``,
    ``+1-555-123-4567`` and ``555.123.4567`` all normalize to ``5551234567``.
    Numbers with fewer than 10 digits are too short to match on.
    """

    digits = _NON_DIGITS.sub("", _clean_text(value))
    if len(digits) < 10:
        return None
    return digits[-10:]


def normalize_text(value: object | None) -> str | None:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""

    token = _clean_text(value).lower().translate(_PUNCTUATION)
    token = _WHITESPACE.sub(" ", token).strip()
    return token or None


def normalize_address(value: object | None) -> str | None:
    return normalize_text(value)


def resolve_full_name(fields: Mapping[str, object | None]) -> str | None:
    """Return the best display name a canonical record supplies."""

    full_name = _clean_text(fields.get("full_name"))
    if full_name:
        return full_name
    combined = " ".join(
        part for part in (_clean_text(fields.get("first_name")), _clean_text(fields.get("last_name"))) if part
    )
    if combined:
        return combined
    return _clean_text(fields.get("name")) or None


def normalize_name(fields: Mapping[str, object | None]) -> str | None:
    return normalize_text(resolve_full_name(fields))


def normalize_postal_code(value: object | None) -> str | None:
    """Keep the five-digit ZIP prefix when present; otherwise the trimmed token."""

    token = _clean_text(value)
    if not token:
        return None
    digits = _NON_DIGITS.sub("", token)
    if len(digits) >= 5:
        return digits[:5]
    return token.lower()


def map_external_status(value: object | None) -> str:
    """
    Map a source system's job status label onto the platform's job statuses.

    Unrecognized labels fall back to ``NEW``.
    """

    return _STATUS_MAP.get(_clean_text(value).lower(), "NEW")


def build_match_keys(fields: Mapping[str, object | None]) -> dict[str, str | None]:
    """Compute the normalized keys persisted on staging rows for matching."""

    return {
        "email_normalized": normalize_email(fields.get("email")),
        "phone_normalized": normalize_phone(fields.get("phone")),
        "address_normalized": normalize_address(fields.get("address")),
        "name_normalized": normalize_name(fields),
    }


def is_blank(value: object | None) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def build_staging_values(
    entity_type: str,
    fields: Mapping[str, object | None],
    fillable: tuple[str, ...],
) -> tuple[dict[str, str], dict[str, object]]:
    """
    Split canonical fields into staging column values and leftover extras.

    Contacts and jobs gain a resolved ``full_name``; job statuses pass
    through ``map_external_status``. Blank values are dropped.
    """

    values: dict[str, str] = {}
    extra: dict[str, object] = {}
    for key, value in fields.items():
        if is_blank(value):
            continue
        if key in fillable:
            values[key] = _clean_text(value)
        else:
            extra[key] = value

    if "full_name" in fillable and "full_name" not in values:
        full_name = resolve_full_name(fields)
        if full_name:
            values["full_name"] = full_name
    if entity_type == "job" and "status" in values:
        values["status"] = map_external_status(values["status"])
    if entity_type == "job" and "name" in fillable and "name" not in values and values.get("address"):
        values["name"] = values["address"]
    return values, extra


def diff_values(
    current: Mapping[str, object | None],
    incoming: Mapping[str, object | None],
    *,
    overwrite: bool = False,
) -> dict[str, dict[str, object | None]]:
    """
    Field-level diff of what a write would change on an existing row.

    Blank fields are always filled; populated fields change only when
    ``overwrite`` is set and the values differ.
    """

    diff: dict[str, dict[str, object | None]] = {}
    for key in sorted(incoming):
        after = incoming[key]
        if is_blank(after):
            continue
        before = current.get(key)
        if is_blank(before) or (overwrite and str(before) != str(after)):
            if before == after:
                continue
            diff[key] = {"before": before, "after": after}
    return diff
