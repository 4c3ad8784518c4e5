"""
Migration source registry.

Sources register metadata here so configuration validation and the API's
source listing can happen without constructing any adapter.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence, Tuple

from .adapters import (
    AccuLynxAdapter,
    CSVSourceAdapter,
    HoverAdapter,
    JobNimbusAdapter,
    RecordListAdapter,
    RoofrAdapter,
    SourceAdapter,
)
from .errors import ValidationError

MIN_API_KEY_LENGTH = 10


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata describing a migration source."""

    name: str
    title: str
    required_params: Tuple[str, ...] = ()
    summary: str | None = None
    entities: Tuple[str, ...] = ("contact", "job", "document")

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "requiredParams": list(self.required_params),
            "entities": list(self.entities),
            "summary": self.summary,
        }


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    """Return the registry of supported migration sources, in display order."""
    return OrderedDict(
        (
            (
                "acculynx",
                SourceDescriptor(
                    name="acculynx",
                    title="AccuLynx",
                    required_params=("api_key",),
                    summary="Import contacts, jobs and documents with an AccuLynx API key.",
                ),
            ),
            (
                "jobnimbus",
                SourceDescriptor(
                    name="jobnimbus",
                    title="JobNimbus",
                    required_params=("api_key",),
                    summary="Import contacts, jobs and files with a JobNimbus API key.",
                ),
            ),
            (
                "csv",
                SourceDescriptor(
                    name="csv",
                    title="CSV Flat File",
                    required_params=("path",),
                    summary="Upload a canonical-column CSV export.",
                ),
            ),
            (
                "roofr",
                SourceDescriptor(
                    name="roofr",
                    title="Roofr",
                    required_params=("api_key",),
                    summary="Import customers and jobs from Roofr.",
                    entities=("contact", "job"),
                ),
            ),
            (
                "hover",
                SourceDescriptor(
                    name="hover",
                    title="Hover",
                    required_params=("api_key",),
                    summary="Import jobs and property imagery from Hover.",
                    entities=("job", "document"),
                ),
            ),
            (
                "other",
                SourceDescriptor(
                    name="other",
                    title="Other (JSON records)",
                    required_params=("records",),
                    summary="Load canonical records supplied directly in the request body.",
                ),
            ),
        )
    )


def resolve_sources(
    configured: Sequence[str],
    registry: Mapping[str, SourceDescriptor] | None = None,
) -> Iterable[SourceDescriptor]:
    """
    Map configured source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown migration sources configured: "
            + ", ".join(unknown)
            + ". Update MIGRATION_SOURCES or register these sources first."
        )
    return tuple(registry[source] for source in configured)


_HTTP_ADAPTERS: Mapping[str, Callable[..., SourceAdapter]] = {
    "acculynx": AccuLynxAdapter,
    "jobnimbus": JobNimbusAdapter,
    "roofr": RoofrAdapter,
    "hover": HoverAdapter,
}


def validate_source_params(source: str, params: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Check the parameters a source needs before a job row is created.

    Raises:
        ValidationError: when the source is unknown or a parameter is missing.
    """

    registry = get_source_registry()
    descriptor = registry.get(source)
    if descriptor is None:
        raise ValidationError([f"Unknown migration source '{source}'."])
    params = dict(params or {})
    if "apiKey" in params and "api_key" not in params:
        params["api_key"] = params.pop("apiKey")
    # Only declared parameters are kept; endpoints always come from the adapter classes.
    params = {name: value for name, value in params.items() if name in descriptor.required_params}

    errors: list[str] = []
    for name in descriptor.required_params:
        if params.get(name) in (None, "", []):
            errors.append(f"{descriptor.title} requires '{name}'.")
    api_key = params.get("api_key")
    if "api_key" in descriptor.required_params and api_key and len(str(api_key).strip()) < MIN_API_KEY_LENGTH:
        errors.append(f"{descriptor.title} API key must be at least {MIN_API_KEY_LENGTH} characters.")
    if source == "other" and params.get("records") is not None and not isinstance(params["records"], list):
        errors.append("'records' must be a list of canonical record objects.")
    if errors:
        raise ValidationError(errors)
    return params


def build_source_adapter(
    source: str,
    params: Mapping[str, Any] | None,
    *,
    http_timeout: float = 30.0,
) -> SourceAdapter:
    """Construct the adapter for ``source`` from persisted parameters."""

    params = validate_source_params(source, params)
    if source in _HTTP_ADAPTERS:
        return _HTTP_ADAPTERS[source](
            api_key=str(params["api_key"]).strip(),
            timeout=http_timeout,
        )
    if source == "csv":
        return CSVSourceAdapter(path=params["path"])
    return RecordListAdapter(params["records"])
