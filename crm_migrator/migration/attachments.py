"""
Document/attachment transfer for migration jobs.

Files land under ``<artifact_dir>/<org_id>/<job_id>/`` so a rollback can
remove exactly the files one job downloaded.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Protocol

import requests

from .adapters.base import CanonicalRecord
from .errors import AttachmentError, TransientSourceError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class AttachmentFetcher(Protocol):
    def fetch(self, job, record: CanonicalRecord) -> dict[str, Any]:
        """Download the record's file and return metadata for the audit item."""

    def remove_job(self, job) -> int:
        """Delete every file stored for ``job``; return the number removed."""


def _safe_filename(record: CanonicalRecord) -> str:
    name = str(record.fields.get("filename") or record.external_id)
    return f"{_UNSAFE_FILENAME.sub('_', record.external_id)}-{_UNSAFE_FILENAME.sub('_', name)}"


class HTTPAttachmentFetcher:
    """Stream document URLs to the local artifact directory with ``requests``."""

    def __init__(
        self,
        artifact_dir: str | Path,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.artifact_dir = Path(artifact_dir)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.chunk_size = chunk_size

    def job_dir(self, job) -> Path:
        return self.artifact_dir / str(job.org_id) / str(job.id)

    def fetch(self, job, record: CanonicalRecord) -> dict[str, Any]:
        url = record.fields.get("url")
        if not url:
            raise AttachmentError(f"Document {record.external_id} has no download URL.")

        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
        except requests.Timeout as exc:
            raise TransientSourceError(f"Download of {record.external_id} timed out.") from exc
        except requests.ConnectionError as exc:
            raise TransientSourceError(f"Download of {record.external_id} failed: {exc}") from exc

        with response:
            # Presigned URLs expire per file, so 401/403 fails only this document.
            if response.status_code in (401, 403):
                raise AttachmentError(
                    f"Document {record.external_id} was refused by storage (HTTP {response.status_code})."
                )
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientSourceError(f"Document download returned HTTP {response.status_code}.")
            if response.status_code >= 400:
                raise AttachmentError(f"Document {record.external_id} download failed (HTTP {response.status_code}).")

            target_dir = self.job_dir(job)
            target_dir.mkdir(parents=True, exist_ok=True)
            target = target_dir / _safe_filename(record)
            digest = hashlib.sha256()
            size = 0
            with target.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if not chunk:
                        continue
                    handle.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)

        logger.debug(
            "Stored migrated document",
            extra={"migration_job_id": job.id, "external_id": record.external_id, "bytes": size},
        )
        return {"path": str(target), "bytes": size, "sha256": digest.hexdigest()}

    def remove_job(self, job) -> int:
        target_dir = self.job_dir(job)
        if not target_dir.exists():
            return 0
        removed = sum(1 for path in target_dir.rglob("*") if path.is_file())
        shutil.rmtree(target_dir)
        return removed
