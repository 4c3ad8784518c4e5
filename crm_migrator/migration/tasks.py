"""
Migration Celery tasks.

``migrations.run_job`` only ever drives a job that is already RUNNING, so a
redelivered message after a worker crash resumes from the checkpoint and a
message for a paused or cancelled job is a no-op. A run that reaches the soft
time limit sends itself again and the next worker continues from the checkpoint.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded

from .services import build_orchestrator

logger = logging.getLogger(__name__)


@shared_task(name="migrations.healthcheck", bind=True)
def migrations_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask migrations worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }

@shared_task(name="migrations.run_job", bind=True)
def run_migration_job(self, *, job_id: int) -> dict[str, Any]:
    """Drive a migration job from its checkpoint and return its status snapshot."""

    orchestrator = build_orchestrator()
    try:
        orchestrator.run(job_id)
    except SoftTimeLimitExceeded:
        requeued = self.app.send_task(self.name, kwargs={"job_id": job_id})
        logger.warning(
            "Migration job %s reached the soft time limit; requeued as task %s",
            job_id,
            requeued.id,
            extra={"migration_job_id": job_id},
        )
        status = orchestrator.get_status(job_id)
        status["requeued"] = True
        status["requeuedTaskId"] = requeued.id
        return status
    return orchestrator.get_status(job_id)
