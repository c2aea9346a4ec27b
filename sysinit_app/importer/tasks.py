"""
Importer Celery tasks.

``importer.jobs.execute`` runs a committed job on the worker; the engine
records row and chunk failures on the job itself, so the task only raises for
infrastructure problems. A module lock timeout is retried with the job still
pending.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from sysinit_app.models import db

from .errors import ModuleLockTimeout
from .service import get_orchestrator

LOCK_RETRY_COUNTDOWN_SECONDS = 30
LOCK_MAX_RETRIES = 10


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="importer.jobs.execute", bind=True, max_retries=LOCK_MAX_RETRIES)
def execute_import_job(self, job_id: str) -> dict[str, Any]:
    orchestrator = get_orchestrator()
    try:
        job = orchestrator.execute(job_id)
    except ModuleLockTimeout as exc:
        db.session.rollback()
        current_app.logger.warning(
            "Import job waiting for module lock; retrying",
            extra={"importer_job_id": job_id, "importer_module_id": exc.module_id, "importer_retry": self.request.retries},
        )
        raise self.retry(exc=exc, countdown=LOCK_RETRY_COUNTDOWN_SECONDS)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Import job execution crashed",
            extra={"importer_job_id": job_id, "importer_error": str(exc)},
        )
        raise
    return orchestrator.status(job.job_id, row_limit=0).as_dict()


@shared_task(name="importer.sessions.sweep", bind=True)
def sweep_validation_sessions(self) -> dict[str, Any]:
    removed = get_orchestrator().sweep_sessions()
    return {"removed": removed, "swept_at": datetime.now(timezone.utc).isoformat()}
