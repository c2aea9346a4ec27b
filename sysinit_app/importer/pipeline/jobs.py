"""
Read-side helpers for import jobs: status payloads and recent-job listings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select

from sysinit_app.models import db
from sysinit_app.models.importer.schema import (
    ImportJob,
    ImportJobRow,
    ImportJobStatus,
    ImportRowStatus,
)

from ..errors import JobNotFoundError
from .ledger import _isoformat

DEFAULT_ROW_LIMIT = 50
MAX_ROW_LIMIT = 1000
DEFAULT_JOB_LIMIT = 25
MAX_JOB_LIMIT = 200

FAILED_ROW_STATUSES = (ImportRowStatus.FAILED, ImportRowStatus.INVALID)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


@dataclass(slots=True)
class FailedRow:
    row_number: int
    status: str
    error_message: str | None
    issues: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "status": self.status,
            "error_message": self.error_message,
            "issues": self.issues,
        }


@dataclass(slots=True)
class JobStatusView:
    """Snapshot of a job's progress suitable for polling clients."""

    job_id: str
    module_id: str
    status: str
    dry_run: bool
    progress_percent: float
    total_rows: int
    processed_rows: int
    success_rows: int
    failed_rows: int
    skipped_rows: int
    chunks_completed: int
    chunks_failed: int
    cancel_requested: bool
    batch_tag: str
    actor: str | None
    file_name: str | None
    created_at: datetime | None
    started_at: datetime | None
    finished_at: datetime | None
    error_summary: str | None
    failed_row_details: list[FailedRow] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "module_id": self.module_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "progress_percent": self.progress_percent,
            "counts": {
                "total": self.total_rows,
                "processed": self.processed_rows,
                "success": self.success_rows,
                "failed": self.failed_rows,
                "skipped": self.skipped_rows,
            },
            "chunks": {"completed": self.chunks_completed, "failed": self.chunks_failed},
            "cancel_requested": self.cancel_requested,
            "batch_tag": self.batch_tag,
            "actor": self.actor,
            "file_name": self.file_name,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "error_summary": self.error_summary,
            "failed_rows": [row.as_dict() for row in self.failed_row_details],
        }


class JobQueryService:
    def get_job(self, job_id: str) -> ImportJob:
        job = db.session.execute(select(ImportJob).where(ImportJob.job_id == job_id)).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def status(self, job_id: str, *, row_limit: int = DEFAULT_ROW_LIMIT) -> JobStatusView:
        job = self.get_job(job_id)
        row_limit = max(0, min(int(row_limit), MAX_ROW_LIMIT))
        failed_rows: list[FailedRow] = []
        if row_limit:
            query = (
                select(ImportJobRow)
                .where(ImportJobRow.job_pk == job.id, ImportJobRow.status.in_(FAILED_ROW_STATUSES))
                .order_by(ImportJobRow.row_number)
                .limit(row_limit)
            )
            failed_rows = [
                FailedRow(
                    row_number=row.row_number,
                    status=_enum_value(row.status),
                    error_message=row.error_message,
                    issues=list(row.issues_json or []),
                )
                for row in db.session.execute(query).scalars()
            ]
        return JobStatusView(
            job_id=job.job_id,
            module_id=job.module_id,
            status=_enum_value(job.status),
            dry_run=job.dry_run,
            progress_percent=job.progress_percent,
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            success_rows=job.success_rows,
            failed_rows=job.failed_rows,
            skipped_rows=job.skipped_rows,
            chunks_completed=job.chunks_completed,
            chunks_failed=job.chunks_failed,
            cancel_requested=job.cancel_requested,
            batch_tag=job.batch_tag,
            actor=job.actor,
            file_name=job.file_name,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error_summary=job.error_summary,
            failed_row_details=failed_rows,
        )

    def list_jobs(
        self,
        *,
        module_id: str | None = None,
        statuses: Iterable[str | ImportJobStatus] | None = None,
        limit: int = DEFAULT_JOB_LIMIT,
    ) -> list[ImportJob]:
        query = select(ImportJob)
        if module_id:
            query = query.where(ImportJob.module_id == module_id)
        resolved = [ImportJobStatus(value) for value in (statuses or ()) if value]
        if resolved:
            query = query.where(ImportJob.status.in_(resolved))
        limit = max(1, min(int(limit), MAX_JOB_LIMIT))
        return list(db.session.execute(query.order_by(ImportJob.id.desc()).limit(limit)).scalars())
