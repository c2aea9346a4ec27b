"""
History ledger helpers.

Ledger entries are written once, in the same transaction that moves a job to
its terminal state. Afterwards only the rollback columns change. A module is
satisfied while it has a completed, non-dry-run entry that has not been
rolled back.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from sysinit_app.models import db
from sysinit_app.models.importer.schema import ImportHistoryEntry, ImportJob, ImportJobStatus

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 500


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: datetime | None) -> str | None:
    value = _as_utc(value)
    return value.isoformat() if value else None


class HistoryLedger:
    """Read/append access to ``import_history``."""

    def __init__(self, session: Session | None = None) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session or db.session

    def record(self, job: ImportJob) -> ImportHistoryEntry:
        """Append the terminal outcome of ``job``; the caller commits."""

        started = _as_utc(job.started_at)
        finished = _as_utc(job.finished_at) or datetime.now(timezone.utc)
        duration_ms = int((finished - started).total_seconds() * 1000) if started else None
        entry = ImportHistoryEntry(
            job_id=job.job_id,
            module_id=job.module_id,
            outcome=ImportJobStatus(job.status),
            batch_tag=job.batch_tag,
            dry_run=job.dry_run,
            total_rows=job.total_rows,
            success_rows=job.success_rows,
            failed_rows=job.failed_rows,
            skipped_rows=job.skipped_rows,
            actor=job.actor,
            file_name=job.file_name,
            started_at=started,
            finished_at=finished,
            duration_ms=duration_ms,
            error_summary=job.error_summary,
        )
        self.session.add(entry)
        return entry

    def entry_for_job(self, job_id: str) -> ImportHistoryEntry | None:
        return self.session.execute(
            select(ImportHistoryEntry).where(ImportHistoryEntry.job_id == job_id)
        ).scalar_one_or_none()

    def _standing_query(self):
        return select(ImportHistoryEntry).where(*ImportHistoryEntry.standing_criteria())

    def satisfied_modules(self, module_ids: Iterable[str]) -> set[str]:
        ids = sorted(set(module_ids))
        if not ids:
            return set()
        query = (
            select(ImportHistoryEntry.module_id)
            .where(ImportHistoryEntry.module_id.in_(ids), *ImportHistoryEntry.standing_criteria())
            .distinct()
        )
        return set(self.session.execute(query).scalars())

    def is_satisfied(self, module_id: str) -> bool:
        return module_id in self.satisfied_modules([module_id])

    def latest(self, module_id: str) -> ImportHistoryEntry | None:
        """Most recent non-dry-run entry for ``module_id`` regardless of outcome."""

        return self.session.execute(
            select(ImportHistoryEntry)
            .where(ImportHistoryEntry.module_id == module_id, ImportHistoryEntry.dry_run.is_(False))
            .order_by(ImportHistoryEntry.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def standing_entries_after(
        self,
        entry: ImportHistoryEntry,
        module_ids: Sequence[str],
    ) -> list[ImportHistoryEntry]:
        """Standing entries for ``module_ids`` recorded after ``entry``."""

        if not module_ids:
            return []
        query = (
            self._standing_query()
            .where(ImportHistoryEntry.module_id.in_(list(module_ids)), ImportHistoryEntry.id > entry.id)
            .order_by(ImportHistoryEntry.id)
        )
        return list(self.session.execute(query).scalars())

    def standing_entries_for_batches(self, batch_tags: Iterable[str | None]) -> list[ImportHistoryEntry]:
        tags = sorted(tag for tag in set(batch_tags) if tag)
        if not tags:
            return []
        query = self._standing_query().where(ImportHistoryEntry.batch_tag.in_(tags)).order_by(ImportHistoryEntry.id)
        return list(self.session.execute(query).scalars())

    def list_entries(
        self,
        module_id: str | None = None,
        *,
        limit: int = DEFAULT_HISTORY_LIMIT,
        include_dry_runs: bool = True,
    ) -> list[ImportHistoryEntry]:
        query = select(ImportHistoryEntry)
        if module_id:
            query = query.where(ImportHistoryEntry.module_id == module_id)
        if not include_dry_runs:
            query = query.where(ImportHistoryEntry.dry_run.is_(False))
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        query = query.order_by(ImportHistoryEntry.id.desc()).limit(limit)
        return list(self.session.execute(query).scalars())


def serialize_entry(entry: ImportHistoryEntry) -> dict[str, Any]:
    outcome = entry.outcome.value if hasattr(entry.outcome, "value") else str(entry.outcome)
    return {
        "job_id": entry.job_id,
        "module_id": entry.module_id,
        "outcome": outcome,
        "dry_run": entry.dry_run,
        "batch_tag": entry.batch_tag,
        "total_rows": entry.total_rows,
        "success_rows": entry.success_rows,
        "failed_rows": entry.failed_rows,
        "skipped_rows": entry.skipped_rows,
        "actor": entry.actor,
        "file_name": entry.file_name,
        "started_at": _isoformat(entry.started_at),
        "finished_at": _isoformat(entry.finished_at),
        "duration_ms": entry.duration_ms,
        "error_summary": entry.error_summary,
        "rolled_back": entry.rolled_back,
        "rolled_back_at": _isoformat(entry.rolled_back_at),
        "rolled_back_by": entry.rolled_back_by,
        "rolled_back_rows": entry.rolled_back_rows,
    }
