"""
Batch rollback.

A completed import is reversed by restoring the before-images captured for
updated rows and deleting every row still tagged with the job's batch tag.
Imports of dependent modules recorded after the target, and imports whose rows
reference rows the target created (a department nested under a department of
the target batch), block the rollback unless a cascade is requested. A cascade
reverses them first, latest registry position and latest entry first, inside
the same transaction.
"""

from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flask import current_app
from sqlalchemy import select

from sysinit_app.models import db
from sysinit_app.models.importer.schema import (
    ImportHistoryEntry,
    ImportJob,
    ImportJobRow,
    ImportJobStatus,
    ImportRowStatus,
)

from ..contracts import RestoreTarget
from ..errors import DependentDataExistsError, JobNotFoundError, RollbackNotAllowedError
from ..metrics import record_rollback
from ..registry import ModuleRegistry
from .ledger import HistoryLedger, _isoformat
from .locking import module_lock
from .ordering import transitive_dependents


@dataclass(slots=True)
class ReversedBatch:
    job_id: str
    module_id: str
    reversed_rows: int

    def as_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, "module_id": self.module_id, "reversed_rows": self.reversed_rows}


@dataclass(slots=True)
class RollbackResult:
    job_id: str
    module_id: str
    reversed_rows: int
    rolled_back_at: datetime | None = None
    cascaded: list[ReversedBatch] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "module_id": self.module_id,
            "reversed_rows": self.reversed_rows,
            "rolled_back_at": _isoformat(self.rolled_back_at),
            "cascaded": [batch.as_dict() for batch in self.cascaded],
        }


class RollbackCoordinator:
    def __init__(
        self,
        registry: ModuleRegistry,
        *,
        ledger: HistoryLedger | None = None,
        lock_timeout: float = 30.0,
    ) -> None:
        self.registry = registry
        self.ledger = ledger or HistoryLedger()
        self.lock_timeout = lock_timeout

    def _get_job(self, job_id: str) -> ImportJob:
        job = db.session.execute(select(ImportJob).where(ImportJob.job_id == job_id)).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _check_allowed(self, job: ImportJob, entry: ImportHistoryEntry | None) -> None:
        module = self.registry.get(job.module_id)
        if not module.descriptor.supports_rollback:
            raise RollbackNotAllowedError(job.job_id, f"module '{module.id}' does not support rollback.")
        if job.dry_run:
            raise RollbackNotAllowedError(job.job_id, "dry runs do not write data.")
        if ImportJobStatus(job.status) != ImportJobStatus.COMPLETED or entry is None:
            raise RollbackNotAllowedError(
                job.job_id,
                f"only completed imports can be rolled back (status is '{ImportJobStatus(job.status).value}').",
            )
        if entry.rolled_back:
            raise RollbackNotAllowedError(job.job_id, "it has already been rolled back.")

    def locked_modules(self, module_id: str) -> list[str]:
        """``module_id`` and every module depending on it, in registry order."""

        affected = {module_id} | transitive_dependents(module_id, self.registry.ordered_descriptors())
        return sorted(affected, key=self.registry.position)

    def _written_rows(self, entry: ImportHistoryEntry) -> list[ImportJobRow]:
        job = self._get_job(entry.job_id)
        return [row for row in job.rows if row.status == ImportRowStatus.WRITTEN]

    def _restore_targets(self, rows: list[ImportJobRow]) -> list[RestoreTarget]:
        return [
            RestoreTarget(target_id=row.target_id, before=row.before_json)
            for row in sorted(rows, key=lambda row: row.row_number, reverse=True)
            if row.target_id is not None and row.before_json
        ]

    def _referencing_entries(self, entry: ImportHistoryEntry) -> list[ImportHistoryEntry]:
        """Standing imports whose rows point at rows ``entry`` would delete."""

        module = self.registry.get(entry.module_id)
        kept_ids = [target.target_id for target in self._restore_targets(self._written_rows(entry))]
        tags = module.referencing_batches(db.session, entry.batch_tag, kept_ids)
        if not tags:
            return []
        entries = self.ledger.standing_entries_for_batches(tags)
        unresolved = tags - {item.batch_tag for item in entries}
        if unresolved:
            raise RollbackNotAllowedError(
                entry.job_id,
                f"{module.id} rows written outside a reversible import still reference rows it created.",
            )
        return entries

    def dependents_of(self, entry: ImportHistoryEntry) -> list[ImportHistoryEntry]:
        """
        Standing imports of dependent modules recorded after ``entry``, plus
        standing imports of any module whose rows reference rows of ``entry``.
        """

        dependent_ids = transitive_dependents(entry.module_id, self.registry.ordered_descriptors())
        found = {item.id: item for item in self.ledger.standing_entries_after(entry, sorted(dependent_ids))}
        for item in self._referencing_entries(entry):
            found.setdefault(item.id, item)
        return sorted(found.values(), key=lambda item: item.id)

    def _cascade_plan(self, entry: ImportHistoryEntry) -> list[ImportHistoryEntry]:
        collected: dict[int, ImportHistoryEntry] = {}
        worklist = [entry]
        while worklist:
            current = worklist.pop()
            for dependent in self.dependents_of(current):
                if dependent.id not in collected and dependent.id != entry.id:
                    collected[dependent.id] = dependent
                    worklist.append(dependent)
        return sorted(
            collected.values(),
            key=lambda item: (-self.registry.position(item.module_id), -item.id),
        )

    def _reverse(self, entry: ImportHistoryEntry, actor: str | None, *, cascade: bool) -> int:
        module = self.registry.get(entry.module_id)
        written = self._written_rows(entry)
        reversed_rows = module.reverse_batch(db.session, entry.batch_tag, self._restore_targets(written))
        for row in written:
            row.status = ImportRowStatus.REVERSED
        entry.mark_rolled_back(actor=actor, rows=reversed_rows)
        record_rollback(module.id, cascade=cascade)
        return reversed_rows

    def rollback(self, job_id: str, *, cascade: bool = False, actor: str | None = None) -> RollbackResult:
        """
        Reverse a completed import.

        The locks of the job's module and of every module depending on it are
        held while the eligibility checks, the dependents lookup and the writes
        run, so no import of an affected module can finish in between.

        Raises ``RollbackNotAllowedError`` for dry runs, non-completed or
        already reversed jobs, and ``DependentDataExistsError`` when dependent
        imports are still standing and ``cascade`` is false.
        """

        module_id = self._get_job(job_id).module_id
        # the checks below must read what committed while waiting for the locks
        db.session.commit()

        with ExitStack() as locks:
            for locked_id in self.locked_modules(module_id):
                locks.enter_context(module_lock(db.engine, locked_id, timeout=self.lock_timeout))
            try:
                job = self._get_job(job_id)
                entry = self.ledger.entry_for_job(job_id)
                self._check_allowed(job, entry)

                dependents = self.dependents_of(entry)
                if dependents and not cascade:
                    raise DependentDataExistsError(job_id, [(item.job_id, item.module_id) for item in dependents])

                plan = self._cascade_plan(entry) if cascade else []
                for item in plan:
                    if not self.registry.get(item.module_id).descriptor.supports_rollback:
                        raise RollbackNotAllowedError(
                            job_id,
                            f"dependent module '{item.module_id}' does not support rollback.",
                        )

                cascaded = [
                    ReversedBatch(item.job_id, item.module_id, self._reverse(item, actor, cascade=True))
                    for item in plan
                ]
                reversed_rows = self._reverse(entry, actor, cascade=False)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        current_app.logger.info(
            "Import job rolled back",
            extra={
                "importer_job_id": job_id,
                "importer_module_id": entry.module_id,
                "importer_reversed_rows": reversed_rows,
                "importer_cascaded_jobs": [batch.job_id for batch in cascaded],
                "importer_actor": actor,
            },
        )
        return RollbackResult(
            job_id=job_id,
            module_id=entry.module_id,
            reversed_rows=reversed_rows,
            rolled_back_at=entry.rolled_back_at,
            cascaded=cascaded,
        )
