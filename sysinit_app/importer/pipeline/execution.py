"""
Batch execution engine.

``commit`` runs the pre-write checks (session alive, dependencies satisfied,
session committable), consumes the session, and persists a pending
``ImportJob`` with its staged rows. ``execute`` replays the accepted rows in
upload order, chunk by chunk, each chunk in its own savepoint, while holding
the module's advisory lock. Counters are committed after every chunk so a
poller sees monotonically increasing progress; cancellation is honoured only
between chunks.

A dry run releases each chunk savepoint into one outer transaction and rolls
that back once the last chunk ran, so its outcome matches the real run.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence, TypeVar
from uuid import uuid4

from flask import current_app
from sqlalchemy import select, update

from sysinit_app.models import db
from sysinit_app.models.importer.schema import (
    ImportJob,
    ImportJobRow,
    ImportJobStatus,
    ImportRowAction,
    ImportRowStatus,
)

from ..contracts import ImportModule, WriteResult
from ..errors import (
    DependencyNotMetError,
    ImporterError,
    InvalidJobStateError,
    JobNotFoundError,
    SessionNotCommittableError,
)
from ..metrics import record_chunk, record_job_outcome, track_job_in_progress
from ..registry import ModuleRegistry
from ..utils import normalize_payload
from .ledger import HistoryLedger
from .locking import module_lock
from .ordering import missing_dependencies
from .sessions import ValidationSession, ValidationSessionService

DEFAULT_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 5000
ERROR_MESSAGE_LIMIT = 1000

Dispatcher = Callable[[str], Any]
T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in {"1", "true", "yes", "on"}:
        return True
    if token in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Expected a boolean value, got '{value}'.")


@dataclass(frozen=True)
class CommitOptions:
    """Caller-supplied options for a commit."""

    continue_on_error: bool | None = None
    dry_run: bool = False
    chunk_size: int | None = None
    actor: str | None = None

    @classmethod
    def coerce(
        cls,
        *,
        continue_on_error: str | bool | None = None,
        dry_run: str | bool | None = None,
        chunk_size: str | int | None = None,
        actor: str | None = None,
    ) -> "CommitOptions":
        """Coerce mixed user input into validated ``CommitOptions``."""

        resolved_chunk: int | None = None
        if chunk_size not in (None, ""):
            try:
                resolved_chunk = int(chunk_size)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"chunk_size must be an integer, got '{chunk_size}'.") from exc
            if resolved_chunk < 1 or resolved_chunk > MAX_CHUNK_SIZE:
                raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}.")
        return cls(
            continue_on_error=_coerce_bool(continue_on_error),
            dry_run=bool(_coerce_bool(dry_run)),
            chunk_size=resolved_chunk,
            actor=actor.strip() if isinstance(actor, str) and actor.strip() else None,
        )


@dataclass(slots=True)
class CommitReceipt:
    job_id: str
    session_id: str
    module_id: str
    status: str
    batch_tag: str
    dry_run: bool
    total_rows: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "session_id": self.session_id,
            "module_id": self.module_id,
            "status": self.status,
            "batch_tag": self.batch_tag,
            "dry_run": self.dry_run,
            "total_rows": self.total_rows,
        }


@dataclass(slots=True)
class ChunkOutcome:
    """Result of writing one chunk; ``error`` is set when its savepoint was rolled back."""

    index: int
    duration_seconds: float
    results: dict[int, WriteResult] = field(default_factory=dict)
    failing_row: int | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def summary(self) -> str:
        return f"Chunk {self.index} failed at row {self.failing_row}: {self.error}"


def partition_chunks(
    rows: Sequence[T],
    chunk_size: int,
    *,
    key: Callable[[T], str | None] = lambda row: getattr(row, "group_key", None),
) -> list[list[T]]:
    """
    Split ``rows`` into chunks of at most ``chunk_size`` without separating
    consecutive rows that share a group key. A group larger than
    ``chunk_size`` becomes a chunk of its own. Order is preserved.
    """

    if chunk_size < 1:
        raise ValueError("chunk_size must be positive.")
    chunks: list[list[T]] = []
    current: list[T] = []
    index = 0
    while index < len(rows):
        group = [rows[index]]
        group_key = key(rows[index])
        index += 1
        if group_key is not None:
            while index < len(rows) and key(rows[index]) == group_key:
                group.append(rows[index])
                index += 1
        if current and len(current) + len(group) > chunk_size:
            chunks.append(current)
            current = []
        current.extend(group)
        if len(current) >= chunk_size:
            chunks.append(current)
            current = []
    if current:
        chunks.append(current)
    return chunks


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, ImporterError):
        message = exc.message
    else:
        message = str(getattr(exc, "orig", None) or exc) or exc.__class__.__name__
    return message[:ERROR_MESSAGE_LIMIT]


def _first_error(row: ImportJobRow) -> str:
    for issue in row.issues_json or ():
        if issue.get("severity") == "error":
            return str(issue.get("message"))
    return "Row failed validation."


class BatchExecutionEngine:
    """Commit validation sessions into import jobs and execute them."""

    def __init__(
        self,
        registry: ModuleRegistry,
        sessions: ValidationSessionService,
        *,
        ledger: HistoryLedger | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        continue_on_error: bool = False,
        lock_timeout: float = 30.0,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.ledger = ledger or HistoryLedger()
        self.chunk_size = chunk_size
        self.continue_on_error = continue_on_error
        self.lock_timeout = lock_timeout
        self.dispatcher: Dispatcher = dispatcher or self.execute

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(self, session_id: str, options: CommitOptions | None = None) -> CommitReceipt:
        options = options or CommitOptions()
        session = self.sessions.get_session(session_id)
        module = self.registry.get(session.module_id)

        missing = missing_dependencies(module.descriptor, self.ledger)
        if missing:
            raise DependencyNotMetError(module.id, missing)

        continue_on_error = self.continue_on_error if options.continue_on_error is None else options.continue_on_error
        if session.counts.valid == 0:
            raise SessionNotCommittableError(
                session_id,
                session.counts.invalid,
                message=f"Validation session '{session_id}' has no valid rows to import.",
            )
        if session.counts.invalid and not (continue_on_error or module.allow_partial_commit):
            raise SessionNotCommittableError(session_id, session.counts.invalid)

        if not options.dry_run:
            session = self.sessions.consume_session(session_id)

        job = self._create_job(session, module, options, continue_on_error)
        current_app.logger.info(
            "Import job created",
            extra={
                "importer_job_id": job.job_id,
                "importer_module_id": module.id,
                "importer_session_id": session_id,
                "importer_batch_tag": job.batch_tag,
                "importer_dry_run": job.dry_run,
                "importer_rows_total": job.total_rows,
            },
        )
        job_id = job.job_id
        self.dispatcher(job_id)

        job = self._get_job(job_id)
        status = ImportJobStatus(job.status)
        return CommitReceipt(
            job_id=job.job_id,
            session_id=session_id,
            module_id=module.id,
            status=status.value,
            batch_tag=job.batch_tag,
            dry_run=job.dry_run,
            total_rows=job.total_rows,
        )

    def _create_job(
        self,
        session: ValidationSession,
        module: ImportModule,
        options: CommitOptions,
        continue_on_error: bool,
    ) -> ImportJob:
        chunk_size = options.chunk_size or self.chunk_size
        job = ImportJob(
            job_id=str(uuid4()),
            session_id=session.session_id,
            module_id=module.id,
            status=ImportJobStatus.PENDING,
            batch_tag=uuid4().hex,
            dry_run=options.dry_run,
            continue_on_error=continue_on_error,
            chunk_size=chunk_size,
            total_rows=session.counts.total,
            actor=options.actor or session.actor,
            file_name=session.upload.file_name,
            options_json={
                "continue_on_error": options.continue_on_error,
                "dry_run": options.dry_run,
                "chunk_size": options.chunk_size,
            },
        )
        for staged in session.rows:
            job.rows.append(
                ImportJobRow(
                    row_number=staged.row_number,
                    action=staged.action if staged.is_valid else None,
                    status=ImportRowStatus.PENDING if staged.is_valid else ImportRowStatus.INVALID,
                    group_key=staged.group_key,
                    values_json=staged.values,
                    issues_json=[issue.as_dict() for issue in staged.issues] or None,
                )
            )
        db.session.add(job)
        db.session.commit()
        return job

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _get_job(self, job_id: str) -> ImportJob:
        job = db.session.execute(select(ImportJob).where(ImportJob.job_id == job_id)).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _transition(self, job: ImportJob, status: ImportJobStatus) -> None:
        if not job.can_transition_to(status):
            raise InvalidJobStateError(job.job_id, ImportJobStatus(job.status).value, status.value)
        job.status = status

    def _claim(self, job: ImportJob) -> bool:
        """Atomically move a pending job to processing."""

        result = db.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job.id, ImportJob.status == ImportJobStatus.PENDING)
            .values(status=ImportJobStatus.PROCESSING, started_at=_utcnow())
        )
        db.session.commit()
        db.session.refresh(job)
        return result.rowcount == 1

    def execute(self, job_id: str) -> ImportJob:
        """
        Run a pending job to a terminal state.

        Row and chunk failures are recorded on the job, never raised.
        ``ModuleLockTimeout`` leaves the job pending so it can be retried.
        """

        job = self._get_job(job_id)
        status = ImportJobStatus(job.status)
        if status == ImportJobStatus.CANCELLED:
            current_app.logger.info("Import job cancelled before execution", extra={"importer_job_id": job_id})
            return job
        if status != ImportJobStatus.PENDING:
            raise InvalidJobStateError(job_id, status.value, ImportJobStatus.PROCESSING.value)

        module = self.registry.get(job.module_id)
        with module_lock(db.engine, module.id, timeout=self.lock_timeout):
            track_job_in_progress(module.id, 1)
            try:
                return self._run(job, module)
            finally:
                track_job_in_progress(module.id, -1)

    def _run(self, job: ImportJob, module: ImportModule) -> ImportJob:
        if not self._claim(job):
            current_app.logger.info(
                "Import job no longer pending; skipping execution",
                extra={"importer_job_id": job.job_id, "importer_status": ImportJobStatus(job.status).value},
            )
            return job

        missing = missing_dependencies(module.descriptor, self.ledger)
        if missing:
            error = DependencyNotMetError(module.id, missing)
            return self._finalize(job, ImportJobStatus.FAILED, error.message)

        invalid = [row for row in job.rows if row.status == ImportRowStatus.INVALID]
        for row in invalid:
            row.error_message = _first_error(row)
        skipped = [
            row for row in job.rows if row.status == ImportRowStatus.PENDING and row.action == ImportRowAction.SKIP
        ]
        for row in skipped:
            row.status = ImportRowStatus.SKIPPED
        job.failed_rows += len(invalid)
        job.skipped_rows += len(skipped)
        job.processed_rows += len(invalid) + len(skipped)
        db.session.commit()

        pending = [row for row in job.rows if row.status == ImportRowStatus.PENDING]
        chunks = partition_chunks(pending, job.chunk_size)
        if job.dry_run:
            return self._run_dry(job, module, chunks)

        first_failure: str | None = None
        for index, chunk in enumerate(chunks, start=1):
            if self._cancel_requested(job):
                return self._finalize(
                    job,
                    ImportJobStatus.CANCELLED,
                    f"Cancelled after {index - 1} of {len(chunks)} chunk(s).",
                )
            failure = self._run_chunk(job, module, chunk, index)
            if failure is None:
                continue
            first_failure = first_failure or failure
            if not job.continue_on_error:
                return self._finalize(job, ImportJobStatus.FAILED, failure)
        return self._conclude(job, first_failure)

    def _run_dry(self, job: ImportJob, module: ImportModule, chunks: Sequence[Sequence[ImportJobRow]]) -> ImportJob:
        """
        Replay the chunks inside one outer transaction that is rolled back at
        the end, so later chunks see what earlier ones wrote exactly as in a
        real run. Tallies are recorded after the rollback.
        """

        outcomes: list[ChunkOutcome] = []
        cancelled_after: int | None = None
        try:
            for index, chunk in enumerate(chunks, start=1):
                if self._cancel_requested(job):
                    cancelled_after = index - 1
                    break
                outcome = self._write_chunk(job, module, chunk, index)
                outcomes.append(outcome)
                if outcome.failed and not job.continue_on_error:
                    break
        finally:
            db.session.rollback()

        first_failure: str | None = None
        for chunk, outcome in zip(chunks, outcomes):
            self._record_outcome(job, module, chunk, outcome)
            if outcome.failed:
                first_failure = first_failure or outcome.summary
        db.session.commit()

        if cancelled_after is not None:
            return self._finalize(
                job,
                ImportJobStatus.CANCELLED,
                f"Cancelled after {cancelled_after} of {len(chunks)} chunk(s).",
            )
        if first_failure and not job.continue_on_error:
            return self._finalize(job, ImportJobStatus.FAILED, first_failure)
        return self._conclude(job, first_failure)

    def _cancel_requested(self, job: ImportJob) -> bool:
        db.session.refresh(job, ["cancel_requested"])
        return bool(job.cancel_requested)

    def _conclude(self, job: ImportJob, first_failure: str | None) -> ImportJob:
        if job.failed_rows and not job.success_rows:
            return self._finalize(job, ImportJobStatus.FAILED, first_failure or "Every row failed validation.")
        summary = None
        if job.failed_rows:
            summary = f"{job.failed_rows} of {job.total_rows} row(s) failed."
            if first_failure:
                summary = f"{summary} First chunk failure: {first_failure}"
        return self._finalize(job, ImportJobStatus.COMPLETED, summary)

    def _run_chunk(
        self,
        job: ImportJob,
        module: ImportModule,
        chunk: Sequence[ImportJobRow],
        index: int,
    ) -> str | None:
        """Write and commit one chunk; return an error summary on failure."""

        outcome = self._write_chunk(job, module, chunk, index)
        self._record_outcome(job, module, chunk, outcome)
        db.session.commit()
        return outcome.summary if outcome.failed else None

    def _write_chunk(
        self,
        job: ImportJob,
        module: ImportModule,
        chunk: Sequence[ImportJobRow],
        index: int,
    ) -> ChunkOutcome:
        """Write one chunk inside a savepoint; a failure rolls back only that savepoint."""

        started = time.perf_counter()
        payload = [(row.id, row.row_number, ImportRowAction(row.action), dict(row.values_json or {})) for row in chunk]
        results: dict[int, WriteResult] = {}
        failing_row: int | None = None
        savepoint = db.session.begin_nested()
        try:
            for row_id, row_number, action, values in payload:
                failing_row = row_number
                results[row_id] = module.write_row(db.session, values, action, job.batch_tag)
            db.session.flush()
        except Exception as exc:
            savepoint.rollback()
            return ChunkOutcome(
                index=index,
                duration_seconds=time.perf_counter() - started,
                failing_row=failing_row,
                error=_describe_error(exc),
            )
        savepoint.commit()
        return ChunkOutcome(index=index, duration_seconds=time.perf_counter() - started, results=results)

    def _record_outcome(
        self,
        job: ImportJob,
        module: ImportModule,
        chunk: Sequence[ImportJobRow],
        outcome: ChunkOutcome,
    ) -> None:
        job.processed_rows += len(chunk)
        if outcome.failed:
            for row in chunk:
                row.status = ImportRowStatus.FAILED
                if row.row_number == outcome.failing_row:
                    row.error_message = outcome.error
                else:
                    row.error_message = (
                        f"Rolled back with chunk {outcome.index} after row {outcome.failing_row} failed."
                    )
            job.failed_rows += len(chunk)
            job.chunks_failed += 1
            record_chunk(
                module.id,
                status="failure",
                duration_seconds=outcome.duration_seconds,
                written=0,
                failed=len(chunk),
            )
            current_app.logger.warning(
                "Import chunk failed",
                extra={
                    "importer_job_id": job.job_id,
                    "importer_module_id": module.id,
                    "importer_chunk": outcome.index,
                    "importer_failing_row": outcome.failing_row,
                    "importer_dry_run": job.dry_run,
                    "importer_error": outcome.error,
                },
            )
            return

        for row in chunk:
            result = outcome.results[row.id]
            row.status = ImportRowStatus.WRITTEN
            row.error_message = None
            if not job.dry_run:
                row.target_id = result.target_id
                row.before_json = normalize_payload(result.before) if result.before is not None else None
        job.success_rows += len(chunk)
        job.chunks_completed += 1
        record_chunk(
            module.id,
            status="success",
            duration_seconds=outcome.duration_seconds,
            written=len(chunk),
            failed=0,
        )

    def _finalize(self, job: ImportJob, status: ImportJobStatus, summary: str | None) -> ImportJob:
        self._transition(job, status)
        job.finished_at = _utcnow()
        if summary:
            job.error_summary = summary
        self.ledger.record(job)
        db.session.commit()
        record_job_outcome(job.module_id, status.value, dry_run=job.dry_run)
        log = current_app.logger.info if status == ImportJobStatus.COMPLETED else current_app.logger.warning
        log(
            "Import job finished",
            extra={
                "importer_job_id": job.job_id,
                "importer_module_id": job.module_id,
                "importer_status": status.value,
                "importer_dry_run": job.dry_run,
                "importer_rows_total": job.total_rows,
                "importer_rows_success": job.success_rows,
                "importer_rows_failed": job.failed_rows,
                "importer_rows_skipped": job.skipped_rows,
                "importer_error": job.error_summary,
            },
        )
        return job

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> ImportJob:
        """
        Cancel a pending job immediately, or flag a processing job so the
        engine stops at the next chunk boundary.
        """

        job = self._get_job(job_id)
        result = db.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job.id, ImportJob.status == ImportJobStatus.PENDING)
            .values(status=ImportJobStatus.CANCELLED, finished_at=_utcnow(), cancel_requested=True)
        )
        if result.rowcount == 1:
            db.session.commit()
            db.session.refresh(job)
            job.error_summary = "Cancelled before execution started."
            self.ledger.record(job)
            db.session.commit()
            record_job_outcome(job.module_id, ImportJobStatus.CANCELLED.value, dry_run=job.dry_run)
            current_app.logger.info("Import job cancelled", extra={"importer_job_id": job_id})
            return job

        db.session.refresh(job)
        status = ImportJobStatus(job.status)
        if status != ImportJobStatus.PROCESSING:
            raise InvalidJobStateError(job_id, status.value, ImportJobStatus.CANCELLED.value)
        job.cancel_requested = True
        db.session.commit()
        current_app.logger.info("Import job cancellation requested", extra={"importer_job_id": job_id})
        return job
