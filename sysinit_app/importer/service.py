"""
Facade over the importer pipeline.

``ImportOrchestrator`` is what the CLI, the HTTP blueprint and the Celery
tasks talk to. It wires the registry, session service, execution engine,
rollback coordinator and ledger together from Flask configuration.
"""

from __future__ import annotations

from datetime import timedelta
from typing import IO, Any, Callable, Mapping, Sequence

from flask import Flask, current_app

from sysinit_app.models.importer.schema import ImportHistoryEntry, ImportJob

from .adapters import RowLimitExceededError, parse_upload
from .contracts import TemplateSpec
from .errors import ImporterConfigurationError
from .pipeline.execution import (
    DEFAULT_CHUNK_SIZE,
    BatchExecutionEngine,
    CommitOptions,
    CommitReceipt,
    Dispatcher,
)
from .pipeline.jobs import DEFAULT_JOB_LIMIT, DEFAULT_ROW_LIMIT, JobQueryService, JobStatusView
from .pipeline.ledger import DEFAULT_HISTORY_LIMIT, HistoryLedger, serialize_entry
from .pipeline.ordering import PlanEntry, build_import_plan
from .pipeline.rollback import RollbackCoordinator, RollbackResult
from .pipeline.sessions import (
    DEFAULT_SESSION_TTL,
    SessionStore,
    UploadReference,
    ValidationSession,
    ValidationSessionService,
    utcnow,
)
from .registry import ModuleRegistry
from .templates import RenderedTemplate, build_template, render_template

IMPORTER_EXTENSION_KEY = "importer"
DEFAULT_MAX_ROWS = 10000
DEFAULT_MAX_UPLOAD_MB = 10


class ImportOrchestrator:
    def __init__(
        self,
        registry: ModuleRegistry,
        store: SessionStore,
        *,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        continue_on_error: bool = False,
        lock_timeout: float = 30.0,
        max_rows: int = DEFAULT_MAX_ROWS,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_MB * 1024 * 1024,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.registry = registry
        self.max_rows = max_rows
        self.max_upload_bytes = max_upload_bytes
        self.ledger = HistoryLedger()
        self.sessions = ValidationSessionService(registry, store, ttl=session_ttl, clock=clock)
        self.engine = BatchExecutionEngine(
            registry,
            self.sessions,
            ledger=self.ledger,
            chunk_size=chunk_size,
            continue_on_error=continue_on_error,
            lock_timeout=lock_timeout,
            dispatcher=dispatcher,
        )
        self.rollbacks = RollbackCoordinator(registry, ledger=self.ledger, lock_timeout=lock_timeout)
        self.jobs = JobQueryService()

    @classmethod
    def from_config(
        cls,
        registry: ModuleRegistry,
        store: SessionStore,
        config: Mapping[str, Any],
        *,
        dispatcher: Dispatcher | None = None,
    ) -> "ImportOrchestrator":
        return cls(
            registry,
            store,
            session_ttl=timedelta(minutes=float(config.get("IMPORTER_SESSION_TTL_MINUTES", 30))),
            chunk_size=int(config.get("IMPORTER_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)),
            continue_on_error=bool(config.get("IMPORTER_CONTINUE_ON_ERROR", False)),
            lock_timeout=float(config.get("IMPORTER_MODULE_LOCK_TIMEOUT", 30)),
            max_rows=int(config.get("IMPORTER_MAX_ROWS", DEFAULT_MAX_ROWS)),
            max_upload_bytes=int(float(config.get("IMPORTER_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)) * 1024 * 1024),
            dispatcher=dispatcher,
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def import_plan(self) -> list[PlanEntry]:
        return build_import_plan(self.registry.ordered_descriptors(), self.ledger)

    def list_modules(self) -> list[dict[str, Any]]:
        """Modules in import order with satisfaction status and last import."""

        modules: list[dict[str, Any]] = []
        for entry in self.import_plan():
            payload = entry.as_dict()
            latest = self.ledger.latest(entry.descriptor.id)
            payload["last_import"] = serialize_entry(latest) if latest else None
            modules.append(payload)
        return modules

    def get_template(self, module_id: str, template_format: str = "csv") -> TemplateSpec:
        return build_template(self.registry.get(module_id), template_format)

    def render_template(self, module_id: str, template_format: str = "csv") -> RenderedTemplate:
        return render_template(self.registry.get(module_id), template_format)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        module_id: str,
        rows: Sequence[Mapping[str, Any]] | None = None,
        *,
        file: bytes | str | IO[Any] | None = None,
        file_name: str | None = None,
        actor: str | None = None,
    ) -> ValidationSession:
        """
        Validate either an already-parsed ``rows`` payload or an uploaded
        ``file`` and stage the result in a validation session.
        """

        self.registry.get(module_id)
        if file is not None:
            parsed = parse_upload(
                file,
                file_name=file_name,
                max_rows=self.max_rows,
                max_bytes=self.max_upload_bytes,
            )
            return self.sessions.create_session(
                module_id,
                parsed.rows,
                upload=parsed.upload_reference(),
                actor=actor,
                row_numbers=parsed.row_numbers,
            )
        if rows is None:
            raise ValueError("Provide either rows or a file to validate.")
        if len(rows) > self.max_rows:
            raise RowLimitExceededError(self.max_rows)
        return self.sessions.create_session(
            module_id,
            rows,
            upload=UploadReference(file_name=file_name, format="json"),
            actor=actor,
        )

    def discard(self, session_id: str) -> bool:
        return self.sessions.discard_session(session_id)

    def sweep_sessions(self) -> int:
        return self.sessions.sweep_expired()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def commit(self, session_id: str, options: CommitOptions | None = None) -> CommitReceipt:
        return self.engine.commit(session_id, options)

    def execute(self, job_id: str) -> ImportJob:
        return self.engine.execute(job_id)

    def status(self, job_id: str, *, row_limit: int = DEFAULT_ROW_LIMIT) -> JobStatusView:
        return self.jobs.status(job_id, row_limit=row_limit)

    def list_jobs(
        self,
        module_id: str | None = None,
        *,
        statuses: Sequence[str] | None = None,
        limit: int = DEFAULT_JOB_LIMIT,
    ) -> list[ImportJob]:
        if module_id:
            self.registry.get(module_id)
        return self.jobs.list_jobs(module_id=module_id, statuses=statuses, limit=limit)

    def cancel(self, job_id: str) -> ImportJob:
        return self.engine.cancel(job_id)

    def rollback(self, job_id: str, *, cascade: bool = False, actor: str | None = None) -> RollbackResult:
        return self.rollbacks.rollback(job_id, cascade=cascade, actor=actor)

    def history(
        self,
        module_id: str | None = None,
        *,
        limit: int = DEFAULT_HISTORY_LIMIT,
        include_dry_runs: bool = True,
    ) -> list[ImportHistoryEntry]:
        if module_id:
            self.registry.get(module_id)
        return self.ledger.list_entries(module_id, limit=limit, include_dry_runs=include_dry_runs)


def get_orchestrator(app: Flask | None = None) -> ImportOrchestrator:
    """Return the orchestrator built by ``init_importer`` for ``app``."""

    app = app or current_app
    state = app.extensions.get(IMPORTER_EXTENSION_KEY) or {}
    orchestrator = state.get("orchestrator")
    if orchestrator is None:
        raise ImporterConfigurationError("Importer is disabled. Set IMPORTER_ENABLED=true to enable it.")
    return orchestrator
