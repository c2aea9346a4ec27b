"""
SQLAlchemy models for the initialization importer.

``import_jobs`` and ``import_job_rows`` hold one commit attempt and its staged
rows; ``import_history`` is the append-only ledger consulted for dependency
satisfaction and rollback.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
)

ALLOWED_JOB_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset({ImportJobStatus.PROCESSING, ImportJobStatus.CANCELLED}),
    ImportJobStatus.PROCESSING: frozenset(
        {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
    ),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
    ImportJobStatus.CANCELLED: frozenset(),
}


class ImportRowAction(str, enum.Enum):
    """Action resolved for a staged row during validation."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class ImportRowStatus(str, enum.Enum):
    """Per-row execution state inside a job."""

    PENDING = "pending"
    WRITTEN = "written"
    FAILED = "failed"
    INVALID = "invalid"
    SKIPPED = "skipped"
    REVERSED = "reversed"


class ImportJob(BaseModel):
    """One commit attempt of a validation session."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(db.String(36), nullable=False, unique=True, index=True)
    session_id: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    module_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    batch_tag: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    continue_on_error: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    cancel_requested: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    chunk_size: Mapped[int] = mapped_column(db.Integer, nullable=False, default=100)
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    success_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    chunks_completed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    chunks_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    actor: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    options_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Commit options as requested by the caller (continue_on_error, dry_run, chunk_size).",
    )

    rows = relationship(
        "ImportJobRow",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportJobRow.row_number",
    )

    __table_args__ = (Index("idx_import_jobs_module_status", "module_id", "status"),)

    def can_transition_to(self, status: ImportJobStatus) -> bool:
        current = ImportJobStatus(self.status)
        return status in ALLOWED_JOB_TRANSITIONS[current]

    @property
    def is_terminal(self) -> bool:
        return ImportJobStatus(self.status).is_terminal

    @property
    def progress_percent(self) -> float:
        if not self.total_rows:
            return 100.0 if self.is_terminal else 0.0
        return round(min(self.processed_rows, self.total_rows) * 100.0 / self.total_rows, 1)

    def __repr__(self):
        return f"<ImportJob {self.job_id} module={self.module_id} status={self.status}>"


class ImportJobRow(BaseModel):
    """Staged row replayed by the batch execution engine."""

    __tablename__ = "import_job_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_pk: Mapped[int] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    action: Mapped[ImportRowAction | None] = mapped_column(
        Enum(ImportRowAction, name="import_row_action_enum"),
        nullable=True,
    )
    status: Mapped[ImportRowStatus] = mapped_column(
        Enum(ImportRowStatus, name="import_row_status_enum"),
        nullable=False,
        default=ImportRowStatus.PENDING,
        index=True,
    )
    group_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    values_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    issues_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    target_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    before_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Snapshot of the target record before an update, used to restore on rollback.",
    )

    job = relationship("ImportJob", back_populates="rows")

    __table_args__ = (UniqueConstraint("job_pk", "row_number", name="uq_import_job_rows_job_row"),)

    def __repr__(self):
        return f"<ImportJobRow job={self.job_pk} row={self.row_number} status={self.status}>"


class ImportHistoryEntry(BaseModel):
    """Append-only ledger record written when a job reaches a terminal state."""

    __tablename__ = "import_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(db.String(36), nullable=False, unique=True, index=True)
    module_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    outcome: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_history_outcome_enum"),
        nullable=False,
        index=True,
    )
    batch_tag: Mapped[str] = mapped_column(db.String(64), nullable=False)
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    success_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    actor: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    rolled_back: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    rolled_back_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    rolled_back_rows: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    __table_args__ = (
        Index("idx_import_history_module_outcome", "module_id", "outcome", "rolled_back"),
    )

    @classmethod
    def standing_criteria(cls) -> tuple:
        """Filter for entries that satisfy dependencies: completed, real and not rolled back."""
        return (
            cls.outcome == ImportJobStatus.COMPLETED,
            cls.dry_run.is_(False),
            cls.rolled_back.is_(False),
        )

    def mark_rolled_back(self, *, actor: str | None, rows: int) -> None:
        self.rolled_back = True
        self.rolled_back_at = datetime.now(timezone.utc)
        self.rolled_back_by = actor
        self.rolled_back_rows = rows

    def __repr__(self):
        return f"<ImportHistoryEntry job={self.job_id} module={self.module_id} outcome={self.outcome}>"


MUTABLE_HISTORY_COLUMNS = frozenset(
    {"rolled_back", "rolled_back_at", "rolled_back_by", "rolled_back_rows", "updated_at"}
)


@event.listens_for(ImportHistoryEntry, "before_update")
def _guard_history_immutability(mapper, connection, target):
    state = inspect(target)
    changed = [
        attr.key
        for attr in state.attrs
        if attr.key not in MUTABLE_HISTORY_COLUMNS and attr.history.has_changes()
    ]
    if changed:
        raise ValueError(
            "Import history entries are append-only; refusing to modify " + ", ".join(sorted(changed)) + "."
        )
