"""
Import module contract.

A module couples a static ``ModuleDescriptor`` with the row contract used at
validation time (``validate_row``, pure) and the persistence hooks the batch
execution engine calls inside a chunk transaction (``write_row``,
``reverse_batch``).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Mapping, Sequence, Tuple

from sqlalchemy import or_, select, tuple_
from sqlalchemy.orm import Session

from sysinit_app.models.importer.schema import ImportRowAction

from .columns import TemplateColumn
from .issues import RowOutcome

LOOKUP_BATCH_SIZE = 500


@dataclass(frozen=True)
class ModuleDescriptor:
    """Static metadata describing an importable data domain."""

    id: str
    domain: str
    display_name: str
    subdomain: str | None = None
    localized_name: str | None = None
    description: str = ""
    dependencies: Tuple[str, ...] = ()
    priority: int = 100
    tags: Tuple[str, ...] = ()
    supports_rollback: bool = True
    version: str = "1.0.0"

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "subdomain": self.subdomain,
            "display_name": self.display_name,
            "localized_name": self.localized_name,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "tags": list(self.tags),
            "supports_rollback": self.supports_rollback,
            "version": self.version,
        }


class ConflictPolicy(str, enum.Enum):
    """What to do when an uploaded row collides with an existing natural key."""

    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True)
class WriteResult:
    target_id: int | None
    before: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class RestoreTarget:
    target_id: int
    before: Mapping[str, Any]


class ImportModule:
    """
    Base class for importable domains.

    Subclasses set ``descriptor``, ``columns``, ``model`` and ``natural_key``
    and usually override ``validate_row`` and ``to_attributes``.
    """

    descriptor: ClassVar[ModuleDescriptor]
    columns: ClassVar[Tuple[TemplateColumn, ...]] = ()
    model: ClassVar[Any] = None
    natural_key: ClassVar[Tuple[str, ...]] = ("code",)
    conflict_policy: ClassVar[ConflictPolicy] = ConflictPolicy.UPDATE
    allow_partial_commit: ClassVar[bool] = False
    batch_column: ClassVar[str] = "import_batch_id"
    # column through which rows of this module reference each other
    self_reference: ClassVar[str | None] = None

    @property
    def id(self) -> str:
        return self.descriptor.id

    # ------------------------------------------------------------------
    # Validation-time contract (pure)
    # ------------------------------------------------------------------

    def validate_row(self, values: Mapping[str, Any]) -> RowOutcome:
        """Return normalized values and module-specific findings for one row."""

        return RowOutcome(values=dict(values))

    def natural_key_for(self, values: Mapping[str, Any]) -> tuple:
        return tuple(values.get(name) for name in self.natural_key)

    def group_key(self, values: Mapping[str, Any]) -> str | None:
        """Rows sharing a group key are never split across chunks."""

        return None

    # ------------------------------------------------------------------
    # Store lookups
    # ------------------------------------------------------------------

    def _key_columns(self):
        return [getattr(self.model, name) for name in self.natural_key]

    def find_existing_keys(self, session: Session, keys: Iterable[tuple]) -> set[tuple]:
        """Return the subset of natural keys already present in the target table."""

        key_list = [key for key in dict.fromkeys(keys) if all(part is not None for part in key)]
        if not key_list:
            return set()
        columns = self._key_columns()
        found: set[tuple] = set()
        for start in range(0, len(key_list), LOOKUP_BATCH_SIZE):
            batch = key_list[start : start + LOOKUP_BATCH_SIZE]
            if len(columns) == 1:
                criteria = columns[0].in_([key[0] for key in batch])
            else:
                criteria = tuple_(*columns).in_(batch)
            for row in session.execute(select(*columns).where(criteria)):
                found.add(tuple(row))
        return found

    def find_existing(self, session: Session, values: Mapping[str, Any]):
        key = self.natural_key_for(values)
        criteria = [column == part for column, part in zip(self._key_columns(), key)]
        return session.execute(select(self.model).where(*criteria)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Write-time hooks (called inside a chunk transaction)
    # ------------------------------------------------------------------

    def to_attributes(self, session: Session, values: Mapping[str, Any]) -> dict[str, Any]:
        """Map validated values onto model attributes; raise ``RowWriteError`` on bad references."""

        return {column.name: values.get(column.name) for column in self.columns}

    def snapshot(self, record, attributes: Iterable[str]) -> dict[str, Any]:
        names = [*attributes, self.batch_column]
        return {name: getattr(record, name) for name in dict.fromkeys(names)}

    def write_row(
        self,
        session: Session,
        values: Mapping[str, Any],
        action: ImportRowAction,
        batch_tag: str,
    ) -> WriteResult:
        attributes = self.to_attributes(session, values)
        record = None
        if action == ImportRowAction.UPDATE:
            record = self.find_existing(session, values)

        if record is None:
            record = self.model(**attributes)
            setattr(record, self.batch_column, batch_tag)
            session.add(record)
            session.flush()
            return WriteResult(target_id=record.id)

        before = self.snapshot(record, attributes.keys())
        for name, value in attributes.items():
            setattr(record, name, value)
        setattr(record, self.batch_column, batch_tag)
        session.flush()
        return WriteResult(target_id=record.id, before=before)

    def referencing_batches(
        self,
        session: Session,
        batch_tag: str,
        kept_ids: Iterable[int] = (),
    ) -> set[str | None]:
        """
        Batch tags of rows outside ``batch_tag`` that point, through
        ``self_reference``, at a row reversing the batch would delete.
        ``kept_ids`` are rows restored from a before-image rather than
        deleted. ``None`` stands for rows written outside any import.
        """

        if not self.self_reference:
            return set()
        batch_column = getattr(self.model, self.batch_column)
        deleted = select(self.model.id).where(batch_column == batch_tag)
        kept = list(kept_ids)
        if kept:
            deleted = deleted.where(self.model.id.not_in(kept))
        query = (
            select(batch_column)
            .where(
                getattr(self.model, self.self_reference).in_(deleted),
                or_(batch_column.is_(None), batch_column != batch_tag),
            )
            .distinct()
        )
        return set(session.execute(query).scalars())

    def reverse_batch(
        self,
        session: Session,
        batch_tag: str,
        restores: Sequence[RestoreTarget] = (),
    ) -> int:
        """
        Undo one job's writes: restore updated rows, then delete rows still
        carrying ``batch_tag``. Returns the number of rows reversed.
        """

        restored = 0
        for target in restores:
            record = session.get(self.model, target.target_id)
            if record is None or getattr(record, self.batch_column) != batch_tag:
                continue
            for name, value in target.before.items():
                setattr(record, name, value)
            restored += 1
        session.flush()

        batch_column = getattr(self.model, self.batch_column)
        deleted = (
            session.query(self.model)
            .filter(batch_column == batch_tag)
            .delete(synchronize_session=False)
        )
        return restored + int(deleted or 0)


@dataclass(frozen=True)
class TemplateSpec:
    """Column specification returned by ``get_template``."""

    module_id: str
    display_name: str
    format: str
    columns: Tuple[TemplateColumn, ...] = field(default_factory=tuple)

    @property
    def required_columns(self) -> Tuple[str, ...]:
        return tuple(column.name for column in self.columns if column.required)

    def as_dict(self) -> dict[str, Any]:
        return {
            "module_id": self.module_id,
            "display_name": self.display_name,
            "format": self.format,
            "columns": [column.as_dict() for column in self.columns],
            "required_columns": list(self.required_columns),
        }
