"""
Validation session store.

A validation session stages one parsed upload for one module: every row's
normalized values, resolved action and findings, plus aggregate counts. The
TTL is fixed at creation and never renewed by reads. Sessions are single-use:
``consume`` hands the session to exactly one committer.

Storage is injected through ``SessionStore``: ``InMemorySessionStore`` for
tests and single-instance deployments, ``RedisSessionStore`` when several
instances must share sessions.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence
from uuid import uuid4

import redis
from flask import current_app
from sqlalchemy.orm import Session

from sysinit_app.models import db
from sysinit_app.models.importer.schema import ImportRowAction

from ..contracts import (
    ConflictPolicy,
    IssueSeverity,
    RowIssue,
    build_alias_map,
    canonicalize_row,
    check_columns,
    header_warnings,
)
from ..errors import SessionAlreadyConsumedError, SessionExpiredError, SessionNotFoundError
from ..metrics import record_session_created, record_sessions_expired
from ..registry import ModuleRegistry
from ..utils import normalize_payload

DEFAULT_SESSION_TTL = timedelta(minutes=30)
ISSUE_PREVIEW_LIMIT = 200

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class UploadReference:
    """Where the staged rows came from."""

    file_name: str | None = None
    size_bytes: int | None = None
    format: str = "json"

    def as_dict(self) -> dict[str, Any]:
        return {"file_name": self.file_name, "size_bytes": self.size_bytes, "format": self.format}


@dataclass(slots=True)
class StagedRow:
    """Validation outcome for a single uploaded row."""

    row_number: int
    raw: dict[str, Any]
    values: dict[str, Any]
    issues: list[RowIssue] = field(default_factory=list)
    action: ImportRowAction | None = None
    group_key: str | None = None

    @property
    def is_valid(self) -> bool:
        return not any(issue.is_error for issue in self.issues)

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == IssueSeverity.WARNING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "raw": self.raw,
            "values": self.values,
            "issues": [issue.as_dict() for issue in self.issues],
            "action": self.action.value if self.action else None,
            "group_key": self.group_key,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StagedRow":
        action = payload.get("action")
        return cls(
            row_number=int(payload["row_number"]),
            raw=dict(payload.get("raw") or {}),
            values=dict(payload.get("values") or {}),
            issues=[RowIssue.from_dict(item) for item in payload.get("issues") or ()],
            action=ImportRowAction(action) if action else None,
            group_key=payload.get("group_key"),
        )


@dataclass(slots=True)
class SessionCounts:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    create: int = 0
    update: int = 0
    skip: int = 0
    warnings: int = 0

    @classmethod
    def tally(cls, rows: Sequence[StagedRow], header_issues: Sequence[RowIssue] = ()) -> "SessionCounts":
        counts = cls(total=len(rows), warnings=len(header_issues))
        for row in rows:
            counts.warnings += row.warning_count
            if not row.is_valid:
                counts.invalid += 1
                continue
            counts.valid += 1
            if row.action == ImportRowAction.CREATE:
                counts.create += 1
            elif row.action == ImportRowAction.UPDATE:
                counts.update += 1
            elif row.action == ImportRowAction.SKIP:
                counts.skip += 1
        return counts

    def as_dict(self) -> dict[str, int]:
        return {
            "total_rows": self.total,
            "valid_rows": self.valid,
            "invalid_rows": self.invalid,
            "create_rows": self.create,
            "update_rows": self.update,
            "skip_rows": self.skip,
            "warnings": self.warnings,
        }


@dataclass(slots=True)
class ValidationSession:
    """A staged, validated but uncommitted upload tied to one module."""

    session_id: str
    module_id: str
    upload: UploadReference
    rows: list[StagedRow]
    counts: SessionCounts
    created_at: datetime
    expires_at: datetime
    actor: str | None = None
    header_issues: list[RowIssue] = field(default_factory=list)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def can_proceed(self) -> bool:
        return self.counts.invalid == 0 and self.counts.valid > 0

    def issue_preview(self, limit: int = ISSUE_PREVIEW_LIMIT) -> list[dict[str, Any]]:
        preview: list[dict[str, Any]] = [{"row": None, **issue.as_dict()} for issue in self.header_issues]
        for row in self.rows:
            for issue in row.issues:
                if len(preview) >= limit:
                    return preview
                preview.append({"row": row.row_number, **issue.as_dict()})
        return preview[:limit]

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "module_id": self.module_id,
            "upload": self.upload.as_dict(),
            "stats": self.counts.as_dict(),
            "can_proceed": self.can_proceed,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "issues": self.issue_preview(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "module_id": self.module_id,
            "upload": self.upload.as_dict(),
            "rows": [row.to_dict() for row in self.rows],
            "counts": {
                "total": self.counts.total,
                "valid": self.counts.valid,
                "invalid": self.counts.invalid,
                "create": self.counts.create,
                "update": self.counts.update,
                "skip": self.counts.skip,
                "warnings": self.counts.warnings,
            },
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "actor": self.actor,
            "header_issues": [issue.as_dict() for issue in self.header_issues],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ValidationSession":
        upload = payload.get("upload") or {}
        return cls(
            session_id=payload["session_id"],
            module_id=payload["module_id"],
            upload=UploadReference(
                file_name=upload.get("file_name"),
                size_bytes=upload.get("size_bytes"),
                format=upload.get("format", "json"),
            ),
            rows=[StagedRow.from_dict(item) for item in payload.get("rows") or ()],
            counts=SessionCounts(**(payload.get("counts") or {})),
            created_at=_parse_datetime(payload["created_at"]),
            expires_at=_parse_datetime(payload["expires_at"]),
            actor=payload.get("actor"),
            header_issues=[RowIssue.from_dict(item) for item in payload.get("header_issues") or ()],
        )


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


class SessionStore(ABC):
    """Time-bounded storage for validation sessions."""

    @abstractmethod
    def save(self, session: ValidationSession) -> None: ...

    @abstractmethod
    def load(self, session_id: str) -> ValidationSession | None: ...

    @abstractmethod
    def consume(self, session_id: str) -> ValidationSession:
        """Atomically remove and return a session; raise if it is gone."""

    @abstractmethod
    def was_consumed(self, session_id: str) -> bool: ...

    @abstractmethod
    def discard(self, session_id: str) -> bool: ...

    @abstractmethod
    def sweep(self, now: datetime) -> int:
        """Delete expired sessions, returning how many were removed."""


class InMemorySessionStore(SessionStore):
    """Process-local store guarded by a lock."""

    def __init__(self) -> None:
        self._sessions: "OrderedDict[str, ValidationSession]" = OrderedDict()
        self._consumed: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def save(self, session: ValidationSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def load(self, session_id: str) -> ValidationSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def consume(self, session_id: str) -> ValidationSession:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                if session_id in self._consumed:
                    raise SessionAlreadyConsumedError(session_id)
                raise SessionNotFoundError(session_id)
            self._consumed[session_id] = session.expires_at
            return session

    def was_consumed(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._consumed

    def discard(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def sweep(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
            for key in expired:
                del self._sessions[key]
            for key in [key for key, expires_at in self._consumed.items() if expires_at <= now]:
                del self._consumed[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """
    Shared-cache store for multi-instance deployments.

    Sessions are stored as JSON with a Redis expiry slightly beyond the logical
    TTL; expiry is still enforced from ``expires_at`` on every read. ``GETDEL``
    makes consumption atomic across instances.
    """

    def __init__(self, redis_client=None, *, url: str | None = None, prefix: str = "sysinit:importer:") -> None:
        if redis_client is None:
            redis_client = redis.from_url(url or "redis://localhost:6379/0")
        self.redis = redis_client
        self.prefix = prefix
        self.grace_seconds = 60

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}session:{session_id}"

    def _consumed_key(self, session_id: str) -> str:
        return f"{self.prefix}consumed:{session_id}"

    def _expiry_seconds(self, expires_at: datetime) -> int:
        remaining = int((expires_at - utcnow()).total_seconds())
        return max(remaining, 1) + self.grace_seconds

    def save(self, session: ValidationSession) -> None:
        self.redis.set(
            self._key(session.session_id),
            json.dumps(session.to_dict()),
            ex=self._expiry_seconds(session.expires_at),
        )

    def load(self, session_id: str) -> ValidationSession | None:
        raw = self.redis.get(self._key(session_id))
        if raw is None:
            return None
        return ValidationSession.from_dict(json.loads(raw))

    def consume(self, session_id: str) -> ValidationSession:
        raw = self.redis.getdel(self._key(session_id))
        if raw is None:
            if self.was_consumed(session_id):
                raise SessionAlreadyConsumedError(session_id)
            raise SessionNotFoundError(session_id)
        session = ValidationSession.from_dict(json.loads(raw))
        self.redis.set(self._consumed_key(session_id), "1", ex=self._expiry_seconds(session.expires_at))
        return session

    def was_consumed(self, session_id: str) -> bool:
        return bool(self.redis.exists(self._consumed_key(session_id)))

    def discard(self, session_id: str) -> bool:
        return bool(self.redis.delete(self._key(session_id)))

    def sweep(self, now: datetime) -> int:
        removed = 0
        for key in self.redis.scan_iter(match=f"{self.prefix}session:*"):
            raw = self.redis.get(key)
            if raw is None:
                continue
            session = ValidationSession.from_dict(json.loads(raw))
            if session.is_expired(now) and self.redis.delete(key):
                removed += 1
        return removed


# ---------------------------------------------------------------------------
# Session service
# ---------------------------------------------------------------------------


class ValidationSessionService:
    """Create, fetch, consume and expire validation sessions."""

    def __init__(
        self,
        registry: ModuleRegistry,
        store: SessionStore,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Clock = utcnow,
        db_session: Session | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.ttl = ttl
        self.clock = clock
        self._db_session = db_session

    @property
    def db_session(self) -> Session:
        return self._db_session if self._db_session is not None else db.session

    def create_session(
        self,
        module_id: str,
        raw_rows: Sequence[Mapping[str, Any]],
        *,
        upload: UploadReference | None = None,
        actor: str | None = None,
        first_row_number: int = 2,
        row_numbers: Sequence[int] | None = None,
    ) -> ValidationSession:
        """
        Validate ``raw_rows`` against the module contract and stage the result.

        Row findings never abort validation. Row numbers default to spreadsheet
        numbering (the header occupies row 1); parsers that drop blank lines pass
        the original line numbers in ``row_numbers``.
        """

        module = self.registry.get(module_id)
        alias_map = build_alias_map(module.columns)
        unknown_headers: "OrderedDict[str, None]" = OrderedDict()
        staged: list[StagedRow] = []
        first_seen: dict[tuple, int] = {}
        keys_by_row: dict[int, tuple] = {}
        key_label = ", ".join(module.natural_key)

        for offset, raw in enumerate(raw_rows):
            row_number = row_numbers[offset] if row_numbers else first_row_number + offset
            canonical, unknown = canonicalize_row(raw, alias_map)
            for header in unknown:
                unknown_headers.setdefault(header, None)

            values, issues = check_columns(module.columns, canonical)
            if not any(issue.is_error for issue in issues):
                outcome = module.validate_row(values)
                values = dict(outcome.values)
                issues.extend(outcome.issues)

            row = StagedRow(
                row_number=row_number,
                raw=normalize_payload(raw),
                values=normalize_payload(values),
                issues=issues,
            )
            if row.is_valid:
                key = module.natural_key_for(row.values)
                if key in first_seen:
                    row.issues.append(
                        RowIssue(
                            field=module.natural_key[0],
                            message=f"Duplicate {key_label} '{', '.join(map(str, key))}' also appears on row {first_seen[key]}.",
                            code="duplicate_key",
                        )
                    )
                else:
                    first_seen[key] = row_number
                    keys_by_row[row_number] = key
                    row.group_key = module.group_key(row.values)
            staged.append(row)

        existing = module.find_existing_keys(self.db_session, first_seen.keys()) if first_seen else set()
        for row in staged:
            if not row.is_valid:
                continue
            if keys_by_row[row.row_number] not in existing:
                row.action = ImportRowAction.CREATE
            elif module.conflict_policy == ConflictPolicy.UPDATE:
                row.action = ImportRowAction.UPDATE
            else:
                row.action = ImportRowAction.SKIP
                row.issues.append(
                    RowIssue(
                        field=module.natural_key[0],
                        message="A record with this key already exists and will be skipped.",
                        severity=IssueSeverity.WARNING,
                        code="existing_skipped",
                    )
                )

        header_issues = header_warnings(unknown_headers.keys())
        now = self.clock()
        session = ValidationSession(
            session_id=str(uuid4()),
            module_id=module.id,
            upload=upload or UploadReference(),
            rows=staged,
            counts=SessionCounts.tally(staged, header_issues),
            created_at=now,
            expires_at=now + self.ttl,
            actor=actor,
            header_issues=header_issues,
        )
        self.store.save(session)
        record_session_created(module.id, valid=session.can_proceed)
        current_app.logger.info(
            "Validation session created",
            extra={
                "importer_session_id": session.session_id,
                "importer_module_id": module.id,
                "importer_rows_total": session.counts.total,
                "importer_rows_valid": session.counts.valid,
                "importer_rows_invalid": session.counts.invalid,
            },
        )
        return session

    def get_session(self, session_id: str) -> ValidationSession:
        session = self.store.load(session_id)
        if session is None:
            if self.store.was_consumed(session_id):
                raise SessionAlreadyConsumedError(session_id)
            raise SessionNotFoundError(session_id)
        if session.is_expired(self.clock()):
            self.store.discard(session_id)
            record_sessions_expired(1)
            raise SessionExpiredError(session_id, expired_at=session.expires_at.isoformat())
        return session

    def consume_session(self, session_id: str) -> ValidationSession:
        """Check expiry, then atomically mark the session used."""

        self.get_session(session_id)
        session = self.store.consume(session_id)
        if session.is_expired(self.clock()):
            raise SessionExpiredError(session_id, expired_at=session.expires_at.isoformat())
        return session

    def discard_session(self, session_id: str) -> bool:
        return self.store.discard(session_id)

    def sweep_expired(self) -> int:
        removed = self.store.sweep(self.clock())
        if removed:
            record_sessions_expired(removed)
            current_app.logger.info("Swept expired validation sessions", extra={"importer_sessions_removed": removed})
        return removed


def build_session_store(config: Mapping[str, Any]) -> SessionStore:
    """Instantiate the configured session backend (``memory`` or ``redis``)."""

    backend = str(config.get("IMPORTER_SESSION_BACKEND") or "memory").strip().lower()
    if backend == "redis":
        return RedisSessionStore(
            url=config.get("IMPORTER_REDIS_URL"),
            prefix=config.get("IMPORTER_REDIS_PREFIX") or "sysinit:importer:",
        )
    if backend != "memory":
        raise ValueError(f"Unsupported IMPORTER_SESSION_BACKEND '{backend}'. Use 'memory' or 'redis'.")
    return InMemorySessionStore()
