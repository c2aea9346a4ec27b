"""
Exception hierarchy for the initialization importer.

Every error carries a stable ``code`` so the CLI and HTTP layers can surface
machine-readable failures. Row-level validation findings are never raised;
they travel as ``RowIssue`` data on the validation session.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence


class ImporterError(Exception):
    """Base class for importer failures."""

    code = "importer_error"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# ---------------------------------------------------------------------------
# Configuration errors (fatal at startup)
# ---------------------------------------------------------------------------


class ImporterConfigurationError(ImporterError):
    """Raised when the module graph cannot be assembled."""

    code = "configuration_error"


class DuplicateModuleError(ImporterConfigurationError):
    code = "duplicate_module"

    def __init__(self, module_id: str) -> None:
        super().__init__(
            f"Import module '{module_id}' is already registered.",
            details={"module_id": module_id},
        )
        self.module_id = module_id


class UnresolvedDependencyError(ImporterConfigurationError):
    code = "unresolved_dependency"

    def __init__(self, unresolved: Mapping[str, Sequence[str]]) -> None:
        parts = [f"{module_id} -> {', '.join(missing)}" for module_id, missing in sorted(unresolved.items())]
        super().__init__(
            "Import modules declare dependencies that are not registered: " + "; ".join(parts) + ".",
            details={"unresolved": {key: list(value) for key, value in unresolved.items()}},
        )
        self.unresolved = {key: tuple(value) for key, value in unresolved.items()}


class CyclicDependencyError(ImporterConfigurationError):
    code = "cyclic_dependency"

    def __init__(self, members: Sequence[str]) -> None:
        super().__init__(
            "Import module dependencies form a cycle: " + " -> ".join([*members, members[0]]) + ".",
            details={"members": list(members)},
        )
        self.members = tuple(members)


class RegistryNotReadyError(ImporterConfigurationError):
    code = "registry_not_ready"

    def __init__(self) -> None:
        super().__init__("Import module discovery has not completed yet.")


class RegistryFrozenError(ImporterConfigurationError):
    code = "registry_frozen"

    def __init__(self, module_id: str) -> None:
        super().__init__(
            f"Cannot register '{module_id}': module discovery already completed.",
            details={"module_id": module_id},
        )


class UnknownModuleError(ImporterError):
    code = "unknown_module"

    def __init__(self, module_id: str) -> None:
        super().__init__(f"Import module '{module_id}' is not registered.", details={"module_id": module_id})
        self.module_id = module_id


# ---------------------------------------------------------------------------
# Validation session errors
# ---------------------------------------------------------------------------


class SessionError(ImporterError):
    code = "session_error"

    def __init__(self, message: str, session_id: str, **details: Any) -> None:
        super().__init__(message, details={"session_id": session_id, **details})
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Validation session '{session_id}' does not exist.", session_id)


class SessionExpiredError(SessionError):
    code = "session_expired"

    def __init__(self, session_id: str, expired_at: str | None = None) -> None:
        super().__init__(
            f"Validation session '{session_id}' has expired; validate the upload again.",
            session_id,
            expired_at=expired_at,
        )


class SessionAlreadyConsumedError(SessionError):
    code = "session_already_consumed"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Validation session '{session_id}' was already committed.", session_id)


class SessionNotCommittableError(SessionError):
    code = "session_not_committable"

    def __init__(self, session_id: str, invalid_rows: int, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Validation session '{session_id}' has {invalid_rows} row(s) with errors. "
            "Fix the upload or commit with continue_on_error.",
            session_id,
            invalid_rows=invalid_rows,
        )
        self.invalid_rows = invalid_rows


# ---------------------------------------------------------------------------
# Commit / execution errors
# ---------------------------------------------------------------------------


class DependencyNotMetError(ImporterError):
    code = "dependency_not_met"

    def __init__(self, module_id: str, missing: Iterable[str]) -> None:
        missing_ids = tuple(missing)
        super().__init__(
            f"Cannot import '{module_id}' before its dependencies: {', '.join(missing_ids)}.",
            details={"module_id": module_id, "missing": list(missing_ids)},
        )
        self.module_id = module_id
        self.missing = missing_ids


class JobNotFoundError(ImporterError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Import job '{job_id}' does not exist.", details={"job_id": job_id})
        self.job_id = job_id


class InvalidJobStateError(ImporterError):
    code = "invalid_job_state"

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Import job '{job_id}' cannot move from {current} to {requested}.",
            details={"job_id": job_id, "current": current, "requested": requested},
        )
        self.job_id = job_id


class ModuleLockTimeout(ImporterError):
    code = "module_locked"

    def __init__(self, module_id: str, timeout: float) -> None:
        super().__init__(
            f"Another job is still writing '{module_id}' rows; gave up after {timeout:g}s.",
            details={"module_id": module_id, "timeout_seconds": timeout},
        )
        self.module_id = module_id


class RowWriteError(ImporterError):
    """Raised by a module when a staged row cannot be written."""

    code = "row_write_failed"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


# ---------------------------------------------------------------------------
# Rollback errors
# ---------------------------------------------------------------------------


class RollbackNotAllowedError(ImporterError):
    code = "rollback_not_allowed"

    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(f"Import job '{job_id}' cannot be rolled back: {reason}", details={"job_id": job_id})
        self.job_id = job_id
        self.reason = reason


class DependentDataExistsError(ImporterError):
    code = "dependent_data_exists"

    def __init__(self, job_id: str, dependents: Sequence[tuple[str, str]]) -> None:
        listing = ", ".join(f"{module_id} ({dependent_job})" for dependent_job, module_id in dependents)
        super().__init__(
            f"Import job '{job_id}' has dependent imports that must be rolled back first: {listing}. "
            "Roll them back or request a cascading rollback.",
            details={
                "job_id": job_id,
                "dependents": [{"job_id": dependent_job, "module_id": module_id} for dependent_job, module_id in dependents],
            },
        )
        self.job_id = job_id
        self.dependents = tuple(dependents)
