"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_sessions_created = Counter(
    "importer_validation_sessions_total",
    "Validation sessions created by module and whether they can proceed.",
    ["module", "committable"],
)
_sessions_expired = Counter(
    "importer_validation_sessions_expired_total",
    "Validation sessions removed after their TTL elapsed.",
)
_jobs_total = Counter(
    "importer_jobs_total",
    "Import jobs reaching a terminal state, by module and outcome.",
    ["module", "outcome", "dry_run"],
)
_jobs_in_progress = Gauge(
    "importer_jobs_in_progress",
    "Import jobs currently holding a module lock.",
    ["module"],
)
_chunk_counter = Counter(
    "importer_chunks_total",
    "Chunks processed by the batch execution engine, by outcome.",
    ["module", "status"],
)
_chunk_duration = Histogram(
    "importer_chunk_duration_seconds",
    "Duration of a single chunk transaction in seconds.",
    ["module"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)
_rows_written = Counter(
    "importer_rows_total",
    "Rows handled by the batch execution engine, by outcome.",
    ["module", "outcome"],
)
_rollbacks_total = Counter(
    "importer_rollbacks_total",
    "Completed rollbacks by module and whether they ran as part of a cascade.",
    ["module", "cascade"],
)


def record_session_created(module_id: str, *, valid: bool) -> None:
    _sessions_created.labels(module=module_id, committable="true" if valid else "false").inc()


def record_sessions_expired(count: int) -> None:
    if count > 0:
        _sessions_expired.inc(count)


def record_job_outcome(module_id: str, outcome: str, *, dry_run: bool) -> None:
    _jobs_total.labels(module=module_id, outcome=outcome, dry_run="true" if dry_run else "false").inc()


def track_job_in_progress(module_id: str, delta: int) -> None:
    _jobs_in_progress.labels(module=module_id).inc(delta)


def record_chunk(
    module_id: str,
    *,
    status: Literal["success", "failure"],
    duration_seconds: float,
    written: int,
    failed: int,
) -> None:
    """Capture metrics for one chunk transaction."""

    _chunk_counter.labels(module=module_id, status=status).inc()
    _chunk_duration.labels(module=module_id).observe(max(duration_seconds, 0.0))
    if written:
        _rows_written.labels(module=module_id, outcome="written").inc(written)
    if failed:
        _rows_written.labels(module=module_id, outcome="failed").inc(failed)


def record_rollback(module_id: str, *, cascade: bool) -> None:
    _rollbacks_total.labels(module=module_id, cascade="true" if cascade else "false").inc()
