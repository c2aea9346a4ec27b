"""
Per-module advisory locks held for the duration of one import job.

On PostgreSQL the lock is a session-level ``pg_advisory_lock`` taken on a
dedicated connection so it also serializes jobs running in other worker
processes. Other databases fall back to a process-local lock, which is
sufficient for the single-process SQLite deployments.
"""

from __future__ import annotations

import threading
import time
import zlib
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ..errors import ModuleLockTimeout

POLL_INTERVAL_SECONDS = 0.2

_local_locks: dict[str, threading.Lock] = {}
_local_locks_guard = threading.Lock()


def advisory_key(module_id: str) -> int:
    """Stable signed 32-bit key for ``module_id``."""

    value = zlib.crc32(f"sysinit-importer:{module_id}".encode("utf-8"))
    return value - (1 << 32) if value >= (1 << 31) else value


def _local_lock(module_id: str) -> threading.Lock:
    with _local_locks_guard:
        lock = _local_locks.get(module_id)
        if lock is None:
            lock = threading.Lock()
            _local_locks[module_id] = lock
        return lock


@contextmanager
def _process_lock(module_id: str, timeout: float) -> Iterator[None]:
    lock = _local_lock(module_id)
    if not lock.acquire(timeout=max(timeout, 0)):
        raise ModuleLockTimeout(module_id, timeout)
    try:
        yield
    finally:
        lock.release()


@contextmanager
def _postgres_lock(engine: Engine, module_id: str, timeout: float) -> Iterator[None]:
    key = advisory_key(module_id)
    deadline = time.monotonic() + max(timeout, 0)
    with engine.connect() as connection:
        while True:
            acquired = connection.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}).scalar()
            connection.commit()
            if acquired:
                break
            if time.monotonic() >= deadline:
                raise ModuleLockTimeout(module_id, timeout)
            time.sleep(POLL_INTERVAL_SECONDS)
        try:
            yield
        finally:
            connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
            connection.commit()


@contextmanager
def module_lock(engine: Engine, module_id: str, *, timeout: float = 30.0) -> Iterator[None]:
    """Hold the advisory lock for ``module_id`` or raise ``ModuleLockTimeout``."""

    if engine.dialect.name == "postgresql":
        with _postgres_lock(engine, module_id, timeout):
            yield
    else:
        with _process_lock(module_id, timeout):
            yield
