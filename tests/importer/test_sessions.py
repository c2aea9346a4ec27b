from __future__ import annotations

import fnmatch
from datetime import timedelta

import pytest

from sysinit_app.importer.errors import (
    SessionAlreadyConsumedError,
    SessionExpiredError,
    SessionNotFoundError,
    UnknownModuleError,
)
from sysinit_app.importer.pipeline.sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    ValidationSession,
    ValidationSessionService,
    build_session_store,
    utcnow,
)
from sysinit_app.models import ImportRowAction


class FakeRedis:
    """Dictionary-backed stand-in for the handful of redis commands the store uses."""

    def __init__(self):
        self.data = {}
        self.expiries = {}

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex

    def get(self, key):
        return self.data.get(key)

    def getdel(self, key):
        self.expiries.pop(key, None)
        return self.data.pop(key, None)

    def exists(self, key):
        return int(key in self.data)

    def delete(self, key):
        self.expiries.pop(key, None)
        return int(self.data.pop(key, None) is not None)

    def scan_iter(self, match=None):
        return [key for key in list(self.data) if match is None or fnmatch.fnmatch(key, match)]


def _issue_codes(row):
    return [issue.code for issue in row.issues]


def test_validate_stages_rows_with_actions(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(3), actor="ops@example.org")

    assert session.module_id == "locations"
    assert session.counts.total == 3
    assert session.counts.valid == 3
    assert session.counts.create == 3
    assert session.can_proceed
    assert [row.row_number for row in session.rows] == [2, 3, 4]
    assert all(row.action == ImportRowAction.CREATE for row in session.rows)
    # normalized by the module contract
    assert session.rows[0].values["country"] == "US"
    assert session.rows[0].values["is_active"] is True
    assert session.expires_at - session.created_at == timedelta(minutes=30)


def test_validate_collects_row_findings_without_aborting(orchestrator):
    session = orchestrator.validate(
        "locations",
        [
            {"Location Code": "hq", "Name": "Headquarters", "Zip": "12345"},
            {"code": "", "name": "Missing code"},
            {"code": "WH1", "name": "W", "country": "USA"},
            {"code": "WH2", "name": "Warehouse", "active": "maybe"},
            {"code": "HQ", "name": "Duplicate HQ"},
        ],
    )

    rows = session.rows
    assert rows[0].is_valid
    assert rows[0].values["code"] == "HQ"
    assert rows[0].values["postal_code"] == "12345"
    assert _issue_codes(rows[1]) == ["required"]
    assert "pattern" in _issue_codes(rows[2])
    assert _issue_codes(rows[3]) == ["invalid_type"]
    assert _issue_codes(rows[4]) == ["duplicate_key"]
    assert "row 2" in rows[4].issues[0].message

    assert session.counts.valid == 1
    assert session.counts.invalid == 4
    assert not session.can_proceed
    preview = session.summary()["issues"]
    assert {"row": 3, "field": "code"}.items() <= preview[0].items()


def test_module_contract_runs_after_column_checks(orchestrator):
    session = orchestrator.validate("locations", [{"code": "HQ", "name": "H"}])
    assert _issue_codes(session.rows[0]) == ["too_short"]


def test_unknown_headers_become_warnings(orchestrator):
    session = orchestrator.validate("locations", [{"code": "HQ", "name": "Headquarters", "manager": "Ada"}])
    assert session.can_proceed
    assert session.counts.warnings == 1
    assert session.header_issues[0].code == "unknown_column"
    assert session.summary()["issues"][0]["row"] is None


def test_existing_records_resolve_to_update(orchestrator, imported_locations, location_rows):
    session = orchestrator.validate("locations", location_rows(2, start=3))
    actions = [row.action for row in session.rows]
    assert actions == [ImportRowAction.UPDATE, ImportRowAction.CREATE]
    assert session.counts.update == 1
    assert session.counts.create == 1


def test_validate_unknown_module(orchestrator):
    with pytest.raises(UnknownModuleError):
        orchestrator.validate("payroll", [{"code": "X"}])


def test_session_expires_after_ttl(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(1))
    later = session.expires_at + timedelta(seconds=1)
    orchestrator.sessions.clock = lambda: later

    with pytest.raises(SessionExpiredError):
        orchestrator.sessions.get_session(session.session_id)
    # expired sessions are dropped on access
    with pytest.raises(SessionNotFoundError):
        orchestrator.sessions.get_session(session.session_id)


def test_reads_do_not_extend_ttl(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(1))
    expires_at = session.expires_at
    orchestrator.sessions.get_session(session.session_id)
    assert orchestrator.sessions.get_session(session.session_id).expires_at == expires_at


def test_consume_is_single_use(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(1))
    consumed = orchestrator.sessions.consume_session(session.session_id)
    assert consumed.session_id == session.session_id

    with pytest.raises(SessionAlreadyConsumedError):
        orchestrator.sessions.consume_session(session.session_id)
    with pytest.raises(SessionAlreadyConsumedError):
        orchestrator.sessions.get_session(session.session_id)


def test_discard_session(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(1))
    assert orchestrator.discard(session.session_id) is True
    assert orchestrator.discard(session.session_id) is False
    with pytest.raises(SessionNotFoundError):
        orchestrator.sessions.get_session(session.session_id)


def test_sweep_removes_only_expired_sessions(orchestrator, location_rows):
    old = orchestrator.validate("locations", location_rows(1))
    orchestrator.sessions.clock = lambda: utcnow() + timedelta(minutes=20)
    fresh = orchestrator.validate("locations", location_rows(1))
    orchestrator.sessions.clock = lambda: utcnow() + timedelta(minutes=40)

    assert orchestrator.sweep_sessions() == 1
    assert orchestrator.sessions.store.load(old.session_id) is None
    assert orchestrator.sessions.store.load(fresh.session_id) is not None


def test_session_round_trips_through_redis_store(orchestrator, location_rows):
    fake = FakeRedis()
    store = RedisSessionStore(fake, prefix="test:")
    service = ValidationSessionService(orchestrator.registry, store)

    session = service.create_session("locations", location_rows(2))
    key = f"test:session:{session.session_id}"
    assert key in fake.data
    assert fake.expiries[key] > 30 * 60

    loaded = service.get_session(session.session_id)
    assert isinstance(loaded, ValidationSession)
    assert loaded.to_dict() == session.to_dict()

    service.consume_session(session.session_id)
    assert key not in fake.data
    with pytest.raises(SessionAlreadyConsumedError):
        service.consume_session(session.session_id)


def test_redis_store_sweep(orchestrator, location_rows):
    fake = FakeRedis()
    store = RedisSessionStore(fake, prefix="test:")
    service = ValidationSessionService(orchestrator.registry, store)
    session = service.create_session("locations", location_rows(1))

    assert store.sweep(session.expires_at - timedelta(seconds=1)) == 0
    assert store.sweep(session.expires_at) == 1
    assert store.load(session.session_id) is None


def test_build_session_store_backends():
    assert isinstance(build_session_store({"IMPORTER_SESSION_BACKEND": "memory"}), InMemorySessionStore)
    redis_store = build_session_store(
        {"IMPORTER_SESSION_BACKEND": "redis", "IMPORTER_REDIS_URL": "redis://localhost:6379/5"}
    )
    assert isinstance(redis_store, RedisSessionStore)
    with pytest.raises(ValueError):
        build_session_store({"IMPORTER_SESSION_BACKEND": "memcached"})
