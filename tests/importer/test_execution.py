from __future__ import annotations

from types import SimpleNamespace

import pytest

from sysinit_app.importer.errors import (
    DependencyNotMetError,
    InvalidJobStateError,
    ModuleLockTimeout,
    SessionAlreadyConsumedError,
    SessionNotCommittableError,
)
from sysinit_app.importer.pipeline.execution import CommitOptions, partition_chunks
from sysinit_app.importer.pipeline.locking import module_lock
from sysinit_app.models import (
    Department,
    ImportHistoryEntry,
    ImportJob,
    ImportJobStatus,
    ImportRowStatus,
    Location,
    db,
)


def _rows(*keys):
    return [SimpleNamespace(name=f"r{index}", group_key=key) for index, key in enumerate(keys)]


def _names(chunks):
    return [[row.name for row in chunk] for chunk in chunks]


def _job(job_id: str) -> ImportJob:
    return db.session.execute(db.select(ImportJob).where(ImportJob.job_id == job_id)).scalar_one()


# ---------------------------------------------------------------------------
# Chunk partitioning and options
# ---------------------------------------------------------------------------


def test_partition_chunks_preserves_order_and_size():
    chunks = partition_chunks(_rows(None, None, None, None, None), 2)
    assert _names(chunks) == [["r0", "r1"], ["r2", "r3"], ["r4"]]


def test_partition_chunks_keeps_groups_together():
    chunks = partition_chunks(_rows(None, "A", "A", None, None), 2)
    assert _names(chunks) == [["r0"], ["r1", "r2"], ["r3", "r4"]]


def test_partition_chunks_oversized_group_is_its_own_chunk():
    chunks = partition_chunks(_rows(None, "A", "A", "A", None), 2)
    assert _names(chunks) == [["r0"], ["r1", "r2", "r3"], ["r4"]]


def test_partition_chunks_rejects_non_positive_size():
    with pytest.raises(ValueError):
        partition_chunks(_rows(None), 0)


def test_commit_options_coerce():
    options = CommitOptions.coerce(continue_on_error="yes", dry_run="false", chunk_size="25", actor="  ops ")
    assert options == CommitOptions(continue_on_error=True, dry_run=False, chunk_size=25, actor="ops")
    assert CommitOptions.coerce().continue_on_error is None
    with pytest.raises(ValueError):
        CommitOptions.coerce(chunk_size="0")
    with pytest.raises(ValueError):
        CommitOptions.coerce(chunk_size="lots")
    with pytest.raises(ValueError):
        CommitOptions.coerce(dry_run="perhaps")


# ---------------------------------------------------------------------------
# Commit and execution
# ---------------------------------------------------------------------------


def test_partial_commit_with_continue_on_error(orchestrator, location_rows):
    rows = location_rows(100)
    for index in (4, 19, 44, 69, 94):
        rows[index]["name"] = ""
    session = orchestrator.validate("locations", rows)
    assert session.counts.valid == 95
    assert session.counts.invalid == 5

    with pytest.raises(SessionNotCommittableError) as excinfo:
        orchestrator.commit(session.session_id)
    assert excinfo.value.invalid_rows == 5

    receipt = orchestrator.commit(session.session_id, CommitOptions(continue_on_error=True))
    assert receipt.status == "completed"
    assert receipt.total_rows == 100

    view = orchestrator.status(receipt.job_id).as_dict()
    assert view["counts"] == {"total": 100, "processed": 100, "success": 95, "failed": 5, "skipped": 0}
    assert view["progress_percent"] == 100.0
    assert [row["row_number"] for row in view["failed_rows"]] == [6, 21, 46, 71, 96]
    assert {row["status"] for row in view["failed_rows"]} == {"invalid"}
    assert view["failed_rows"][0]["error_message"] == "Name is required."
    assert "5 of 100 row(s) failed." in view["error_summary"]
    assert Location.query.count() == 95


def test_commit_consumes_session(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(2))
    orchestrator.commit(session.session_id)
    with pytest.raises(SessionAlreadyConsumedError):
        orchestrator.commit(session.session_id)


def test_session_without_valid_rows_is_not_committable(orchestrator):
    session = orchestrator.validate("locations", [{"code": "", "name": ""}])
    with pytest.raises(SessionNotCommittableError):
        orchestrator.commit(session.session_id, CommitOptions(continue_on_error=True))


def test_dependency_not_met_writes_nothing(orchestrator, department_rows):
    session = orchestrator.validate("departments", department_rows())
    with pytest.raises(DependencyNotMetError) as excinfo:
        orchestrator.commit(session.session_id)
    assert excinfo.value.missing == ("locations",)
    assert Department.query.count() == 0
    assert ImportJob.query.count() == 0
    # the session survives a refused commit
    assert orchestrator.sessions.get_session(session.session_id)


def test_dependent_module_imports_after_dependency(orchestrator, imported_locations, department_rows, import_rows):
    receipt = import_rows("departments", department_rows())
    assert receipt.status == "completed"

    finance = Department.query.filter_by(code="FIN").one()
    payable = Department.query.filter_by(code="FIN-AP").one()
    assert payable.parent_id == finance.id
    assert finance.location.code == "LOC001"
    assert {department.import_batch_id for department in Department.query.all()} == {receipt.batch_tag}

    plan = {entry.descriptor.id: entry for entry in orchestrator.import_plan()}
    assert plan["departments"].imported


def test_update_rows_capture_before_image(orchestrator, imported_locations, import_rows):
    receipt = import_rows("locations", [{"code": "LOC001", "name": "Renamed", "city": "Shelbyville"}])
    assert receipt.status == "completed"

    location = Location.query.filter_by(code="LOC001").one()
    assert location.name == "Renamed"
    assert location.import_batch_id == receipt.batch_tag

    row = _job(receipt.job_id).rows[0]
    assert row.status == ImportRowStatus.WRITTEN
    assert row.target_id == location.id
    assert row.before_json["name"] == "Location 1"
    assert row.before_json["import_batch_id"] == imported_locations.batch_tag


def test_dry_run_writes_nothing_and_does_not_satisfy(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(5))
    receipt = orchestrator.commit(session.session_id, CommitOptions(dry_run=True))

    assert receipt.dry_run is True
    assert receipt.status == "completed"
    assert Location.query.count() == 0
    view = orchestrator.status(receipt.job_id).as_dict()
    assert view["counts"]["success"] == 5

    entry = ImportHistoryEntry.query.filter_by(job_id=receipt.job_id).one()
    assert entry.dry_run is True
    assert not orchestrator.ledger.is_satisfied("locations")

    # a dry run leaves the session available for the real commit
    real = orchestrator.commit(session.session_id)
    assert real.status == "completed"
    assert Location.query.count() == 5
    assert orchestrator.ledger.is_satisfied("locations")


def test_failed_chunk_stops_job_without_continue_on_error(orchestrator, imported_locations, department_rows, import_rows):
    rows = department_rows()
    rows[3]["location_code"] = "NOPE"
    receipt = import_rows("departments", rows, chunk_size=2)

    assert receipt.status == "failed"
    view = orchestrator.status(receipt.job_id).as_dict()
    # FIN and its two children share a chunk that committed before OPS failed
    assert view["counts"]["success"] == 3
    assert view["counts"]["failed"] == 1
    assert view["chunks"] == {"completed": 1, "failed": 1}
    assert view["failed_rows"][0]["row_number"] == 5
    assert view["failed_rows"][0]["error_message"] == "Location 'NOPE' does not exist."
    assert view["error_summary"].startswith("Chunk 2 failed at row 5")
    assert sorted(department.code for department in Department.query.all()) == ["FIN", "FIN-AP", "FIN-AR"]


def test_dry_run_sees_rows_written_by_earlier_chunks(orchestrator, imported_locations, import_rows):
    rows = [
        {"code": "FIN", "name": "Finance", "location_code": "LOC001"},
        {"code": "OPS", "name": "Operations", "location_code": "LOC001"},
        {"code": "FIN-AP", "name": "Accounts Payable", "location_code": "LOC001", "parent_code": "FIN"},
    ]

    dry = import_rows("departments", rows, chunk_size=2, dry_run=True)

    assert dry.status == "completed"
    view = orchestrator.status(dry.job_id).as_dict()
    assert view["counts"]["success"] == 3
    assert view["counts"]["failed"] == 0
    assert view["chunks"] == {"completed": 2, "failed": 0}
    assert Department.query.count() == 0

    real = import_rows("departments", rows, chunk_size=2)
    assert real.status == "completed"
    assert Department.query.count() == 3


def test_dry_run_reports_the_same_chunk_failure_as_a_real_run(
    orchestrator, imported_locations, department_rows, import_rows
):
    rows = department_rows()
    rows[3]["location_code"] = "NOPE"
    receipt = import_rows("departments", rows, chunk_size=2, dry_run=True)

    assert receipt.status == "failed"
    view = orchestrator.status(receipt.job_id).as_dict()
    assert view["counts"]["success"] == 3
    assert view["counts"]["failed"] == 1
    assert view["chunks"] == {"completed": 1, "failed": 1}
    assert view["error_summary"].startswith("Chunk 2 failed at row 5")
    assert Department.query.count() == 0
    assert orchestrator.ledger.entry_for_job(receipt.job_id).dry_run is True


def test_failed_chunk_rolls_back_whole_chunk(orchestrator, imported_locations, import_rows):
    rows = [
        {"code": "OPS", "name": "Operations", "location_code": "LOC001"},
        {"code": "LAB", "name": "Laboratory", "location_code": "NOPE"},
        {"code": "HR", "name": "Human Resources", "location_code": "LOC002"},
    ]
    receipt = import_rows("departments", rows, chunk_size=2, continue_on_error=True)

    assert receipt.status == "completed"
    assert [department.code for department in Department.query.all()] == ["HR"]
    failed = {row["row_number"]: row["error_message"] for row in orchestrator.status(receipt.job_id).as_dict()["failed_rows"]}
    assert failed[2] == "Rolled back with chunk 1 after row 3 failed."
    assert failed[3] == "Location 'NOPE' does not exist."


def test_job_fails_when_no_row_succeeds(orchestrator, imported_locations, import_rows):
    receipt = import_rows("departments", [{"code": "LAB", "name": "Laboratory", "location_code": "NOPE"}])
    assert receipt.status == "failed"
    entry = orchestrator.ledger.entry_for_job(receipt.job_id)
    assert entry.outcome == ImportJobStatus.FAILED
    assert not orchestrator.ledger.is_satisfied("departments")


def test_execute_rejects_terminal_job(orchestrator, imported_locations):
    with pytest.raises(InvalidJobStateError):
        orchestrator.execute(imported_locations.job_id)


def test_lock_timeout_leaves_job_pending(orchestrator, location_rows):
    orchestrator.engine.dispatcher = lambda job_id: None
    orchestrator.engine.lock_timeout = 0.05
    session = orchestrator.validate("locations", location_rows(2))
    receipt = orchestrator.commit(session.session_id)
    assert receipt.status == "pending"

    with module_lock(db.engine, "locations", timeout=1):
        with pytest.raises(ModuleLockTimeout):
            orchestrator.execute(receipt.job_id)
    assert _job(receipt.job_id).status == ImportJobStatus.PENDING

    orchestrator.execute(receipt.job_id)
    assert orchestrator.status(receipt.job_id).status == "completed"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancel_pending_job(orchestrator, location_rows):
    orchestrator.engine.dispatcher = lambda job_id: None
    session = orchestrator.validate("locations", location_rows(2))
    receipt = orchestrator.commit(session.session_id)

    job = orchestrator.cancel(receipt.job_id)
    assert job.status == ImportJobStatus.CANCELLED
    assert orchestrator.ledger.entry_for_job(receipt.job_id).outcome == ImportJobStatus.CANCELLED

    # a worker picking the job up later leaves it alone
    assert orchestrator.execute(receipt.job_id).status == ImportJobStatus.CANCELLED
    assert Location.query.count() == 0

    with pytest.raises(InvalidJobStateError):
        orchestrator.cancel(receipt.job_id)


def test_cancel_processing_job_stops_between_chunks(orchestrator, location_rows):
    engine = orchestrator.engine
    original_run_chunk = engine._run_chunk

    def run_chunk_then_cancel(job, module, chunk, index):
        result = original_run_chunk(job, module, chunk, index)
        if index == 1:
            flagged = orchestrator.cancel(job.job_id)
            assert flagged.cancel_requested
        return result

    engine._run_chunk = run_chunk_then_cancel
    session = orchestrator.validate("locations", location_rows(6))
    receipt = orchestrator.commit(session.session_id, CommitOptions(chunk_size=2))

    assert receipt.status == "cancelled"
    view = orchestrator.status(receipt.job_id).as_dict()
    assert view["counts"]["success"] == 2
    assert view["error_summary"] == "Cancelled after 1 of 3 chunk(s)."
    assert Location.query.count() == 2
