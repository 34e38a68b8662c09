"""Tests for detecting and repairing inconsistent workflow rows."""

import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from rfp_graphrag.data_service import WorkflowDataService
from rfp_graphrag.database import Workflow, WorkflowDatabaseManager, utcnow
from rfp_graphrag.workflow_repair import REPAIR_MESSAGE, RepairSweeper, detect_issues, repair_workflows


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _row(**overrides):
    row = {
        "id": "wf_1",
        "status": "running",
        "current_step": "requirements_analysis",
        "progress": 30,
        "end_time": None,
        "error_message": None,
        "updated_at": (NOW - timedelta(minutes=1)).isoformat(),
    }
    row.update(overrides)
    return row


@pytest.fixture
def data(tmp_path):
    db = WorkflowDatabaseManager(tmp_path / "workflows")
    yield WorkflowDataService(db)
    db.dispose_all()


def test_consistent_running_workflow_has_no_issues():
    assert detect_issues(_row(), NOW) == ([], {})


def test_failed_step_marker_fails_the_workflow():
    issues, updates = detect_issues(_row(current_step="failed"), NOW)

    assert issues == ["running with failed step"]
    assert updates == {"status": "failed", "error_message": REPAIR_MESSAGE, "end_time": NOW}


def test_existing_error_and_end_time_are_kept():
    end = NOW - timedelta(minutes=2)

    issues, updates = detect_issues(_row(error_message="LLM timeout", end_time=end.isoformat()), NOW)

    assert len(issues) == 2
    assert updates["error_message"] == "LLM timeout"
    assert updates["end_time"] == end


def test_stale_running_workflow_is_detected():
    stale = _row(updated_at=(NOW - timedelta(minutes=11)).isoformat())

    issues, updates = detect_issues(stale, NOW, stale_minutes=10)

    assert issues[0].startswith("no progress since")
    assert updates["status"] == "failed"
    assert detect_issues(stale, NOW, stale_minutes=15) == ([], {})


def test_progress_out_of_range_is_clamped_for_any_status():
    issues, updates = detect_issues(_row(status="completed", progress=140), NOW)

    assert issues == ["progress out of range: 140"]
    assert updates == {"progress": 100}


def test_finished_workflows_are_left_alone():
    assert detect_issues(_row(status="failed", error_message="boom", current_step="failed"), NOW) == ([], {})


def test_repair_workflows_persists_and_reports(data):
    data.create_workflow("wf_stale")
    data.update_workflow("wf_stale", status="running", current_step="answer_extraction", progress=70)
    with data.db.session("wf_stale") as session:
        session.get(Workflow, "wf_stale").updated_at = utcnow() - timedelta(minutes=30)
    data.create_workflow("wf_fine")
    data.update_workflow("wf_fine", status="running", progress=10)
    mirrored = []

    repaired = repair_workflows(data, stale_minutes=10, on_repair=mirrored.append)

    assert [r["workflow_id"] for r in repaired] == ["wf_stale"]
    stored = data.get_workflow("wf_stale", use_cache=False)
    assert stored["status"] == "failed"
    assert stored["current_step"] == "answer_extraction"
    assert stored["error_message"] == REPAIR_MESSAGE
    assert stored["end_time"] is not None
    assert [w["id"] for w in mirrored] == ["wf_stale"]
    assert data.get_workflow("wf_fine")["status"] == "running"


def test_repair_sweep_is_idempotent(data):
    data.create_workflow("wf_1")
    data.update_workflow("wf_1", status="running", current_step="failed")

    assert len(repair_workflows(data)) == 1
    assert repair_workflows(data) == []


def test_sweeper_run_once_delegates_to_engine():
    engine = MagicMock()
    engine.repair_corrupted_workflows.return_value = [{"workflow_id": "wf_1"}]

    assert RepairSweeper(engine).run_once() == [{"workflow_id": "wf_1"}]


def test_sweeper_thread_runs_until_stopped():
    engine = MagicMock()

    def sweep():
        if engine.repair_corrupted_workflows.call_count == 1:
            raise RuntimeError("db locked")
        return []

    engine.repair_corrupted_workflows.side_effect = sweep
    sweeper = RepairSweeper(engine, interval_seconds=0.01)

    sweeper.start()
    deadline = time.monotonic() + 2
    while engine.repair_corrupted_workflows.call_count < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    sweeper.stop()

    assert engine.repair_corrupted_workflows.call_count >= 2
    calls = engine.repair_corrupted_workflows.call_count
    time.sleep(0.05)
    assert engine.repair_corrupted_workflows.call_count == calls
