"""Tests for durable workflow records and their cache-aside reads."""

import pytest

from rfp_graphrag.data_service import LIST_VERSION_KEY, WorkflowDataService
from rfp_graphrag.database import WorkflowDatabaseManager
from rfp_graphrag.exceptions import WorkflowNotFoundError


@pytest.fixture
def data(tmp_path, dict_cache):
    db = WorkflowDatabaseManager(tmp_path / "workflows")
    yield WorkflowDataService(db, dict_cache)
    db.dispose_all()


def test_create_and_read_workflow(data, dict_cache):
    created = data.create_workflow("wf_1", {"client": "Ministry of Health"})

    assert created["status"] == "pending"
    assert created["progress"] == 0
    fetched = data.get_workflow("wf_1")
    assert fetched["project_context"] == {"client": "Ministry of Health"}
    assert "workflow:wf_1" in dict_cache.store


def test_update_invalidates_cached_workflow(data):
    data.create_workflow("wf_1")
    data.get_workflow("wf_1")

    data.update_workflow("wf_1", status="running", current_step="document_ingestion")

    assert data.get_workflow("wf_1")["status"] == "running"


def test_progress_is_clamped(data):
    data.create_workflow("wf_1")

    assert data.update_workflow("wf_1", progress=150)["progress"] == 100
    assert data.update_workflow("wf_1", progress=-5)["progress"] == 0


def test_progress_never_moves_backwards_while_running(data):
    data.create_workflow("wf_1")
    data.update_workflow("wf_1", status="running", progress=50)

    assert data.update_workflow("wf_1", progress=30)["progress"] == 50
    assert data.update_workflow("wf_1", status="running", progress=10)["progress"] == 50
    assert data.update_workflow("wf_1", status="pending", progress=0)["progress"] == 0


def test_running_with_error_is_stored_as_failed(data):
    data.create_workflow("wf_1")
    data.update_workflow("wf_1", status="running")

    updated = data.update_workflow("wf_1", error_message="LLM unreachable")

    assert updated["status"] == "failed"
    assert updated["end_time"] is not None


def test_update_rejects_unknown_fields_and_workflows(data):
    data.create_workflow("wf_1")

    with pytest.raises(ValueError, match="Unknown workflow fields"):
        data.update_workflow("wf_1", owner="alice")
    with pytest.raises(WorkflowNotFoundError):
        data.update_workflow("wf_missing", status="running")


def test_unknown_workflow_reads(data):
    assert data.get_workflow("wf_missing") is None
    with pytest.raises(WorkflowNotFoundError):
        data.require_workflow("wf_missing")
    with pytest.raises(WorkflowNotFoundError):
        data.get_requirements("wf_missing")
    with pytest.raises(ValueError):
        data.get_workflow("../etc")


def test_list_cache_key_carries_version(data, dict_cache):
    data.create_workflow("wf_1")
    data.create_workflow("wf_2")

    first = data.list_workflows()
    version = dict_cache.get_int(LIST_VERSION_KEY)

    assert {w["id"] for w in first} == {"wf_1", "wf_2"}
    assert f"workflows:list:v{version}:50:0" in dict_cache.store

    data.create_workflow("wf_3")

    assert dict_cache.get_int(LIST_VERSION_KEY) > version
    assert {w["id"] for w in data.list_workflows()} == {"wf_1", "wf_2", "wf_3"}


def test_list_pagination(data):
    for i in range(3):
        data.create_workflow(f"wf_{i}")

    assert len(data.list_workflows(limit=2)) == 2
    assert len(data.list_workflows(limit=2, offset=2)) == 1


def test_saving_a_step_output_replaces_previous_rows(data):
    data.create_workflow("wf_1")
    data.save_requirements(
        "wf_1",
        [
            {"id": "tech_001", "category": "technical", "description": "Kubernetes", "priority": "HIGH"},
            {"category": "functional", "description": "Citizen login", "priority": "urgent"},
        ],
    )
    first = data.get_requirements("wf_1")

    assert [r["requirement_id"] for r in first] == ["tech_001", "REQ-002"]
    assert [r["priority"] for r in first] == ["high", "medium"]

    data.save_requirements("wf_1", [{"id": "tech_002", "category": "technical", "description": "PostgreSQL"}])

    assert [r["requirement_id"] for r in data.get_requirements("wf_1")] == ["tech_002"]


def test_questions_and_answers(data):
    data.create_workflow("wf_1")
    data.save_questions(
        "wf_1",
        [{"id": "q1", "category": "technical", "question": "Which version?", "related_requirements": ["tech_001"]}],
    )
    data.save_answers("wf_1", [{"question_id": "q1", "answer": "1.29", "confidence_score": 1.7}])

    question = data.get_questions("wf_1")[0]
    answer = data.get_answers("wf_1")[0]
    assert question["question_text"] == "Which version?"
    assert question["related_requirements"] == ["tech_001"]
    assert answer["answer_text"] == "1.29"
    assert answer["confidence_score"] == 1.0


def test_latest_step_result_wins(data):
    data.create_workflow("wf_1")
    data.save_step_result("wf_1", "document_ingestion", {"attempt": 1})
    data.save_step_result("wf_1", "requirements_analysis", {"requirements": []})
    data.save_step_result("wf_1", "document_ingestion", {"attempt": 2})

    latest = data.get_latest_step_result("wf_1", "document_ingestion")

    assert latest["result_data"] == {"attempt": 2}
    assert set(data.get_latest_results("wf_1")) == {"document_ingestion", "requirements_analysis"}
    assert data.get_latest_step_result("wf_1", "response_compilation") is None


def test_documents(data):
    data.create_workflow("wf_1")
    data.create_document("wf_1", "doc_1", "rfp.pdf", "/tmp/rfp.pdf", file_size=10, mime_type="application/pdf")

    data.update_document("wf_1", "doc_1", processing_status="completed", metadata={"pages": 3})

    documents = data.get_documents("wf_1")
    assert len(documents) == 1
    assert documents[0]["processing_status"] == "completed"
    assert documents[0]["metadata"] == {"pages": 3}
    with pytest.raises(ValueError):
        data.update_document("wf_1", "doc_1", original_name="other.pdf")
    with pytest.raises(KeyError):
        data.update_document("wf_1", "doc_missing", processing_status="failed")


def test_delete_workflow(data, tmp_path):
    data.create_workflow("wf_1")
    data.get_workflow("wf_1")

    assert data.delete_workflow("wf_1") is True
    assert not (tmp_path / "workflows" / "wf_1").exists()
    assert data.get_workflow("wf_1") is None
    assert data.delete_workflow("wf_1") is False
