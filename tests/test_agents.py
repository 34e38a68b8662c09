"""Tests for the step agents and the flattening of their outputs."""

from types import SimpleNamespace

import pytest

from rfp_graphrag.agents import (
    AnswerExtractionAgent,
    DocumentIngestionAgent,
    RequirementsAnalysisAgent,
    ResponseCompilationAgent,
    StepAgent,
    flatten_answers,
    flatten_questions,
    flatten_requirements,
)
from rfp_graphrag.exceptions import CollaboratorError, EmbeddingDimensionError
from rfp_graphrag.models import HybridResult


class EchoAgent(StepAgent):
    name = "echo"
    system_prompt = "You echo JSON."


class QuestionCoordinator:
    """Returns passages chosen by question text."""

    def __init__(self, passages_by_question):
        self.passages_by_question = passages_by_question

    def hybrid_search(self, query, workflow_id, options=None):
        passages = self.passages_by_question[query]
        if isinstance(passages, Exception):
            raise passages
        return passages


def _passage(vector_score):
    return HybridResult(
        key="k", content="Support is 24/7.", source="vector", score=vector_score * 0.6,
        vector_score=vector_score, document_id="doc_a",
    )


def _context(settings, llm, coordinator=None):
    return SimpleNamespace(settings=settings, llm=llm, coordinator=coordinator)


def _question(question_id, text, priority="medium"):
    return {"question_id": question_id, "question_text": text, "priority": priority}


def test_execute_retries_transient_failures(settings, llm):
    attempts = []

    def flaky(prompt):
        attempts.append(prompt)
        if len(attempts) == 1:
            raise CollaboratorError("502 from gateway")
        return '{"ok": true}'

    llm.responses[EchoAgent.system_prompt] = flaky

    assert EchoAgent(_context(settings, llm)).execute("input") == {"ok": True}
    assert len(attempts) == 2


def test_execute_gives_up_after_configured_attempts(settings, llm):
    llm.responses[EchoAgent.system_prompt] = CollaboratorError("connection refused")

    with pytest.raises(CollaboratorError):
        EchoAgent(_context(settings, llm)).execute("input")
    assert llm.count(EchoAgent.system_prompt) == settings.agent_retry_attempts


def test_non_json_reply_is_kept_as_content(settings, llm):
    llm.responses[EchoAgent.system_prompt] = "Here is my analysis in prose."

    result = EchoAgent(_context(settings, llm)).execute("input")

    assert result == {"content": "Here is my analysis in prose.", "agent": "echo"}


def test_prompt_includes_previous_results(settings, llm):
    agent = EchoAgent(_context(settings, llm))

    prompt = agent.build_prompt("documents", {"project_context": {"client": "Acme"}})

    assert prompt.splitlines()[0] == "Previous Analysis Results:"
    assert '"client": "Acme"' in prompt
    assert prompt.endswith("Current Input:\ndocuments")


def test_answer_thresholds(settings, llm):
    coordinator = QuestionCoordinator(
        {
            "Which cloud?": [_passage(0.9)],
            "Which database?": [_passage(0.5)],
            "What budget?": [_passage(0.2)],
            "Who signs?": [],
            "When is go-live?": RuntimeError("graph down"),
        }
    )
    agent = AnswerExtractionAgent(_context(settings, llm, coordinator))
    questions = [
        _question("q1", "Which cloud?"),
        _question("q2", "Which database?"),
        _question("q3", "What budget?", "high"),
        _question("q4", "Who signs?"),
        _question("q5", "When is go-live?"),
    ]

    result = agent.run("wf_1", questions)

    answered = {a["question_id"]: a for a in result["answered_questions"]}
    assert answered["q1"]["confidence"] == 1.0
    assert (answered["q1"]["answer_type"], answered["q1"]["completeness"]) == ("direct", "complete")
    assert answered["q2"]["confidence"] == pytest.approx(0.6)
    assert (answered["q2"]["answer_type"], answered["q2"]["completeness"]) == ("inferred", "partial")
    reasons = {u["question_id"]: u["reason"] for u in result["unanswered_questions"]}
    assert reasons == {
        "q3": "Low confidence answer",
        "q4": "No relevant information found",
        "q5": "Error processing question",
    }
    assert result["answer_summary"] == {
        "total_questions": 5,
        "answered": 2,
        "unanswered": 3,
        "average_confidence": pytest.approx(0.8),
    }


def test_answer_extraction_propagates_configuration_errors(settings, llm):
    coordinator = QuestionCoordinator({"Which cloud?": EmbeddingDimensionError(384, 768)})
    agent = AnswerExtractionAgent(_context(settings, llm, coordinator))

    with pytest.raises(EmbeddingDimensionError):
        agent.run("wf_1", [_question("q1", "Which cloud?")])


def test_response_compilation_fills_missing_sections(settings, llm):
    answers = {
        "answered_questions": [
            {"question_id": "q1", "question": "Which cloud?", "answer": "AWS", "confidence": 0.9,
             "completeness": "complete", "sources": []},
            {"question_id": "q2", "question": "Which database?", "answer": "PostgreSQL", "confidence": 0.5,
             "completeness": "partial", "sources": []},
        ],
        "unanswered_questions": [{"question_id": "q3", "reason": "Low confidence answer"}],
    }
    agent = ResponseCompilationAgent(_context(settings, llm))

    response = agent.run({"project_overview": {"title": "Portal"}}, {}, answers)

    assert [r["status"] for r in response["question_responses"]] == ["answered", "partial"]
    assert response["gaps"] == [{"question_id": "q3", "reason": "Low confidence answer"}]
    assert response["executive_summary"]["project_title"] == "Citizen Services Portal"


def test_requirements_input_lists_each_document(settings, llm):
    text = RequirementsAnalysisAgent.combine_documents(
        [{"file_name": "rfp.pdf", "document_type": "rfp", "overview": "Portal", "deadlines": ["1 March"]}]
    )

    assert "--- Document 1: rfp.pdf ---" in text
    assert "Deadlines:\n- 1 March" in text


def test_flatten_requirements_accepts_grouped_and_plain_lists():
    grouped = flatten_requirements(
        {"requirements": {"technical": [{"description": "Kubernetes", "priority": "HIGH"}, {"description": " "}]}}
    )
    plain = flatten_requirements({"requirements": ["Provide 24/7 support"]})

    assert grouped == [
        {
            "requirement_id": "technical_001",
            "category": "technical",
            "description": "Kubernetes",
            "priority": "high",
            "complexity": "medium",
            "mandatory": False,
            "source_document_id": None,
        }
    ]
    assert plain[0]["category"] == "general"
    assert flatten_requirements({"content": "prose"}) == []


def test_flatten_questions_drops_blank_questions():
    questions = flatten_questions(
        {"question_categories": {"budget": ["What is the ceiling?", {"question": ""}], "legal": None}}
    )

    assert [(q["question_id"], q["question_text"]) for q in questions] == [("budget_q_001", "What is the ceiling?")]


def test_flatten_answers():
    answers = flatten_answers({"answered_questions": [{"question_id": "q1", "answer": "AWS", "confidence": 0.9}]})

    assert answers == [
        {
            "question_id": "q1",
            "answer_text": "AWS",
            "confidence_score": 0.9,
            "answer_type": "direct",
            "completeness": "complete",
            "sources": [],
        }
    ]


def test_ingestion_embeds_each_document_once(engine, context, rfp_file, hashing_model):
    workflow_id = engine.submit_workflow([{"file_path": str(rfp_file), "id": "doc_rfp"}])
    before = hashing_model.calls

    result = DocumentIngestionAgent(context).run(workflow_id, context.data.get_documents(workflow_id))

    assert result["processed"] == 1
    assert hashing_model.calls == before + 1
    assert context.vector_store.stats(workflow_id)["total_vectors"] >= 1
    entities, _ = context.graph_index.entity_context(workflow_id, "doc_rfp")
    assert entities
