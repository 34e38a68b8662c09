"""Tests for answering a question over retrieved passages."""

import pytest

from rfp_graphrag.exceptions import CollaboratorError
from rfp_graphrag.models import HybridResult
from rfp_graphrag.rag_pipeline import (
    LLM_FAILURE_ANSWER,
    NO_CONTEXT_ANSWER,
    SYSTEM_PROMPT,
    answer_confidence,
    answer_question,
)


class StubCoordinator:
    def __init__(self, passages):
        self.passages = passages
        self.calls = []

    def hybrid_search(self, query, workflow_id, options=None):
        self.calls.append((query, workflow_id, options.limit))
        return list(self.passages)


def _passage(content, vector_score, score, document_id="doc_a"):
    return HybridResult(
        key=content[:50],
        content=content,
        source="hybrid",
        score=score,
        vector_score=vector_score,
        document_id=document_id,
    )


PASSAGES = [
    _passage("The vendor must provide 24/7 support for the portal.", 0.5, 0.4),
    _passage("Support tickets are answered within four hours.", 0.3, 0.4, "doc_b"),
]


def test_answer_uses_passages_and_reports_confidence(llm):
    coordinator = StubCoordinator(PASSAGES)

    result = answer_question(coordinator, llm, "wf_1", "What support is required?", k=2)

    assert result["answer"] == "The vendor must provide 24/7 support for the portal."
    # mean(0.5, 0.4) * 1.2
    assert result["confidence"] == pytest.approx(0.54)
    assert coordinator.calls == [("What support is required?", "wf_1", 2)]
    assert [s["document_id"] for s in result["sources"]] == ["doc_a", "doc_b"]
    assert result["sources"][0]["similarity"] == 0.5


def test_prompt_carries_passages_and_question(llm):
    answer_question(StubCoordinator(PASSAGES), llm, "wf_1", "What support is required?")

    messages = llm.last_messages
    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert "[Passage 1] (document doc_a)" in messages[-2]["content"]
    assert "[Passage 2] (document doc_b)" in messages[-2]["content"]
    assert messages[-1] == {"role": "user", "content": "What support is required?"}


def test_project_context_becomes_a_system_message(llm):
    answer_question(
        StubCoordinator(PASSAGES),
        llm,
        "wf_1",
        "What support is required?",
        project_context={"client": "Ministry of Health"},
    )

    assert llm.last_messages[1] == {
        "role": "system",
        "content": "Project context:\nclient: Ministry of Health",
    }


def test_no_passages_skips_the_llm(llm):
    result = answer_question(StubCoordinator([]), llm, "wf_1", "What support is required?")

    assert result == {"answer": NO_CONTEXT_ANSWER, "confidence": 0.0, "sources": []}
    assert llm.calls == []


def test_llm_failure_returns_fixed_apology(llm):
    llm.responses[SYSTEM_PROMPT] = CollaboratorError("rate limited")

    result = answer_question(StubCoordinator(PASSAGES), llm, "wf_1", "What support is required?")

    assert result == {"answer": LLM_FAILURE_ANSWER, "confidence": 0.0, "sources": []}


def test_source_excerpts_are_truncated(llm):
    long_text = "x" * 500

    result = answer_question(StubCoordinator([_passage(long_text, 0.9, 0.5)]), llm, "wf_1", "q")

    assert result["sources"][0]["excerpt"] == "x" * 200 + "..."


def test_answer_confidence_is_capped():
    assert answer_confidence([_passage("a", 0.95, 0.5), _passage("b", 0.9, 0.99)]) == 1.0
    assert answer_confidence([]) == 0.0
