"""Full pipeline over real files, then retrieval against what was indexed."""

import pytest

from rfp_graphrag.cache import NullCache
from rfp_graphrag.context import build_service_context
from rfp_graphrag.graph_store import NetworkXGraphStore
from rfp_graphrag.hybrid_retrieval import SearchOptions
from rfp_graphrag.workflow_engine import WorkflowEngine


WORDS = [f"w{i}" for i in range(1200)]


def _write_words(tmp_path):
    path = tmp_path / "uploads" / "annex_words.txt"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(" ".join(WORDS), encoding="utf-8")
    return path


def _vector_scores(hits):
    return {h.key: h.vector_score for h in hits if h.key.startswith("doc_words_chunk_")}


@pytest.mark.parametrize(
    "window, expected",
    [
        ((520, 560), "doc_words_chunk_1"),
        ((1000, 1040), "doc_words_chunk_2"),
    ],
)
def test_indexed_document_is_searchable_by_chunk(engine, context, tmp_path, window, expected):
    path = _write_words(tmp_path)

    result = engine.process_rfp([{"file_path": str(path), "id": "doc_words"}])
    workflow_id = result["workflow_id"]

    assert result["status"] == "completed"
    stats = context.vector_store.stats(workflow_id)
    assert stats["total_vectors"] == 3

    query = " ".join(WORDS[window[0]:window[1]])
    hits = context.coordinator.hybrid_search(query, workflow_id, SearchOptions(limit=5))

    assert hits[0].key == expected
    assert hits[0].source == "vector"
    scores = _vector_scores(hits)
    assert set(scores) == {"doc_words_chunk_0", "doc_words_chunk_1", "doc_words_chunk_2"}
    others = [score for key, score in scores.items() if key != expected]
    assert scores[expected] > max(others)


def test_entities_from_the_rfp_reach_the_graph(engine, context, rfp_file):
    workflow_id = engine.process_rfp([{"file_path": str(rfp_file), "id": "doc_rfp"}])["workflow_id"]

    labels = {n["label"] for n in context.graph_index.get_workflow_graph(workflow_id)["nodes"]}

    assert {"Ministry of Health", "Kubernetes", "PostgreSQL"} <= labels
    entities, relationships = context.graph_index.entity_context(workflow_id, "doc_rfp")
    assert "ISO 27001" in {e["name"] for e in entities}
    # relationship extraction needs the LLM, which is not scripted here
    assert relationships == []


def test_workflow_survives_a_restart(settings, embedder, llm, rfp_file):
    first = build_service_context(
        settings, embedder=embedder, llm=llm, graph_stores=[NetworkXGraphStore()], cache=NullCache()
    )
    try:
        workflow_id = WorkflowEngine(first).process_rfp([{"file_path": str(rfp_file), "id": "doc_rfp"}])["workflow_id"]
    finally:
        first.close()

    second = build_service_context(
        settings, embedder=embedder, llm=llm, graph_stores=[NetworkXGraphStore()], cache=NullCache()
    )
    try:
        engine = WorkflowEngine(second)
        status = engine.get_workflow_status(workflow_id)
        hits = second.vector_store.search_similar_content(workflow_id, "Kubernetes PostgreSQL storage")
    finally:
        second.close()

    assert status["workflow"]["status"] == "completed"
    assert len(status["questions"]) == 2
    assert hits[0].document_id == "doc_rfp"
