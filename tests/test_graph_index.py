"""Tests for the graph index over the in-process networkx store."""

from unittest.mock import MagicMock

import pytest

from rfp_graphrag.graph_index import GraphIndex, node_size, normalize_graph_scores
from rfp_graphrag.graph_store import GraphStore, Neo4jGraphStore, NetworkXGraphStore
from rfp_graphrag.models import Entity, EntityType, GraphCandidate, Relationship, SearchResult


WF = "wf_graph"

ENTITIES = {
    "alpha": [Entity("Kubernetes", EntityType.TECHNOLOGY), Entity("Acme", EntityType.ORGANIZATION)],
    "beta": [Entity("Acme", EntityType.ORGANIZATION), Entity("PostgreSQL", EntityType.TECHNOLOGY)],
    "gamma": [Entity("Budget", EntityType.CONCEPT)],
}
RELATIONSHIPS = [
    Relationship("Kubernetes", "Acme", "USES", 0.9),
    Relationship("Acme", "PostgreSQL", "PART_OF", 0.8),
]


class StubExtractor:
    """Returns canned entities per document text and the relationships among them."""

    def extract_entities(self, text):
        return [Entity(e.name, e.type, e.confidence) for e in ENTITIES[text]]

    def extract_relationships(self, entities):
        names = {e.name for e in entities}
        return [r for r in RELATIONSHIPS if r.source in names and r.target in names]


class UnavailableStore(GraphStore):
    name = "neo4j"

    def initialize(self):
        raise ConnectionError("bolt://localhost:7687 refused")


def _embeddings(n):
    return [[0.1, 0.2, 0.3]] * n


@pytest.fixture
def graph():
    index = GraphIndex([NetworkXGraphStore()], StubExtractor())
    assert index.initialize() == "networkx"
    index.process_document(WF, "a.txt", "alpha", ["a0", "a1"], _embeddings(2), document_id="A")
    index.process_document(WF, "b.txt", "beta", ["b0"], _embeddings(1), document_id="B")
    index.process_document(WF, "c.txt", "gamma", ["c0"], _embeddings(1), document_id="C")
    return index


def test_process_document_summary():
    index = GraphIndex([NetworkXGraphStore()], StubExtractor())
    index.initialize()

    summary = index.process_document(WF, "a.txt", "alpha", ["a0", "a1"], _embeddings(2), document_id="A")

    assert summary["document_id"] == "A"
    assert summary["chunks"] == 2
    assert [e["name"] for e in summary["entities"]] == ["Kubernetes", "Acme"]
    assert summary["relationships"] == [
        {"source": "Kubernetes", "target": "Acme", "type": "USES", "confidence": 0.9}
    ]


def test_entity_frequency_counts_mentions_across_documents(graph):
    nodes = {n["id"]: n for n in graph.get_workflow_graph(WF)["nodes"]}

    assert nodes["organization:Acme"]["frequency"] == 2
    assert nodes["technology:Kubernetes"]["frequency"] == 1


def test_graph_search_scores_by_related_entity_mentions(graph):
    """
    Kubernetes reaches Acme in one hop and PostgreSQL in two. Document B
    mentions both, document A only Acme, document C neither.
    """
    results = graph.graph_search("kubernetes", WF, limit=10)

    assert [c.chunk_id for c in results] == ["B_chunk_0", "A_chunk_0", "A_chunk_1"]
    assert [c.relationship_score for c in results] == [2, 1, 1]
    assert [c.graph_score for c in results] == [1.0, 0.5, 0.5]
    assert results[0].entities == ["Kubernetes"]
    assert results[0].related_entities == ["Acme", "PostgreSQL"]
    assert results[1].related_entities == ["Acme"]


def test_graph_search_matches_entity_names_inside_longer_queries(graph):
    results = graph.graph_search("Which PostgreSQL version is supported?", WF, limit=10)

    # PostgreSQL reaches Acme (1 hop) and Kubernetes (2 hops)
    assert {c.document_id for c in results} == {"A", "B"}


def test_graph_search_respects_limit_and_workflow(graph):
    assert len(graph.graph_search("kubernetes", WF, limit=1)) == 1
    assert graph.graph_search("kubernetes", "wf_other", limit=10) == []
    assert graph.graph_search("budget", WF, limit=10) == []


def test_chunk_ids_follow_document_convention(graph):
    records = graph.create_chunks_with_embeddings("C", ["c0", "c1"], _embeddings(2))

    assert [r["id"] for r in records] == ["C_chunk_0", "C_chunk_1"]


def test_unknown_document_raises(graph):
    with pytest.raises(KeyError):
        graph.create_chunks_with_embeddings("missing", ["x"], _embeddings(1))
    with pytest.raises(KeyError):
        graph.extract_and_create_entities("missing", "alpha")


def test_workflow_graph_export(graph):
    exported = graph.get_workflow_graph(WF)

    assert {n["label"] for n in exported["nodes"]} == {"Kubernetes", "Acme", "PostgreSQL", "Budget"}
    assert {(e["source"], e["target"], e["type"]) for e in exported["edges"]} == {
        ("technology:Kubernetes", "organization:Acme", "USES"),
        ("organization:Acme", "technology:PostgreSQL", "PART_OF"),
    }


def test_build_graph_html_contains_entities(graph):
    html = graph.build_graph_html(WF)

    assert "<html" in html.lower()
    assert "Kubernetes" in html
    assert "PostgreSQL" in html


def test_entity_context_for_document(graph):
    entities, relationships = graph.entity_context(WF, "B")

    assert {e["name"] for e in entities} == {"Acme", "PostgreSQL"}
    assert relationships == [{"source": "Acme", "target": "PostgreSQL", "type": "PART_OF"}]


def test_hybrid_search_fuses_vector_side(graph):
    def vector_search(workflow_id, query, limit):
        assert workflow_id == WF
        return [SearchResult(content="b0", document_id="B", similarity=0.5, chunk_id="B_chunk_0")]

    results = graph.hybrid_search("kubernetes", WF, limit=5, vector_search=vector_search)

    top = results[0]
    assert top.chunk_id == "B_chunk_0"
    assert top.source == "hybrid"
    assert top.score == pytest.approx(0.5 * 0.6 + 1.0 * 0.4)


def test_delete_workflow_data(graph):
    graph.delete_workflow_data(WF)

    assert graph.graph_search("kubernetes", WF, limit=10) == []
    assert graph.get_workflow_graph(WF) == {"nodes": [], "edges": []}
    with pytest.raises(KeyError):
        graph.create_chunks_with_embeddings("A", ["a0"], _embeddings(1))


def test_initialize_skips_unavailable_store():
    index = GraphIndex([UnavailableStore(), NetworkXGraphStore()], StubExtractor())

    assert index.initialize() == "networkx"
    assert index.backend_name == "networkx"


def test_uninitialized_index_refuses_operations():
    index = GraphIndex([UnavailableStore()], StubExtractor())

    assert index.initialize() is None
    assert not index.is_initialized
    with pytest.raises(RuntimeError):
        index.graph_search("kubernetes", WF)


def test_normalize_graph_scores():
    candidates = [
        GraphCandidate("c1", "x", "d", relationship_score=4),
        GraphCandidate("c2", "y", "d", relationship_score=1),
    ]

    assert [c.graph_score for c in normalize_graph_scores(candidates)] == [1.0, 0.25]
    assert normalize_graph_scores([]) == []


def test_node_size_grows_with_frequency_and_caps():
    assert node_size(1) == 12
    assert node_size(5) == 20
    assert node_size(50) == 30


def test_graph_search_keeps_chunk_index_order_past_ten_chunks():
    index = GraphIndex([NetworkXGraphStore()], StubExtractor())
    index.initialize()
    index.process_document(WF, "a.txt", "alpha", [f"a{i}" for i in range(12)], _embeddings(12), document_id="A")

    results = index.graph_search("kubernetes", WF, limit=20)

    assert [c.chunk_id for c in results] == [f"A_chunk_{i}" for i in range(12)]


def test_neo4j_traversal_orders_chunks_by_index():
    store = Neo4jGraphStore("bolt://localhost:7687", "neo4j", "secret")
    store._driver = MagicMock()
    session = store._driver.session.return_value.__enter__.return_value
    session.run.return_value = []

    assert store.traverse(WF, "Kubernetes", 5) == []

    cypher = session.run.call_args.args[0]
    assert "ORDER BY relationshipScore DESC, documentId, c.index" in cypher
    assert session.run.call_args.kwargs["query"] == "kubernetes"
