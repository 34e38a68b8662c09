from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pyvis.network import Network

from .entity_extraction import EntityExtractor
from .graph_store import GraphStore
from .models import Entity, GraphCandidate, HybridResult, Relationship, SearchResult
from .ranking import fuse_results


logger = logging.getLogger(__name__)

VectorSearch = Callable[[str, str, int], List[SearchResult]]

ENTITY_COLORS = {
    "person": "#e15759",
    "organization": "#4e79a7",
    "location": "#59a14f",
    "technology": "#f28e2b",
    "concept": "#b07aa1",
}
DEFAULT_NODE_COLOR = "#9c9c9c"


def node_size(frequency: int) -> int:
    return min(10 + int(frequency or 1) * 2, 30)


def normalize_graph_scores(candidates: List[GraphCandidate]) -> List[GraphCandidate]:
    """Scale relationship scores into 0..1 by the best score in the list."""
    best = max((c.relationship_score for c in candidates), default=0)
    for candidate in candidates:
        candidate.graph_score = candidate.relationship_score / best if best > 0 else 0.0
    return candidates


class GraphIndex:
    """
    Entity/relationship graph over a workflow's documents and chunks.

    The first store in ``stores`` whose ``initialize()`` succeeds is used for
    the lifetime of the index.
    """

    def __init__(
        self,
        stores: Sequence[GraphStore],
        extractor: EntityExtractor,
        vector_weight: float = 0.6,
        graph_weight: float = 0.4,
    ):
        self._candidates = list(stores)
        self.extractor = extractor
        self.vector_weight = vector_weight
        self.graph_weight = graph_weight
        self.store: Optional[GraphStore] = None

    @property
    def is_initialized(self) -> bool:
        return self.store is not None

    @property
    def backend_name(self) -> Optional[str]:
        return self.store.name if self.store else None

    def initialize(self) -> Optional[str]:
        if self.store is not None:
            return self.store.name
        for store in self._candidates:
            try:
                store.initialize()
            except Exception as e:
                logger.warning("Graph store '%s' unavailable, trying next: %s", store.name, e)
                continue
            self.store = store
            logger.info("Active graph store: %s", store.name)
            return store.name
        logger.error("No graph store could be initialized; graph features disabled")
        return None

    def _require_store(self) -> GraphStore:
        if self.store is None:
            raise RuntimeError("Graph index is not initialized")
        return self.store

    def _workflow_of(self, document_id: str) -> str:
        workflow_id = self._require_store().document_workflow(document_id)
        if workflow_id is None:
            raise KeyError(f"Unknown document: {document_id}")
        return workflow_id

    def create_document(
        self,
        workflow_id: str,
        filename: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        document_id: Optional[str] = None,
    ) -> str:
        document_id = document_id or str(uuid.uuid4())
        self._require_store().create_document(
            workflow_id, document_id, filename, content, dict(metadata or {})
        )
        logger.info("Created graph document %s (%s) for workflow %s", document_id, filename, workflow_id)
        return document_id

    def create_chunks_with_embeddings(
        self,
        document_id: str,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
    ) -> List[Dict[str, Any]]:
        workflow_id = self._workflow_of(document_id)
        records = [
            {
                "id": f"{document_id}_chunk_{index}",
                "content": content,
                "index": index,
                "embedding": [float(x) for x in embedding],
            }
            for index, (content, embedding) in enumerate(zip(chunks, embeddings))
        ]
        self._require_store().create_chunks(workflow_id, document_id, records)
        logger.info("Created %d chunk node(s) for document %s", len(records), document_id)
        return records

    def extract_and_create_entities(self, document_id: str, content: str) -> List[Entity]:
        workflow_id = self._workflow_of(document_id)
        store = self._require_store()
        entities = self.extractor.extract_entities(content)
        for entity in entities:
            entity.frequency = store.upsert_entity(workflow_id, document_id, entity)
        logger.info("Stored %d entities for document %s", len(entities), document_id)
        return entities

    def create_entity_relationships(
        self, entities: List[Entity], workflow_id: str
    ) -> List[Relationship]:
        store = self._require_store()
        created = [
            rel
            for rel in self.extractor.extract_relationships(entities)
            if store.create_relationship(workflow_id, rel)
        ]
        logger.info("Created %d entity relationships for workflow %s", len(created), workflow_id)
        return created

    def graph_search(self, query: str, workflow_id: str, limit: int = 10) -> List[GraphCandidate]:
        candidates = self._require_store().traverse(workflow_id, query, limit)
        return normalize_graph_scores(candidates)

    def hybrid_search(
        self,
        query: str,
        workflow_id: str,
        limit: int = 10,
        vector_search: Optional[VectorSearch] = None,
    ) -> List[HybridResult]:
        graph_results = self.graph_search(query, workflow_id, limit)
        vector_results = vector_search(workflow_id, query, limit) if vector_search else []
        results = fuse_results(
            vector_results,
            graph_results,
            vector_weight=self.vector_weight,
            graph_weight=self.graph_weight,
            limit=limit,
        )
        logger.info("Graph hybrid search returned %d results", len(results))
        return results

    def get_workflow_graph(self, workflow_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return self._require_store().workflow_graph(workflow_id)

    def build_graph_html(self, workflow_id: str) -> str:
        """
        Render the workflow's entity graph as interactive pyvis HTML.
        """
        graph = self.get_workflow_graph(workflow_id)
        net = Network(height="600px", width="100%", directed=True)
        net.barnes_hut()

        for node in graph["nodes"]:
            net.add_node(
                node["id"],
                label=node["label"],
                title=f"{node['label']} ({node['type']}, x{node['frequency']})",
                color=ENTITY_COLORS.get(node["type"], DEFAULT_NODE_COLOR),
                size=node_size(node["frequency"]),
            )

        for edge in graph["edges"]:
            net.add_edge(edge["source"], edge["target"], label=edge["type"], title=edge["type"])

        return net.generate_html()

    def entity_context(
        self, workflow_id: str, document_id: str
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        return self._require_store().entity_context(workflow_id, document_id)

    def delete_workflow_data(self, workflow_id: str) -> None:
        self._require_store().delete_workflow(workflow_id)
        logger.info("Deleted graph data for workflow %s", workflow_id)

    def process_document(
        self,
        workflow_id: str,
        filename: str,
        content: str,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        metadata: Optional[Dict[str, Any]] = None,
        document_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Index one document end to end: document node, chunk nodes, entities
        and relationships.
        """
        document_id = self.create_document(workflow_id, filename, content, metadata, document_id)
        chunk_records = self.create_chunks_with_embeddings(document_id, chunks, embeddings)
        entities = self.extract_and_create_entities(document_id, content)
        relationships = self.create_entity_relationships(entities, workflow_id)
        return {
            "document_id": document_id,
            "chunks": len(chunk_records),
            "entities": [e.to_dict() for e in entities],
            "relationships": [r.to_dict() for r in relationships],
        }

    def close(self) -> None:
        if self.store is not None:
            self.store.close()


__all__ = ["GraphIndex", "normalize_graph_scores", "node_size", "ENTITY_COLORS"]
