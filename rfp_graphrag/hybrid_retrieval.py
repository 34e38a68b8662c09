from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError
from .graph_index import GraphIndex
from .models import GraphCandidate, HybridResult, SearchResult
from .ranking import fuse_results
from .vector_store import TieredVectorStore


logger = logging.getLogger(__name__)


@dataclass
class SearchOptions:
    limit: int = 10
    vector_weight: float = 0.6
    graph_weight: float = 0.4
    include_entities: bool = True
    include_relationships: bool = True


class HybridRetrievalCoordinator:
    """
    Runs vector search and graph search in parallel and fuses them into one
    ranked list.

    Either side may be missing or fail; it then contributes no candidates.
    """

    def __init__(
        self,
        vector_store: Optional[TieredVectorStore],
        graph_index: Optional[GraphIndex],
        timeout_seconds: float = 30.0,
        max_workers: int = 4,
    ):
        self.vector_store = vector_store
        self.graph_index = graph_index
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="hybrid-search"
        )

    def _vector_side(self, query: str, workflow_id: str, limit: int) -> List[SearchResult]:
        if self.vector_store is None or not self.vector_store.is_initialized:
            return []
        return self.vector_store.search_similar_content(workflow_id, query, limit)

    def _graph_side(self, query: str, workflow_id: str, limit: int) -> List[GraphCandidate]:
        if self.graph_index is None or not self.graph_index.is_initialized:
            return []
        return self.graph_index.graph_search(query, workflow_id, limit)

    def _collect(self, future: Future, label: str, workflow_id: str) -> list:
        try:
            return future.result(timeout=self.timeout_seconds)
        except ConfigurationError:
            raise
        except FutureTimeout:
            future.cancel()
            logger.warning(
                "%s search timed out after %.1fs (workflow=%s)",
                label,
                self.timeout_seconds,
                workflow_id,
            )
        except Exception as e:
            logger.warning("%s search failed (workflow=%s): %s", label, workflow_id, e)
        return []

    def _enrich(self, results: List[HybridResult], workflow_id: str, options: SearchOptions) -> None:
        if not (options.include_entities or options.include_relationships):
            return
        if self.graph_index is None or not self.graph_index.is_initialized:
            return
        contexts: Dict[str, Any] = {}
        for result in results:
            if not result.document_id:
                continue
            try:
                if result.document_id not in contexts:
                    contexts[result.document_id] = self.graph_index.entity_context(
                        workflow_id, result.document_id
                    )
                entities, relationships = contexts[result.document_id]
            except Exception as e:
                logger.debug("Skipping enrichment for %s: %s", result.document_id, e)
                continue
            if options.include_entities and not result.entities:
                result.entities = [e["name"] for e in entities]
            if options.include_relationships:
                result.relationships = list(relationships)

    def hybrid_search(
        self,
        query: str,
        workflow_id: str,
        options: Optional[SearchOptions] = None,
    ) -> List[HybridResult]:
        options = options or SearchOptions()
        if not query or not query.strip():
            return []

        vector_future = self._executor.submit(self._vector_side, query, workflow_id, options.limit)
        graph_future = self._executor.submit(self._graph_side, query, workflow_id, options.limit)
        vector_results = self._collect(vector_future, "Vector", workflow_id)
        graph_results = self._collect(graph_future, "Graph", workflow_id)

        results = fuse_results(
            vector_results,
            graph_results,
            vector_weight=options.vector_weight,
            graph_weight=options.graph_weight,
            limit=options.limit,
        )
        self._enrich(results, workflow_id, options)

        logger.info(
            "Hybrid search for workflow %s: %d vector + %d graph -> %d fused",
            workflow_id,
            len(vector_results),
            len(graph_results),
            len(results),
        )
        return results

    def get_search_explanation(
        self,
        query: str,
        workflow_id: str,
        options: Optional[SearchOptions] = None,
    ) -> Dict[str, Any]:
        options = options or SearchOptions()
        results = self.hybrid_search(query, workflow_id, options)
        counts = {"vector": 0, "graph": 0, "hybrid": 0}
        for result in results:
            counts[result.source] = counts.get(result.source, 0) + 1
        return {
            "query": query,
            "workflow_id": workflow_id,
            "total_results": len(results),
            "sources": counts,
            "weights": {"vector": options.vector_weight, "graph": options.graph_weight},
            "top_results": [
                {
                    "key": r.key,
                    "source": r.source,
                    "score": r.score,
                    "vector_score": r.vector_score,
                    "graph_score": r.graph_score,
                    "preview": r.content[:100],
                }
                for r in results[:5]
            ],
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)


__all__ = ["HybridRetrievalCoordinator", "SearchOptions"]
