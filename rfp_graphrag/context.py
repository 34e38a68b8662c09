from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from .cache import Cache, create_cache
from .config import Settings, get_settings
from .data_service import WorkflowDataService
from .database import WorkflowDatabaseManager
from .embedder import Embedder
from .entity_extraction import EntityExtractor
from .graph_index import GraphIndex
from .graph_store import GraphStore, Neo4jGraphStore, NetworkXGraphStore
from .hybrid_retrieval import HybridRetrievalCoordinator
from .llm_client import LLMClient
from .text_extraction import TextExtractor
from .vector_backends import VectorBackend
from .vector_store import TieredVectorStore, build_vector_backends


logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Process-wide services, built once and handed to the workflow engine."""

    settings: Settings
    embedder: Embedder
    llm: Any
    vector_store: TieredVectorStore
    graph_index: GraphIndex
    coordinator: HybridRetrievalCoordinator
    data: WorkflowDataService
    cache: Cache
    text_extractor: TextExtractor = field(default_factory=TextExtractor)

    def close(self) -> None:
        self.coordinator.close()
        self.graph_index.close()
        self.data.db.dispose_all()
        self.cache.close()


def default_graph_stores(settings: Settings) -> List[GraphStore]:
    stores: List[GraphStore] = []
    if settings.neo4j_enabled:
        stores.append(
            Neo4jGraphStore(
                settings.neo4j_uri,
                settings.neo4j_username,
                settings.neo4j_password,
                settings.neo4j_timeout_seconds,
            )
        )
    stores.append(NetworkXGraphStore())
    return stores


def build_service_context(
    settings: Optional[Settings] = None,
    *,
    embedder: Optional[Embedder] = None,
    llm: Optional[Any] = None,
    vector_backends: Optional[Sequence[VectorBackend]] = None,
    graph_stores: Optional[Sequence[GraphStore]] = None,
    cache: Optional[Cache] = None,
) -> ServiceContext:
    """
    Wire every service from ``settings`` (the process settings by default).

    Keyword arguments replace the corresponding default component. The
    embedding dimension is checked before anything else is initialized, so a
    misconfigured model fails fast.
    """
    settings = settings or get_settings()

    embedder = embedder or Embedder(
        settings.embedder_model_name,
        device=settings.embedder_device,
        dimension=settings.embedding_dimension,
    )
    embedder.verify_dimension()

    llm = llm or LLMClient(settings)

    backends = list(vector_backends) if vector_backends is not None else build_vector_backends(settings)
    vector_store = TieredVectorStore(
        backends, embedder, chunk_size=settings.chunk_size, overlap=settings.chunk_overlap
    )
    vector_store.initialize()

    stores = list(graph_stores) if graph_stores is not None else default_graph_stores(settings)
    graph_index = GraphIndex(
        stores,
        EntityExtractor(llm),
        vector_weight=settings.search_vector_weight,
        graph_weight=settings.search_graph_weight,
    )
    graph_index.initialize()

    coordinator = HybridRetrievalCoordinator(
        vector_store, graph_index, timeout_seconds=settings.search_timeout_seconds
    )

    cache = cache or create_cache(settings)
    data = WorkflowDataService(WorkflowDatabaseManager(settings.workflow_db_root), cache, settings)

    logger.info(
        "Service context ready (vector=%s, graph=%s, cache=%s)",
        vector_store.backend_name,
        graph_index.backend_name,
        cache.name,
    )
    return ServiceContext(
        settings=settings,
        embedder=embedder,
        llm=llm,
        vector_store=vector_store,
        graph_index=graph_index,
        coordinator=coordinator,
        data=data,
        cache=cache,
    )


__all__ = ["ServiceContext", "build_service_context", "default_graph_stores"]
