from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .chunking import chunk_text
from .config import Settings
from .embedder import Embedder
from .exceptions import ConfigurationError
from .models import Chunk, SearchResult, validate_workflow_id
from .vector_backends import (
    ChromaBackend,
    InMemoryBackend,
    JsonFileBackend,
    VectorBackend,
    WorkflowJsonBackend,
)


logger = logging.getLogger(__name__)

# chunk texts and their embeddings, index-aligned
EmbeddedSpans = Tuple[List[str], List[List[float]]]


def build_vector_backends(settings: Settings) -> List[VectorBackend]:
    """
    Instantiate the backend variants named in ``settings.vector_backends``,
    keeping their configured priority order.
    """
    factories = {
        "workflow": lambda: WorkflowJsonBackend(settings.vector_store_root),
        "json": lambda: JsonFileBackend(settings.vector_store_root / "vectors.json"),
        "chroma": lambda: ChromaBackend(settings.chroma_host, settings.chroma_port),
        "memory": lambda: InMemoryBackend(),
    }
    backends: List[VectorBackend] = []
    for name in settings.vector_backends:
        factory = factories.get(name)
        if factory is None:
            raise ConfigurationError(f"Unknown vector backend '{name}'")
        backends.append(factory())
    return backends


class TieredVectorStore:
    """
    Uniform retrieval interface over a priority chain of backends.

    ``initialize()`` tries each backend in order and keeps the first one that
    comes up for the lifetime of this object. When none does, every
    operation fails closed.
    """

    def __init__(
        self,
        backends: Sequence[VectorBackend],
        embedder: Embedder,
        chunk_size: int = 500,
        overlap: int = 50,
    ):
        if chunk_size <= overlap or overlap < 0:
            raise ConfigurationError(
                f"chunk_size ({chunk_size}) must be greater than overlap ({overlap}) >= 0"
            )
        self._candidates = list(backends)
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.overlap = overlap
        self._active: Optional[VectorBackend] = None
        self._initialized = False
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def backend_name(self) -> Optional[str]:
        return self._active.name if self._active else None

    @property
    def is_initialized(self) -> bool:
        return self._active is not None

    def initialize(self) -> Optional[str]:
        """Select the active backend. Returns its name, or None if all failed."""
        if self._initialized:
            return self.backend_name
        self._initialized = True

        for backend in self._candidates:
            try:
                backend.initialize()
            except Exception as e:
                logger.warning(
                    "Vector backend '%s' failed to initialize, trying next tier: %s",
                    backend.name,
                    e,
                )
                continue
            self._active = backend
            logger.info("Active vector backend: %s", backend.name)
            return backend.name

        logger.error("No vector backend could be initialized; vector store disabled")
        return None

    def _lock_for(self, workflow_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[workflow_id] = lock
            return lock

    def embed_document(self, content: str) -> EmbeddedSpans:
        """Chunk ``content`` with this store's window and embed every span."""
        spans = chunk_text(content, self.chunk_size, self.overlap)
        return spans, self.embedder.encode_texts(spans)

    def _build_chunks(
        self,
        workflow_id: str,
        document_id: str,
        embedded: EmbeddedSpans,
        metadata: Dict[str, Any],
    ) -> List[Chunk]:
        spans, embeddings = embedded
        chunks: List[Chunk] = []
        for index, (span, embedding) in enumerate(zip(spans, embeddings)):
            chunk_id = f"{document_id}_chunk_{index}"
            chunks.append(
                Chunk(
                    id=chunk_id,
                    document_id=document_id,
                    index=index,
                    content=span,
                    embedding=embedding,
                    metadata={
                        **metadata,
                        "document_id": document_id,
                        "chunk_index": index,
                        "chunk_id": chunk_id,
                        "workflow_id": workflow_id,
                    },
                )
            )
        return chunks

    def vectorize_document(
        self,
        workflow_id: str,
        document_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        embedded: Optional[EmbeddedSpans] = None,
    ) -> bool:
        """
        Chunk, embed and durably store one document.

        Re-vectorizing a known document id is a no-op that returns True.
        Embedding dimension errors propagate; other failures return False.
        Pass ``embedded`` (from ``embed_document``) to store spans that were
        already embedded instead of embedding ``content`` again.
        """
        if self._active is None:
            logger.warning("Vector store not initialized; cannot vectorize %s", document_id)
            return False
        validate_workflow_id(workflow_id)

        with self._lock_for(workflow_id):
            try:
                if self._active.has_document(workflow_id, document_id):
                    logger.info(
                        "Document %s already vectorized for workflow %s, skipping",
                        document_id,
                        workflow_id,
                    )
                    return True

                if embedded is None:
                    embedded = self.embed_document(content)
                chunks = self._build_chunks(
                    workflow_id, document_id, embedded, dict(metadata or {})
                )
                self._active.add_document(
                    workflow_id, document_id, chunks, dict(metadata or {})
                )
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(
                    "Error vectorizing document %s (workflow=%s): %s",
                    document_id,
                    workflow_id,
                    e,
                )
                return False

        logger.info(
            "Vectorized document %s into %d chunk(s) (workflow=%s, backend=%s)",
            document_id,
            len(chunks),
            workflow_id,
            self._active.name,
        )
        return True

    def search_similar_content(
        self,
        workflow_id: str,
        query: str,
        limit: int = 5,
    ) -> List[SearchResult]:
        """
        Rank the workflow's chunks by cosine similarity to ``query``.
        """
        if self._active is None:
            logger.warning("Vector store not initialized; returning no results")
            return []
        if not query or not query.strip():
            logger.info("Empty query text received; returning no results.")
            return []
        validate_workflow_id(workflow_id)

        try:
            query_embedding = self.embedder.embed(query)
            with self._lock_for(workflow_id):
                results = self._active.search(workflow_id, query_embedding, limit)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("Error searching workflow %s: %s", workflow_id, e)
            return []

        logger.info(
            "Search returned %d result(s) for workflow %s (limit=%d)",
            len(results),
            workflow_id,
            limit,
        )
        return results

    def clear(self, workflow_id: Optional[str] = None) -> bool:
        if self._active is None:
            return False
        try:
            if workflow_id:
                validate_workflow_id(workflow_id)
                with self._lock_for(workflow_id):
                    self._active.clear(workflow_id)
            else:
                self._active.clear(None)
        except Exception as e:
            logger.error("Error clearing vectors (workflow=%s): %s", workflow_id, e)
            return False
        logger.info("Cleared vectors (workflow=%s)", workflow_id or "<all>")
        return True

    def delete_workflow(self, workflow_id: str) -> bool:
        if self._active is None:
            return False
        validate_workflow_id(workflow_id)
        try:
            with self._lock_for(workflow_id):
                self._active.delete_workflow(workflow_id)
        except Exception as e:
            logger.error("Error deleting vectors for workflow %s: %s", workflow_id, e)
            return False
        with self._locks_guard:
            self._locks.pop(workflow_id, None)
        return True

    def stats(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        if self._active is None:
            return {"initialized": False, "backend": None}
        try:
            data = self._active.stats(workflow_id)
        except Exception as e:
            logger.error("Error collecting vector stats (workflow=%s): %s", workflow_id, e)
            return {"initialized": True, "backend": self._active.name}
        data["initialized"] = True
        return data


__all__ = ["EmbeddedSpans", "TieredVectorStore", "build_vector_backends"]
