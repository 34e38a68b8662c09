from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import chromadb
from chromadb.api import ClientAPI
from chromadb.config import Settings as ChromaSettings

from .models import Chunk, SearchResult
from .ranking import rank_by_similarity


logger = logging.getLogger(__name__)

VECTORS_FILE_NAME = "vectors.json"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file and move it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _read_json(path: Path) -> Optional[Any]:
    """Return parsed JSON, or None when the file is missing or corrupt."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to load vectors from %s, starting fresh: %s", path, e)
        return None


class VectorBackend:
    """
    One retrieval backend variant.

    Every method takes the workflow id so that partitions never mix;
    ``add_document`` must not return before the write is durable.
    """

    name = "base"

    def initialize(self) -> None:
        raise NotImplementedError

    def has_document(self, workflow_id: str, document_id: str) -> bool:
        raise NotImplementedError

    def add_document(
        self,
        workflow_id: str,
        document_id: str,
        chunks: List[Chunk],
        metadata: Dict[str, Any],
    ) -> None:
        raise NotImplementedError

    def search(
        self,
        workflow_id: str,
        query_embedding: List[float],
        limit: int,
    ) -> List[SearchResult]:
        raise NotImplementedError

    def clear(self, workflow_id: Optional[str] = None) -> None:
        raise NotImplementedError

    def stats(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def delete_workflow(self, workflow_id: str) -> None:
        self.clear(workflow_id)


class _DocumentMapBackend(VectorBackend):
    """
    Shared logic for backends that keep ``workflow -> document -> chunks``
    maps in process memory and optionally flush them to disk.
    """

    def __init__(self) -> None:
        self._partitions: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._guard = threading.RLock()

    # Hooks for durable variants.
    def _load_partition(self, workflow_id: str) -> Dict[str, Dict[str, Any]]:
        return {}

    def _flush(self, workflow_id: str) -> None:
        return None

    def _known_workflows(self) -> List[str]:
        return list(self._partitions.keys())

    def _partition(self, workflow_id: str, create: bool = False) -> Dict[str, Dict[str, Any]]:
        """
        Return the cached partition, loading it on first use.

        Empty partitions are only cached when ``create`` is set, so reads of
        unknown workflows leave no trace.
        """
        with self._guard:
            partition = self._partitions.get(workflow_id)
            if partition is None:
                partition = self._load_partition(workflow_id)
                if partition or create:
                    self._partitions[workflow_id] = partition
            return partition

    def has_document(self, workflow_id: str, document_id: str) -> bool:
        return document_id in self._partition(workflow_id)

    def add_document(
        self,
        workflow_id: str,
        document_id: str,
        chunks: List[Chunk],
        metadata: Dict[str, Any],
    ) -> None:
        partition = self._partition(workflow_id, create=True)
        previous = partition.get(document_id)
        partition[document_id] = {
            "id": document_id,
            "chunks": [c.to_dict() for c in chunks],
            "metadata": dict(metadata),
            "created_at": _now_iso(),
        }
        try:
            self._flush(workflow_id)
        except Exception:
            # the in-memory map must never hold a document the disk does not
            if previous is None:
                partition.pop(document_id, None)
            else:
                partition[document_id] = previous
            raise

    def search(
        self,
        workflow_id: str,
        query_embedding: List[float],
        limit: int,
    ) -> List[SearchResult]:
        chunks: List[Dict[str, Any]] = []
        for doc in self._partition(workflow_id).values():
            chunks.extend(doc.get("chunks", []))
        if not chunks:
            return []

        ranked = rank_by_similarity(
            query_embedding, [c["embedding"] for c in chunks], limit
        )
        results: List[SearchResult] = []
        for position, similarity in ranked:
            chunk = chunks[position]
            results.append(
                SearchResult(
                    content=chunk["content"],
                    document_id=chunk["document_id"],
                    similarity=similarity,
                    metadata=dict(chunk.get("metadata") or {}),
                    chunk_id=chunk["id"],
                )
            )
        return results

    def clear(self, workflow_id: Optional[str] = None) -> None:
        targets = [workflow_id] if workflow_id else self._known_workflows()
        for wf in targets:
            self._partition(wf).clear()
            self._flush(wf)

    def stats(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        targets = [workflow_id] if workflow_id else self._known_workflows()
        total_documents = 0
        total_vectors = 0
        for wf in targets:
            partition = self._partition(wf)
            total_documents += len(partition)
            total_vectors += sum(len(d.get("chunks", [])) for d in partition.values())
        return {
            "backend": self.name,
            "workflow_id": workflow_id,
            "total_documents": total_documents,
            "total_vectors": total_vectors,
        }

    def delete_workflow(self, workflow_id: str) -> None:
        with self._guard:
            self._partitions.pop(workflow_id, None)


class InMemoryBackend(_DocumentMapBackend):
    """Last-resort tier: nothing survives a restart."""

    name = "memory"

    def initialize(self) -> None:
        logger.info("In-memory vector backend ready")


class WorkflowJsonBackend(_DocumentMapBackend):
    """
    One ``vectors.json`` per workflow under ``<base_dir>/<workflow_id>/``.
    """

    name = "workflow"

    def __init__(self, base_dir: Path):
        super().__init__()
        self.base_dir = Path(base_dir)

    def _path_for(self, workflow_id: str) -> Path:
        return self.base_dir / workflow_id / VECTORS_FILE_NAME

    def initialize(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        marker = self.base_dir / ".write_check"
        marker.write_text("ok", encoding="utf-8")
        marker.unlink()
        logger.info("Workflow-partitioned vector backend ready at %s", self.base_dir)

    def _load_partition(self, workflow_id: str) -> Dict[str, Dict[str, Any]]:
        path = self._path_for(workflow_id)
        data = _read_json(path)
        if not data:
            return {}
        documents = dict(data.get("documents") or {})
        logger.info(
            "Loaded %d vectorized document(s) for workflow %s from %s",
            len(documents),
            workflow_id,
            path,
        )
        return documents

    def _flush(self, workflow_id: str) -> None:
        partition = self._partitions.get(workflow_id, {})
        _write_json_atomic(
            self._path_for(workflow_id),
            {
                "workflow_id": workflow_id,
                "documents": partition,
                "last_updated": _now_iso(),
                "total_documents": len(partition),
                "total_chunks": sum(len(d.get("chunks", [])) for d in partition.values()),
            },
        )

    def _known_workflows(self) -> List[str]:
        on_disk = [
            p.parent.name for p in self.base_dir.glob(f"*/{VECTORS_FILE_NAME}")
        ]
        return sorted(set(on_disk) | set(self._partitions.keys()))

    def delete_workflow(self, workflow_id: str) -> None:
        super().delete_workflow(workflow_id)
        folder = self.base_dir / workflow_id
        if folder.exists():
            shutil.rmtree(folder)
            logger.info("Removed vector partition folder %s", folder)


class JsonFileBackend(_DocumentMapBackend):
    """
    Single ``vectors.json`` holding every workflow partition.

    Each write rewrites the whole file, so writes from different workflows
    are serialised on one lock.
    """

    name = "json"

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = _read_json(self.path) or {}
        with self._guard:
            self._partitions = {
                wf: dict(part.get("documents") or {})
                for wf, part in (data.get("workflows") or {}).items()
            }
            self._write_all()
        logger.info(
            "Single-file vector backend ready at %s (%d workflow partition(s))",
            self.path,
            len(self._partitions),
        )

    def _write_all(self) -> None:
        _write_json_atomic(
            self.path,
            {
                "workflows": {
                    wf: {"documents": docs} for wf, docs in self._partitions.items()
                },
                "last_updated": _now_iso(),
            },
        )

    def _flush(self, workflow_id: str) -> None:
        with self._guard:
            self._write_all()

    def add_document(self, workflow_id, document_id, chunks, metadata) -> None:
        with self._guard:
            super().add_document(workflow_id, document_id, chunks, metadata)

    def clear(self, workflow_id: Optional[str] = None) -> None:
        with self._guard:
            super().clear(workflow_id)

    def delete_workflow(self, workflow_id: str) -> None:
        with self._guard:
            super().delete_workflow(workflow_id)
            self._write_all()


_MAX_COLLECTION_NAME = 63


def _collection_name_for_workflow(workflow_id: str) -> str:
    """
    Chroma collection name for a workflow.

    Names are capped at 63 characters; longer ids keep a prefix plus a digest
    of the full id so that two ids never share a collection.
    """
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", workflow_id)
    name = f"workflow_{safe}"
    if len(name) <= _MAX_COLLECTION_NAME:
        return name
    digest = hashlib.sha1(workflow_id.encode("utf-8")).hexdigest()[:12]
    return f"workflow_{safe[:40]}_{digest}"


def _flatten_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    # Chroma only stores scalar metadata values.
    flat: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        else:
            flat[key] = json.dumps(value, ensure_ascii=False, default=str)
    return flat


class ChromaBackend(VectorBackend):
    """
    External Chroma server, one cosine-space collection per workflow.
    """

    name = "chroma"

    def __init__(self, host: str, port: int, client: Optional[ClientAPI] = None):
        self.host = host
        self.port = port
        self._client = client

    def initialize(self) -> None:
        if self._client is None:
            logger.info("Connecting to Chroma server at %s:%s", self.host, self.port)
            self._client = chromadb.HttpClient(
                host=self.host,
                port=self.port,
                settings=ChromaSettings(anonymized_telemetry=False),
            )
        self._client.heartbeat()
        logger.info("Chroma vector backend ready")

    def _get_collection(self, workflow_id: str) -> Any:
        name = _collection_name_for_workflow(workflow_id)
        return self._client.get_or_create_collection(
            name=name, metadata={"hnsw:space": "cosine"}
        )

    def has_document(self, workflow_id: str, document_id: str) -> bool:
        res = self._get_collection(workflow_id).get(
            where={"document_id": document_id}, limit=1
        )
        return bool(res.get("ids"))

    def add_document(self, workflow_id, document_id, chunks, metadata) -> None:
        if not chunks:
            logger.info("Document %s produced no chunks; nothing to add to Chroma", document_id)
            return
        collection = self._get_collection(workflow_id)
        collection.add(
            ids=[c.id for c in chunks],
            documents=[c.content for c in chunks],
            embeddings=[c.embedding for c in chunks],
            metadatas=[_flatten_metadata(c.metadata) for c in chunks],
        )

    def search(self, workflow_id, query_embedding, limit) -> List[SearchResult]:
        collection = self._get_collection(workflow_id)
        count = collection.count()
        if count == 0 or limit <= 0:
            return []
        res = collection.query(
            query_embeddings=[query_embedding],
            n_results=min(limit, count),
            include=["documents", "metadatas", "distances"],
        )
        # Chroma returns lists per query; we only send one query
        ids = res.get("ids", [[]])[0]
        docs = res.get("documents", [[]])[0]
        metas = res.get("metadatas", [[]])[0]
        distances = res.get("distances", [[]])[0]

        results = []
        for chunk_id, content, meta, distance in zip(ids, docs, metas, distances):
            meta = dict(meta or {})
            results.append(
                SearchResult(
                    content=content,
                    document_id=str(meta.get("document_id", "")),
                    similarity=1.0 - float(distance),
                    metadata=meta,
                    chunk_id=chunk_id,
                )
            )
        results.sort(key=lambda r: -r.similarity)
        return results

    def _workflow_collections(self) -> List[str]:
        names = []
        for item in self._client.list_collections():
            name = getattr(item, "name", item)
            if str(name).startswith("workflow_"):
                names.append(str(name))
        return names

    def clear(self, workflow_id: Optional[str] = None) -> None:
        if workflow_id:
            names = [_collection_name_for_workflow(workflow_id)]
        else:
            names = self._workflow_collections()
        existing = set(self._workflow_collections())
        for name in names:
            if name in existing:
                self._client.delete_collection(name=name)
                logger.info("Deleted Chroma collection '%s'", name)

    def stats(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        if workflow_id:
            names = [_collection_name_for_workflow(workflow_id)]
        else:
            names = self._workflow_collections()
        total_vectors = 0
        document_ids = set()
        for name in names:
            collection = self._client.get_or_create_collection(
                name=name, metadata={"hnsw:space": "cosine"}
            )
            total_vectors += collection.count()
            res = collection.get(include=["metadatas"])
            for meta in res.get("metadatas") or []:
                if meta and meta.get("document_id"):
                    document_ids.add((name, meta["document_id"]))
        return {
            "backend": self.name,
            "workflow_id": workflow_id,
            "total_documents": len(document_ids),
            "total_vectors": total_vectors,
        }


__all__ = [
    "VectorBackend",
    "InMemoryBackend",
    "WorkflowJsonBackend",
    "JsonFileBackend",
    "ChromaBackend",
]
