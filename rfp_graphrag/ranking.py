from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .models import GraphCandidate, HybridResult, SearchResult


CONTENT_KEY_PREFIX = 50


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank_by_similarity(
    query_embedding: Sequence[float],
    embeddings: Sequence[Sequence[float]],
    limit: int,
) -> List[Tuple[int, float]]:
    """
    Exhaustive cosine scan.

    Returns ``(position, similarity)`` pairs sorted by similarity descending;
    equal similarities keep their insertion order.
    """
    if not embeddings or limit <= 0:
        return []
    matrix = np.asarray(embeddings, dtype=np.float64)
    query = np.asarray(query_embedding, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    norms[norms == 0] = np.inf
    sims = matrix @ query / norms
    order = np.argsort(-sims, kind="stable")[:limit]
    return [(int(i), float(sims[i])) for i in order]


def result_key(
    chunk_id: Optional[str] = None,
    generic_id: Optional[str] = None,
    content: Optional[str] = None,
) -> str:
    """Merge key: chunk id, else generic id, else the first 50 content chars."""
    if chunk_id:
        return str(chunk_id)
    if generic_id:
        return str(generic_id)
    return (content or "")[:CONTENT_KEY_PREFIX]


def _vector_key(result: SearchResult) -> str:
    return result_key(
        result.chunk_id or result.metadata.get("chunk_id"),
        result.metadata.get("id"),
        result.content,
    )


def fuse_results(
    vector_results: Iterable[SearchResult],
    graph_results: Iterable[GraphCandidate],
    vector_weight: float = 0.6,
    graph_weight: float = 0.4,
    limit: int = 10,
) -> List[HybridResult]:
    """
    Merge vector and graph candidates into one ranked list.

    A key present on both sides is tagged ``hybrid`` and scored
    ``vector_score * vector_weight + graph_score * graph_weight``; a single
    side keeps the missing component at zero.
    """
    merged: Dict[str, HybridResult] = {}

    for item in vector_results:
        key = _vector_key(item)
        if key in merged:
            continue
        merged[key] = HybridResult(
            key=key,
            content=item.content,
            source="vector",
            vector_score=float(item.similarity),
            document_id=item.document_id,
            chunk_id=item.chunk_id or item.metadata.get("chunk_id"),
            metadata=dict(item.metadata),
        )

    for candidate in graph_results:
        key = result_key(candidate.chunk_id, None, candidate.content)
        existing = merged.get(key)
        if existing is None:
            merged[key] = HybridResult(
                key=key,
                content=candidate.content,
                source="graph",
                graph_score=float(candidate.graph_score),
                document_id=candidate.document_id,
                chunk_id=candidate.chunk_id,
                entities=list(candidate.entities),
                related_entities=list(candidate.related_entities),
            )
            continue
        if existing.source == "graph":
            continue
        existing.source = "hybrid"
        existing.graph_score = float(candidate.graph_score)
        existing.entities = list(candidate.entities)
        existing.related_entities = list(candidate.related_entities)

    for result in merged.values():
        result.score = result.vector_score * vector_weight + result.graph_score * graph_weight

    ranked = sorted(merged.values(), key=lambda r: -r.score)
    return ranked[:limit]


__all__ = [
    "cosine_similarity",
    "rank_by_similarity",
    "result_key",
    "fuse_results",
]
