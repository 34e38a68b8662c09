"""Tests for the embedding wrapper."""

import numpy as np
import pytest

from rfp_graphrag.cache import NullCache
from rfp_graphrag.context import build_service_context
from rfp_graphrag.embedder import Embedder
from rfp_graphrag.exceptions import ConfigurationError, EmbeddingDimensionError
from rfp_graphrag.graph_store import NetworkXGraphStore


class _FixedModel:
    def __init__(self, rows):
        self.rows = rows

    def encode(self, texts, convert_to_numpy=True, normalize_embeddings=True):
        return np.asarray(self.rows[: len(texts)], dtype=np.float32)


def test_encode_texts_returns_unit_vectors(embedder):
    vectors = embedder.encode_texts(["Kubernetes hosting", "24/7 support"])

    assert len(vectors) == 2
    for vector in vectors:
        assert len(vector) == 384
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)


def test_encode_texts_renormalises_model_output():
    embedder = Embedder("fixed", dimension=2, model=_FixedModel([[3.0, 4.0]]))

    assert embedder.embed("anything") == pytest.approx([0.6, 0.8])


def test_encode_texts_empty_does_not_touch_model(embedder, hashing_model):
    assert embedder.encode_texts([]) == []
    assert hashing_model.calls == 0


def test_dimension_mismatch_raises(hashing_model):
    embedder = Embedder("wrong-size", dimension=128, model=hashing_model)

    with pytest.raises(EmbeddingDimensionError) as exc_info:
        embedder.verify_dimension()

    assert exc_info.value.expected == 128
    assert exc_info.value.actual == 384
    assert isinstance(exc_info.value, ConfigurationError)


def test_model_is_loaded_lazily_once(monkeypatch, hashing_model):
    loads = []

    def fake_sentence_transformer(name, device="cpu"):
        loads.append((name, device))
        return hashing_model

    monkeypatch.setattr("rfp_graphrag.embedder.SentenceTransformer", fake_sentence_transformer)
    embedder = Embedder("sentence-transformers/all-MiniLM-L6-v2", device="cpu")
    assert loads == []

    embedder.embed("first")
    embedder.embed("second")

    assert loads == [("sentence-transformers/all-MiniLM-L6-v2", "cpu")]


def test_service_context_fails_fast_on_wrong_dimension(settings, hashing_model, llm):
    """A misconfigured model aborts startup before any store is touched."""
    bad = Embedder("wrong-size", dimension=768, model=hashing_model)

    with pytest.raises(EmbeddingDimensionError):
        build_service_context(
            settings,
            embedder=bad,
            llm=llm,
            graph_stores=[NetworkXGraphStore()],
            cache=NullCache(),
        )
    assert not settings.vector_store_root.exists()
