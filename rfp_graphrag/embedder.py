import logging
import threading
from typing import Any, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from .exceptions import EmbeddingDimensionError


logger = logging.getLogger(__name__)


class Embedder:
    """
    Process-wide embedding model wrapper.

    The underlying SentenceTransformer is loaded lazily on first use and is
    read-only afterwards, so one instance can be shared by every workflow.
    All vectors are L2-normalised and must have exactly ``dimension``
    components; anything else raises ``EmbeddingDimensionError``.
    """

    def __init__(
        self,
        model_name: str,
        device: str = "cpu",
        dimension: int = 384,
        model: Optional[Any] = None,
    ):
        self.model_name = model_name
        self.device = device
        self.dimension = dimension
        self._model = model
        self._lock = threading.Lock()

    def _get_model(self) -> Any:
        if self._model is None:
            with self._lock:
                if self._model is None:
                    logger.info(
                        "Loading SentenceTransformer '%s' on device=%s",
                        self.model_name,
                        self.device,
                    )
                    self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def encode_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Encode a list of texts into L2-normalised embedding vectors.
        """
        if not texts:
            return []
        model = self._get_model()
        embeddings = model.encode(
            list(texts),
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        matrix = np.atleast_2d(np.asarray(embeddings, dtype=np.float32))
        if matrix.shape[1] != self.dimension:
            raise EmbeddingDimensionError(self.dimension, int(matrix.shape[1]))

        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return (matrix / norms).tolist()

    def embed(self, text: str) -> List[float]:
        return self.encode_texts([text])[0]

    def verify_dimension(self) -> None:
        """Encode a sample string so a misconfigured model fails at startup."""
        vector = self.embed("dimension check")
        logger.info(
            "Embedder '%s' verified (dimension=%d)", self.model_name, len(vector)
        )


__all__ = ["Embedder"]
