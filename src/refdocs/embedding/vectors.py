"""Vector similarity engine: packing, cosine similarity and nearest neighbours."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

import numpy as np

from refdocs.errors import DimensionMismatchError

if TYPE_CHECKING:
    from refdocs.embedding.encoder import EmbeddingProvider
    from refdocs.index.storage import DocumentStore

# Little-endian float32, 4 bytes per component.
VECTOR_DTYPE = np.dtype("<f4")


def encode_vector(vector: Sequence[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    if len(blob) % VECTOR_DTYPE.itemsize:
        raise ValueError(f"Embedding blob length {len(blob)} is not a multiple of 4")
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 if either is all zeros."""
    left = np.asarray(a, dtype="float64")
    right = np.asarray(b, dtype="float64")
    if left.shape != right.shape:
        raise DimensionMismatchError(left.shape[0], right.shape[0])
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


class VectorEngine:
    """Embeds text and answers similarity queries against the document store."""

    def __init__(self, provider: EmbeddingProvider, store: Optional["DocumentStore"] = None) -> None:
        self.provider = provider
        self.store = store

    @property
    def dimension(self) -> int:
        return int(self.provider.dimension)

    def _check(self, vector: np.ndarray) -> np.ndarray:
        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, int(vector.shape[-1]))
        return vector

    def embed(self, text: str) -> np.ndarray:
        return self._check(np.asarray(self.provider.embed([text])[0], dtype="float32"))

    def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype="float32")
        matrix = np.asarray(self.provider.embed(list(texts)), dtype="float32")
        if matrix.shape != (len(texts), self.dimension):
            raise DimensionMismatchError(self.dimension, int(matrix.shape[-1]))
        return matrix

    def similarity(self, a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
        return cosine_similarity(a, b)

    def encode(self, vector: Sequence[float] | np.ndarray) -> bytes:
        return encode_vector(self._check(np.asarray(vector, dtype="float32")))

    def decode(self, blob: bytes) -> np.ndarray:
        return self._check(decode_vector(blob))

    def nearest(
        self,
        vector: Sequence[float] | np.ndarray,
        k: int = 10,
        *,
        doc_type: Optional[str] = None,
        package: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """Return up to ``k`` ``(document_key, similarity)`` pairs, most similar first."""
        if self.store is None:
            raise RuntimeError("VectorEngine has no document store attached")
        blob = self.encode(vector)
        return self.store.nearest(blob, k, doc_type=doc_type, package=package)
