"""Embedding providers.

Providers turn text into fixed-dimension float32 vectors. The vector engine only
depends on the :class:`EmbeddingProvider` protocol, so a model can be swapped
without touching encoding or similarity code.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Literal, Protocol, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\W+")


class EmbeddingProvider(Protocol):
    dimension: int

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return a ``(len(texts), dimension)`` float32 matrix."""
        ...


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    backend: Literal["torch", "onnx", "openvino"] = "torch"
    device: str | None = None


class SentenceTransformerEmbedder:
    """Thin wrapper around `SentenceTransformer` for document and query embeddings."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        try:
            self._model = self._load_model()
        except Exception as e:
            if self.config.backend != "torch":
                logger.warning(
                    "Failed to load model with backend '%s': %s. Falling back to PyTorch.",
                    self.config.backend,
                    e,
                )
                self.config.backend = "torch"
                self._model = self._load_model()
            else:
                raise
        self.dimension = int(self._model.get_sentence_embedding_dimension())
        logger.info(
            "Loaded embedding model %s (backend: %s, dimension: %d)",
            self.config.model_name,
            self.config.backend,
            self.dimension,
        )

    def _load_model(self) -> SentenceTransformer:
        return SentenceTransformer(
            self.config.model_name,
            backend=self.config.backend,
            device=self.config.device,
        )

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""
        sentences = list(texts)
        embeddings = self._model.encode(
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return embeddings.astype("float32", copy=False)


class HashingEmbedder:
    """Deterministic bag-of-words embedder based on feature hashing.

    Each token longer than two characters is hashed into one of ``dimension``
    buckets with a hash-derived sign, weighted by ``freq / sqrt(n_tokens)``, and
    the result is L2-normalised. The same text always yields the same vector.
    """

    def __init__(self, dimension: int = DEFAULT_DIMENSION) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension

    def _embed_one(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype="float32")
        words = [w for w in _TOKEN_RE.split(text.lower()) if len(w) > 2]
        if not words:
            return vector

        counts: dict[str, int] = {}
        for word in words:
            counts[word] = counts.get(word, 0) + 1

        scale = 1.0 / np.sqrt(len(words))
        for word, freq in counts.items():
            digest = hashlib.blake2b(word.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "little")
            index = value % self.dimension
            sign = 1.0 if (value >> 63) & 1 == 0 else -1.0
            vector[index] += sign * freq * scale

        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        rows = [self._embed_one(text) for text in texts]
        if not rows:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack(rows).astype("float32", copy=False)


def build_embedder(
    backend: str,
    *,
    model_name: str = DEFAULT_MODEL,
    dimension: int = DEFAULT_DIMENSION,
) -> EmbeddingProvider:
    """Create the embedding provider named by ``backend``."""
    if backend == "hashing":
        return HashingEmbedder(dimension)
    if backend == "sentence-transformers":
        return SentenceTransformerEmbedder(EmbeddingConfig(model_name=model_name))
    raise ValueError(f"Unknown embedding backend: {backend}")
