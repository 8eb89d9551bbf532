"""Embedding capability: text to fixed-dimension unit vectors.

Two backends share the ``Embedder`` protocol: sentence-transformers for
production and a deterministic feature-hashing embedder for development and
tests.
"""
from __future__ import annotations

import hashlib
import logging
import re
from functools import lru_cache
from typing import TYPE_CHECKING, Iterable, Protocol

import numpy as np
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from be.config import EmbeddingBackend, EmbeddingSettings
from be.errors import EmbeddingError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

_WORD_PATTERN = re.compile(r"[a-z0-9]+")


class Embedder(Protocol):
    """Anything that turns texts into equal-length vectors."""

    @property
    def model_id(self) -> str:
        ...

    @property
    def dim(self) -> int:
        ...

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        ...


@lru_cache(maxsize=4)
def _load_model(model_name: str, device: str) -> SentenceTransformer:
    """Load and cache the sentence transformer model.

    Raises:
        EmbeddingError: If model loading fails
    """
    from sentence_transformers import SentenceTransformer

    try:
        logger.info(f"Loading embedding model: {model_name} on device: {device}")
        model = SentenceTransformer(model_name, device=device)
        logger.info(f"Model loaded successfully. Embedding dim: {model.get_sentence_embedding_dimension()}")
        return model
    except Exception as e:
        logger.error(f"Failed to load embedding model: {e}")
        raise EmbeddingError(f"Model loading failed: {e}") from e


def _with_blank_slots(texts: list[str], dim: int, encode) -> list[list[float]]:
    """Encode non-blank texts and put zero vectors at blank positions."""
    positions = [i for i, t in enumerate(texts) if t.strip()]
    result = [[0.0] * dim for _ in texts]
    if not positions:
        logger.warning("All texts are empty after filtering")
        return result
    vectors = encode([texts[i] for i in positions])
    for i, vector in zip(positions, vectors):
        result[i] = list(vector)
    return result


class SentenceTransformerEmbedder:
    """sentence-transformers backed embedder."""

    def __init__(self, config: EmbeddingSettings):
        self.config = config

    @property
    def model_id(self) -> str:
        return self.config.model_name

    @property
    def dim(self) -> int:
        return self.config.dim

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = _load_model(self.config.model_name, self.config.device)
        logger.debug(f"Encoding {len(texts)} texts")
        embeddings = model.encode(
            texts,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize_embeddings,
        )
        return embeddings.tolist()

    @retry(
        retry=retry_if_exception_type(EmbeddingError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def embed_texts(self, texts: list[str] | Iterable[str]) -> list[list[float]]:
        """Compute embeddings for a batch of texts with retry logic.

        Args:
            texts: List or iterable of text strings to embed

        Returns:
            List of embedding vectors, one per input text

        Raises:
            EmbeddingError: If embedding computation fails after retries
            ValueError: If texts contains non-string items
        """
        text_list = list(texts)
        if not text_list:
            logger.warning("Empty text list provided to embed_texts")
            return []
        if not all(isinstance(t, str) for t in text_list):
            raise ValueError("All items in texts must be strings")

        try:
            result = _with_blank_slots(text_list, self.dim, self._encode)
            logger.debug(f"Successfully encoded {len(result)} embeddings")
            return result
        except EmbeddingError:
            raise
        except Exception as e:
            logger.error(f"Embedding computation failed: {e}")
            raise EmbeddingError(f"Failed to compute embeddings: {e}") from e

    def get_model_info(self) -> dict[str, str | int]:
        """Information about the loaded model."""
        model = _load_model(self.config.model_name, self.config.device)
        return {
            "model_name": self.config.model_name,
            "dimension": self.config.dim,
            "device": str(model.device),
            "max_seq_length": model.max_seq_length,
        }


class HashingEmbedder:
    """Deterministic signed feature hashing of word tokens.

    Texts that share words get positive cosine similarity, so retrieval keeps
    meaningful ordering without downloading a model.
    """

    def __init__(self, dim: int = 384):
        self._dim = dim

    @property
    def model_id(self) -> str:
        return f"hashing-{self._dim}"

    @property
    def dim(self) -> int:
        return self._dim

    def _vector(self, text: str) -> list[float]:
        vector = np.zeros(self._dim, dtype=np.float64)
        for token in _WORD_PATTERN.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    def embed_texts(self, texts: list[str] | Iterable[str]) -> list[list[float]]:
        text_list = list(texts)
        if not all(isinstance(t, str) for t in text_list):
            raise ValueError("All items in texts must be strings")
        return _with_blank_slots(text_list, self._dim, lambda batch: [self._vector(t) for t in batch])


def create_embedder(config: EmbeddingSettings) -> Embedder:
    """Build the configured embedding backend."""
    if config.backend == EmbeddingBackend.HASHING:
        logger.info(f"Using hashing embedder (dim={config.dim})")
        return HashingEmbedder(config.dim)
    return SentenceTransformerEmbedder(config)
