"""
Embedding Service

Generates query embeddings through the OpenAI embeddings API.
A missing API key is a valid configuration: the service reports itself
unavailable and callers skip semantic search and Tier 3 cache matching.
"""

import asyncio
import logging
from typing import List, Optional

import numpy as np

from .config import EmbeddingConfig
from .errors import EmbeddingError

logger = logging.getLogger("recollect.common.embedding_service")


class EmbeddingService:
    """Async embedding client. One instance per credential set."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        timeout: float = 5.0,
    ):
        """
        Initialize embedding service.

        Args:
            api_key: OpenAI API key. None/empty disables embeddings.
            model: Embedding model name
            timeout: Per-request timeout in seconds
        """
        self._model = model
        self._timeout = timeout
        self._client = None

        if not api_key:
            logger.info("Embedding API key not provided, embeddings disabled")
            return

        try:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=api_key)
        except ImportError:
            logger.warning("openai package not installed, embeddings disabled")
        except Exception as e:
            logger.warning("Failed to initialize embedding client: %s", e)

    @classmethod
    def from_config(cls, config: EmbeddingConfig, api_key: Optional[str] = None) -> "EmbeddingService":
        return cls(
            api_key=api_key or config.api_key or None,
            model=config.model,
            timeout=config.timeout,
        )

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._client is not None

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> List[float]:
        """
        Generate an embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector

        Raises:
            EmbeddingError: service unavailable, empty text, timeout or
                transport failure
        """
        if not self.is_available:
            raise EmbeddingError("Embedding service not available")
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        try:
            response = await asyncio.wait_for(
                self._client.embeddings.create(model=self._model, input=text),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingError(f"Embedding request timed out after {self._timeout}s") from e
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if not response.data:
            raise EmbeddingError("Embedding response contained no vectors")
        return list(response.data[0].embedding)


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Vectors are normalized here, so stored embeddings need not be unit length.

    Returns:
        Cosine similarity clamped to 0.0..1.0

    Raises:
        ValueError: dimension mismatch
    """
    v1 = np.asarray(vec1, dtype=float)
    v2 = np.asarray(vec2, dtype=float)

    if v1.shape != v2.shape:
        raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

    norm = float(np.linalg.norm(v1) * np.linalg.norm(v2))
    if norm == 0.0:
        return 0.0

    similarity = float(np.dot(v1, v2) / norm)

    # Clamp to valid range (numerical precision issues)
    return max(0.0, min(1.0, similarity))


def batch_cosine_similarity(
    query_vec: List[float],
    vectors: List[List[float]]
) -> List[float]:
    """
    Compute cosine similarity between a query and multiple vectors.

    All vectors must share the query's dimension.

    Returns:
        List of similarity scores, same order as ``vectors``
    """
    if not vectors:
        return []

    query = np.asarray(query_vec, dtype=float)
    matrix = np.asarray(vectors, dtype=float)

    if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
        raise ValueError(f"Vector dimension mismatch: {matrix.shape} vs {query.shape}")

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(norms > 0, dots / norms, 0.0)

    # Clamp to valid range
    similarities = np.clip(similarities, 0.0, 1.0)

    return similarities.tolist()
