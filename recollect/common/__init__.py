"""
Recollect Common Module

Shared infrastructure for the retriever pipeline and the semantic cache.
"""

from .config import RecollectConfig, load_config
from .embedding_service import EmbeddingService, cosine_similarity, batch_cosine_similarity
from .errors import (
    RecollectError,
    ClassificationError,
    EmbeddingError,
    StorageUnavailableError,
    CacheUnavailableError,
)
from .llm_client import LLMClient
from .storage import ChunkStore, InMemoryChunkStore, JsonDirectoryChunkStore, KnowledgeSnapshot

__all__ = [
    "RecollectConfig",
    "load_config",
    "EmbeddingService",
    "cosine_similarity",
    "batch_cosine_similarity",
    "RecollectError",
    "ClassificationError",
    "EmbeddingError",
    "StorageUnavailableError",
    "CacheUnavailableError",
    "LLMClient",
    "ChunkStore",
    "InMemoryChunkStore",
    "JsonDirectoryChunkStore",
    "KnowledgeSnapshot",
]
