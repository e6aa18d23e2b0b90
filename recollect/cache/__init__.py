"""
Recollect Cache Module

Three-tier semantic cache in front of the retrieval pipeline.
"""

from .semantic_cache import (
    SemanticCache,
    CacheEntry,
    CacheLookup,
    normalize_query,
    fuzzy_key,
)

__all__ = [
    "SemanticCache",
    "CacheEntry",
    "CacheLookup",
    "normalize_query",
    "fuzzy_key",
]
