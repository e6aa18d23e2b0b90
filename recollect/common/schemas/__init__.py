"""
Recollect Knowledge Schemas

Chunks, entity index, intents and extracted keywords.
"""

from .knowledge import (
    Chunk,
    EntityIndex,
    ExtractedKeywords,
    Intent,
    MatchSource,
    DEFAULT_INTENT,
    KEYWORD_CATEGORIES,
    dedupe_casefold,
    estimate_tokens,
)

__all__ = [
    "Chunk",
    "EntityIndex",
    "ExtractedKeywords",
    "Intent",
    "MatchSource",
    "DEFAULT_INTENT",
    "KEYWORD_CATEGORIES",
    "dedupe_casefold",
    "estimate_tokens",
]
