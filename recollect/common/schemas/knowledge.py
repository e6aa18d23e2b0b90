"""
Personal Knowledge Schemas

Core principle: every retrievable unit is a Chunk of plain text.
Entity facts live in a separate, precomputed index keyed by entity name.
"""

import math
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Enums
# ============================================================================

class Intent(str, Enum):
    """Retrieval strategy category for a user query"""
    FACTUAL = "FACTUAL"          # "What is my sister's name?"
    NARRATIVE = "NARRATIVE"      # "How did we end up moving to Lyon?"
    CONCEPTUAL = "CONCEPTUAL"    # Ideas, theories, explanations (default)
    RELATIONAL = "RELATIONAL"    # People, pets, relationships
    EMOTIONAL = "EMOTIONAL"      # Feelings, seeking support
    TASK = "TASK"                # Help with something specific

    @classmethod
    def parse(cls, value: object) -> Optional["Intent"]:
        """Map a raw value to an Intent, or None if it is not one of the six."""
        if isinstance(value, Intent):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


DEFAULT_INTENT = Intent.CONCEPTUAL


class MatchSource(str, Enum):
    """Search strategy that produced a candidate"""
    EXACT = "exact"
    SEMANTIC = "semantic"
    ENTITY = "entity"


# ============================================================================
# Models
# ============================================================================

KEYWORD_CATEGORIES = ("entities", "concepts", "temporal", "relational", "emotional")


def dedupe_casefold(values: List[str]) -> List[str]:
    """Drop blanks and case-insensitive duplicates, keeping the first spelling."""
    seen = set()
    unique = []
    for value in values:
        cleaned = value.strip()
        key = cleaned.casefold()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        unique.append(cleaned)
    return unique


class ExtractedKeywords(BaseModel):
    """Search terms extracted from a user message, by category"""
    entities: List[str] = Field(default_factory=list, description="Proper nouns, case preserved")
    concepts: List[str] = Field(default_factory=list)
    temporal: List[str] = Field(default_factory=list)
    relational: List[str] = Field(default_factory=list)
    emotional: List[str] = Field(default_factory=list)

    @field_validator(*KEYWORD_CATEGORIES, mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value

    @field_validator(*KEYWORD_CATEGORIES)
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return dedupe_casefold(value)

    def all_terms(self) -> List[str]:
        terms: List[str] = []
        for category in KEYWORD_CATEGORIES:
            terms.extend(getattr(self, category))
        return terms

    @property
    def is_empty(self) -> bool:
        return not self.all_terms()


class Chunk(BaseModel):
    """Immutable unit of personal knowledge"""
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    sequence_index: Optional[int] = None
    embedding: Optional[List[float]] = None
    tags: FrozenSet[str] = Field(default_factory=frozenset)

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.text)

    @property
    def entity_tags(self) -> List[str]:
        """Entity names from `entity:<name>` tags, lower-cased."""
        names = []
        for tag in self.tags:
            if tag.lower().startswith("entity:"):
                name = tag.split(":", 1)[1].strip().lower()
                if name:
                    names.append(name)
        return sorted(names)


# Entity name -> known facts. Owned by the storage engine.
EntityIndex = Dict[str, List[str]]


def estimate_tokens(text: str) -> int:
    """Approximate model tokens as ceil(characters / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)
