"""
Fallback Extractor

Deterministic regex-based intent and keyword extraction.
Used whenever the classification service is unavailable, times out,
or returns output that fails validation.

Intent priority is a fixed tie-break, applied in this order:
    relational words present      -> RELATIONAL
    emotional words present        -> EMOTIONAL
    what/who/where/when            -> FACTUAL
    how/why/"tell me about"        -> NARRATIVE
    otherwise                      -> CONCEPTUAL
A message that is both relational and factual ("What's my uncle's
profession?") therefore resolves to RELATIONAL. TASK is never produced here.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..common.schemas import ExtractedKeywords, Intent, DEFAULT_INTENT


@dataclass
class Classification:
    """Intent and keywords for one message, with provenance"""
    intent: Intent
    keywords: ExtractedKeywords = field(default_factory=ExtractedKeywords)
    used_fallback: bool = False
    fallback_reason: Optional[str] = None


# Capitalized words are entity candidates, minus interrogatives
ENTITY_PATTERN = re.compile(r"\b[A-Z][a-z]+\b")
INTERROGATIVES = frozenset({"What", "Who", "Where", "When", "Why", "How", "Which"})

TEMPORAL_PATTERNS = [
    re.compile(
        r"\b(today|yesterday|tomorrow|recently|lately|currently|now|earlier|before|after|when|during)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(january|february|march|april|june|july|august|september|october|november|december)\b",
        re.IGNORECASE,
    ),
    # "may" only where it reads as a month, not the modal verb
    re.compile(r"\b(?:in|since|until|by|during|last|next|early|late|mid)[\s-]+(may)\b", re.IGNORECASE),
    re.compile(r"\b(may)\s+\d{1,2}(?:st|nd|rd|th)?\b", re.IGNORECASE),
    re.compile(r"\b\d{4}\b"),  # Years
]

RELATIONAL_PATTERN = re.compile(
    r"\b(partner|friend|family|uncle|aunt|parent|sibling|brother|sister|wife|husband|"
    r"boyfriend|girlfriend|cat|dog|pet|father|mother|dad|mom|son|daughter|child|children|"
    r"cousin|nephew|niece|grandparent|grandmother|grandfather)\b",
    re.IGNORECASE,
)

EMOTIONAL_PATTERN = re.compile(
    r"\b(happy|sad|angry|frustrated|excited|worried|anxious|stressed|calm|peaceful|"
    r"struggling|feeling|felt|feel)\b",
    re.IGNORECASE,
)

FACTUAL_PATTERN = re.compile(r"\b(what|who|where|when)\b", re.IGNORECASE)
NARRATIVE_PATTERN = re.compile(r"\b(how|why|tell me about)\b", re.IGNORECASE)

WORD_PATTERN = re.compile(r"[a-z]+(?:'[a-z]+)?")

MAX_CONCEPTS = 5
MIN_CONCEPT_LENGTH = 4

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "done", "will", "would",
    "should", "could", "may", "might", "must", "can", "to", "of", "in", "on", "at",
    "by", "for", "with", "about", "as", "from", "that", "this", "these", "those",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
    "my", "your", "his", "its", "our", "their", "mine", "yours", "myself",
    "what", "who", "where", "when", "why", "how", "which", "whose", "whom",
    "there", "here", "then", "than", "into", "over", "after", "also", "just",
    "very", "really", "some", "much", "many", "more", "most", "like", "tell",
    "know", "remember", "think", "please", "want", "need", "something",
    "anything", "everything", "while", "because", "until", "even", "again",
})


def _unique_lower(matches: List[str]) -> List[str]:
    return list(dict.fromkeys(m.lower() for m in matches))


class FallbackExtractor:
    """
    Regex-based intent + keyword extraction.

    Pure and synchronous: no I/O, never raises. Every keyword category is
    always a (possibly empty) list.
    """

    def extract(self, message: str) -> Classification:
        """
        Extract intent and keywords from a message.

        Args:
            message: Raw user message

        Returns:
            Classification with used_fallback=True
        """
        message = message or ""

        entities = self._extract_entities(message)
        temporal = self._extract_temporal(message)
        relational = _unique_lower(RELATIONAL_PATTERN.findall(message))
        emotional = _unique_lower(EMOTIONAL_PATTERN.findall(message))

        claimed = {e.lower() for e in entities}
        claimed.update(temporal)
        claimed.update(relational)
        claimed.update(emotional)
        concepts = self._extract_concepts(message, claimed)

        keywords = ExtractedKeywords(
            entities=entities,
            concepts=concepts,
            temporal=temporal,
            relational=relational,
            emotional=emotional,
        )

        return Classification(
            intent=self.detect_intent(message, keywords),
            keywords=keywords,
            used_fallback=True,
        )

    def detect_intent(self, message: str, keywords: ExtractedKeywords) -> Intent:
        """Apply the fixed priority order (see module docstring)."""
        if keywords.relational:
            return Intent.RELATIONAL
        if keywords.emotional:
            return Intent.EMOTIONAL
        if FACTUAL_PATTERN.search(message):
            return Intent.FACTUAL
        if NARRATIVE_PATTERN.search(message):
            return Intent.NARRATIVE
        return DEFAULT_INTENT

    def _extract_entities(self, message: str) -> List[str]:
        words = ENTITY_PATTERN.findall(message)
        return list(dict.fromkeys(w for w in words if w not in INTERROGATIVES))

    def _extract_temporal(self, message: str) -> List[str]:
        matches: List[str] = []
        for pattern in TEMPORAL_PATTERNS:
            matches.extend(pattern.findall(message))
        return _unique_lower(matches)

    def _extract_concepts(self, message: str, claimed: set) -> List[str]:
        text = message.lower().replace("’", "'")
        concepts: List[str] = []
        for token in WORD_PATTERN.findall(text):
            # "uncle's" -> "uncle", "what's" -> "what"
            word = token.split("'", 1)[0]
            if (
                len(word) < MIN_CONCEPT_LENGTH
                or word in STOP_WORDS
                or word in claimed
                or word in concepts
            ):
                continue
            concepts.append(word)
            if len(concepts) == MAX_CONCEPTS:
                break
        return concepts


_default_extractor = FallbackExtractor()


def extract_fallback(message: str) -> Classification:
    """Module-level convenience wrapper around FallbackExtractor.extract."""
    return _default_extractor.extract(message)
