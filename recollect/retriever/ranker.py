"""
Ranker

Merges the searcher's three candidate lists into one ranked list.
Scores are weighted per intent; a chunk found by several strategies keeps
only its highest-priority occurrence (exact > entity > semantic).
"""

import logging
from typing import Dict, List, NamedTuple, Optional

from ..common.schemas import Intent, MatchSource
from .searcher import ScoredChunk, SearchResults

logger = logging.getLogger("recollect.retriever.ranker")


class IntentWeights(NamedTuple):
    exact: float
    entity: float
    semantic: float

    def for_source(self, source: MatchSource) -> float:
        return getattr(self, source.value)


INTENT_WEIGHTS: Dict[Intent, IntentWeights] = {
    Intent.FACTUAL: IntentWeights(exact=1.5, entity=1.3, semantic=0.8),
    Intent.NARRATIVE: IntentWeights(exact=1.2, entity=1.0, semantic=1.2),
    Intent.CONCEPTUAL: IntentWeights(exact=1.0, entity=0.9, semantic=1.4),
    Intent.RELATIONAL: IntentWeights(exact=1.1, entity=1.5, semantic=1.0),
    Intent.EMOTIONAL: IntentWeights(exact=1.0, entity=1.1, semantic=1.3),
    Intent.TASK: IntentWeights(exact=1.0, entity=0.8, semantic=1.0),
}


class Ranker:
    """Intent-weighted, deterministic merge of search results."""

    def __init__(self, weights: Optional[Dict[Intent, IntentWeights]] = None):
        self._weights = weights or INTENT_WEIGHTS

    def weights_for(self, intent: Intent) -> IntentWeights:
        return self._weights.get(intent, self._weights[Intent.CONCEPTUAL])

    def rank(self, results: SearchResults, intent: Intent) -> List[ScoredChunk]:
        """
        Rank candidates for an intent.

        Args:
            results: Unmerged candidate lists from the HybridSearcher
            intent: Classified query intent

        Returns:
            One entry per chunk id, sorted by weighted score descending,
            ties broken by chunk id ascending
        """
        weights = self.weights_for(intent)
        ranked: Dict[str, ScoredChunk] = {}

        # Priority order: the first occurrence of a chunk id wins
        for matches in (results.exact_matches, results.entity_matches, results.semantic_matches):
            for match in matches:
                if match.chunk.id in ranked:
                    continue
                ranked[match.chunk.id] = ScoredChunk(
                    chunk=match.chunk,
                    score=match.score * weights.for_source(match.source),
                    source=match.source,
                )

        ordered = sorted(ranked.values(), key=lambda m: (-m.score, m.chunk.id))
        logger.debug(
            "Ranked %d candidates into %d chunks (intent=%s)",
            results.total,
            len(ordered),
            intent.value,
        )
        return ordered
