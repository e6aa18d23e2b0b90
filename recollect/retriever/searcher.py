"""
Hybrid Searcher

Runs three independent match strategies over a user's chunks:
- exact:    chunk text contains the raw query (case-insensitive)
- entity:   chunk is tagged `entity:<name>` and/or mentions an extracted entity
- semantic: cosine similarity between query and chunk embeddings

The strategies do not see each other's results. A chunk may legitimately
appear in more than one list; deduplication happens in the Ranker.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..common.config import SearchConfig
from ..common.embedding_service import batch_cosine_similarity
from ..common.schemas import Chunk, EntityIndex, ExtractedKeywords, Intent, MatchSource
from .entity_index import normalize_entity_name, resolve_entity

logger = logging.getLogger("recollect.retriever.searcher")


@dataclass
class ScoredChunk:
    """A chunk with a score from one strategy"""
    chunk: Chunk
    score: float
    source: MatchSource

    @property
    def chunk_id(self) -> str:
        return self.chunk.id


@dataclass
class SearchResults:
    """Unmerged candidate lists, one per strategy"""
    exact_matches: List[ScoredChunk] = field(default_factory=list)
    semantic_matches: List[ScoredChunk] = field(default_factory=list)
    entity_matches: List[ScoredChunk] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.exact_matches) + len(self.semantic_matches) + len(self.entity_matches)

    def counts(self) -> Dict[str, int]:
        return {
            "exact_matches": len(self.exact_matches),
            "semantic_matches": len(self.semantic_matches),
            "entity_matches": len(self.entity_matches),
        }


def _by_score(matches: List[ScoredChunk]) -> List[ScoredChunk]:
    return sorted(matches, key=lambda m: (-m.score, m.chunk.id))


class HybridSearcher:
    """
    Exact / entity / semantic search over an in-memory chunk list.

    Scores:
    - exact match: 10
    - entity: +5 per matched `entity:<name>` tag, +3 per literal
      (case-sensitive) occurrence of the entity string in the text
    - semantic: the cosine similarity itself, when >= threshold
    """

    def __init__(self, config: Optional[SearchConfig] = None):
        self._config = config or SearchConfig()

    def search(
        self,
        query: str,
        keywords: ExtractedKeywords,
        intent: Intent,
        embedding: Optional[List[float]],
        chunks: List[Chunk],
        entity_index: Optional[EntityIndex] = None,
    ) -> SearchResults:
        """
        Search chunks with all applicable strategies.

        Args:
            query: Raw user message
            keywords: Extracted keywords (entities drive the entity strategy)
            intent: Classified intent (for logging; weighting is the Ranker's job)
            embedding: Query embedding, or None to skip semantic search
            chunks: Every chunk in the user's scope
            entity_index: Entity index used to canonicalise entity names

        Returns:
            SearchResults with three independent lists
        """
        results = SearchResults()
        if not chunks:
            return results

        results.exact_matches = self._exact_search(query, chunks)
        results.entity_matches = self._entity_search(keywords.entities, chunks, entity_index or {})
        if embedding:
            results.semantic_matches = self._semantic_search(embedding, chunks)

        logger.info(
            "Search (%s) over %d chunks: exact=%d entity=%d semantic=%d",
            intent.value,
            len(chunks),
            len(results.exact_matches),
            len(results.entity_matches),
            len(results.semantic_matches),
        )
        return results

    def _exact_search(self, query: str, chunks: List[Chunk]) -> List[ScoredChunk]:
        needle = (query or "").strip().lower()
        if not needle:
            return []

        matches = [
            ScoredChunk(chunk=chunk, score=self._config.exact_score, source=MatchSource.EXACT)
            for chunk in chunks
            if needle in chunk.text.lower()
        ]
        return _by_score(matches)

    def _entity_search(
        self,
        entities: List[str],
        chunks: List[Chunk],
        entity_index: EntityIndex,
    ) -> List[ScoredChunk]:
        if not entities:
            return []

        # Each extracted entity matches tags under its own name and, when it
        # resolves in the index, under the index's spelling too
        targets = []
        for entity in entities:
            names = {normalize_entity_name(entity)}
            canonical = resolve_entity(entity, entity_index)
            if canonical:
                names.add(normalize_entity_name(canonical))
            targets.append((entity, names))

        matches = []
        for chunk in chunks:
            chunk_tags = set(chunk.entity_tags)
            score = 0.0
            matched = []
            for entity, names in targets:
                tag_hits = len(names & chunk_tags)
                if tag_hits:
                    score += self._config.entity_tag_score * tag_hits
                    matched.append(f"tag:{entity}")
                mentions = chunk.text.count(entity)
                if mentions:
                    score += self._config.entity_mention_score * mentions
                    matched.append(f"mention:{entity}x{mentions}")
            if score > 0:
                logger.debug("Entity match %s (score: %.1f, matched: %s)", chunk.id, score, ", ".join(matched))
                matches.append(ScoredChunk(chunk=chunk, score=score, source=MatchSource.ENTITY))
        return _by_score(matches)

    def _semantic_search(self, embedding: List[float], chunks: List[Chunk]) -> List[ScoredChunk]:
        dim = len(embedding)
        candidates = [c for c in chunks if c.embedding and len(c.embedding) == dim]
        skipped = sum(1 for c in chunks if c.embedding and len(c.embedding) != dim)
        if skipped:
            logger.debug("Skipped %d chunks with embedding dimension != %d", skipped, dim)
        if not candidates:
            return []

        similarities = batch_cosine_similarity(embedding, [c.embedding for c in candidates])
        threshold = self._config.semantic_threshold
        matches = [
            ScoredChunk(chunk=chunk, score=float(sim), source=MatchSource.SEMANTIC)
            for chunk, sim in zip(candidates, similarities)
            if sim >= threshold
        ]
        return _by_score(matches)
