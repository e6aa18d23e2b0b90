"""
Retriever - Personal Context Retrieval

Key Components:
- FallbackExtractor: Regex intent + keyword extraction
- ClassificationAdapter: LLM intent + keyword extraction with fallback
- HybridSearcher: Exact, entity and semantic search over chunks
- Ranker: Intent-weighted merge of search results
- ContextAssembler: Token-budgeted chunk selection
- PersonalizationEngine: The full pipeline behind the semantic cache

Pipeline:
1. Check the semantic cache (exact / fuzzy)
2. Classify, embed and load the user's knowledge concurrently
3. Check the semantic cache (embedding similarity)
4. Search, rank, look up entity facts, assemble within budget
5. Cache the rendered context
"""

from .fallback_extractor import FallbackExtractor, Classification, extract_fallback
from .classifier import ClassificationAdapter, ClassificationOutcome, parse_classification
from .entity_index import lookup_entity_facts, format_entity_facts
from .searcher import HybridSearcher, ScoredChunk, SearchResults
from .ranker import Ranker, INTENT_WEIGHTS
from .assembler import ContextAssembler, AssembledContext, render_context
from .engine import PersonalizationEngine, QueryResult, DebugInfo, Credentials

__all__ = [
    "FallbackExtractor",
    "Classification",
    "extract_fallback",
    "ClassificationAdapter",
    "ClassificationOutcome",
    "parse_classification",
    "lookup_entity_facts",
    "format_entity_facts",
    "HybridSearcher",
    "ScoredChunk",
    "SearchResults",
    "Ranker",
    "INTENT_WEIGHTS",
    "ContextAssembler",
    "AssembledContext",
    "render_context",
    "PersonalizationEngine",
    "QueryResult",
    "DebugInfo",
    "Credentials",
]
