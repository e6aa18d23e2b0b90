"""
Personalization Engine

Turns a user message into a block of personal context for the chat model.

Pipeline:
    cache (tier 1/2)
      -> concurrently: classification, query embedding, knowledge snapshot
      -> cache (tier 3, as soon as the embedding exists; a hit cancels the rest)
      -> hybrid search -> rank -> entity facts -> assemble -> render
      -> cache store

Failure handling:
- classification problems fall back to regex extraction (reported in debug_info)
- embedding problems skip semantic search and the tier 3 cache
- cache problems bypass the cache for that query
- storage problems are fatal for the query: error="storage_unavailable"
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from ..cache.semantic_cache import CacheLookup, SemanticCache
from ..common.config import RecollectConfig, load_config
from ..common.embedding_service import EmbeddingService
from ..common.errors import CacheUnavailableError, EmbeddingError, StorageUnavailableError
from ..common.llm_client import LLMClient
from ..common.schemas import DEFAULT_INTENT, ExtractedKeywords, Intent, estimate_tokens
from ..common.storage import ChunkStore, JsonDirectoryChunkStore, KnowledgeSnapshot
from .assembler import ContextAssembler, remaining_budget, render_context
from .classifier import ClassificationAdapter
from .entity_index import format_entity_facts, lookup_entity_facts
from .fallback_extractor import Classification
from .ranker import Ranker
from .searcher import HybridSearcher

logger = logging.getLogger("recollect.retriever.engine")

STORAGE_UNAVAILABLE = "storage_unavailable"
INTERNAL_ERROR = "internal_error"


@dataclass
class Credentials:
    """Per-request API keys. Missing keys fall back to configured ones."""
    classification_api_key: Optional[str] = None
    embedding_api_key: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.classification_api_key and not self.embedding_api_key


class DebugInfo(BaseModel):
    """Observability data attached to every QueryResult"""
    intent: Intent = DEFAULT_INTENT
    keywords: ExtractedKeywords = Field(default_factory=ExtractedKeywords)
    exact_matches: int = 0
    semantic_matches: int = 0
    entity_matches: int = 0
    ranked_chunks: int = 0
    chunks_selected: int = 0
    tokens_used: int = 0
    entity_facts_found: List[str] = Field(default_factory=list)
    classification_fallback: bool = False
    fallback_reason: Optional[str] = None
    embedding_available: bool = False
    cache_bypassed: bool = False
    cache_similarity: Optional[float] = None


class QueryResult(BaseModel):
    """Personal context for one message"""
    context_text: str = ""
    intent: Intent = DEFAULT_INTENT
    from_cache: bool = False
    cache_tier: Optional[int] = None
    error: Optional[str] = None
    debug_info: DebugInfo = Field(default_factory=DebugInfo)


class PersonalizationEngine:
    """
    Retrieval + caching engine. One instance per process; all state that
    outlives a query lives in the injected cache.
    """

    def __init__(
        self,
        store: ChunkStore,
        cache: Optional[SemanticCache] = None,
        classifier: Optional[ClassificationAdapter] = None,
        embedder: Optional[EmbeddingService] = None,
        config: Optional[RecollectConfig] = None,
    ):
        """
        Initialize engine.

        Args:
            store: Chunk/entity storage
            cache: Semantic cache (None disables caching)
            classifier: Default classification adapter (regex-only if None)
            embedder: Default embedding service (no embeddings if None)
            config: Search/context/credential settings
        """
        self._config = config or RecollectConfig()
        self._store = store
        self._cache = cache
        self._classifier = classifier or ClassificationAdapter(
            timeout=self._config.llm.classification_timeout,
            max_tokens=self._config.llm.max_tokens,
        )
        self._embedder = embedder or EmbeddingService(api_key=None)
        self._searcher = HybridSearcher(self._config.search)
        self._ranker = Ranker()
        self._assembler = ContextAssembler()

    @classmethod
    def from_config(
        cls,
        config: Optional[RecollectConfig] = None,
        store: Optional[ChunkStore] = None,
    ) -> "PersonalizationEngine":
        """Build an engine with services created from configuration."""
        config = config or load_config()
        store = store or JsonDirectoryChunkStore(config.storage.data_dir)
        cache = SemanticCache.from_config(config.cache) if config.cache.enabled else None
        classifier = ClassificationAdapter(
            LLMClient.from_config(config.llm),
            timeout=config.llm.classification_timeout,
            max_tokens=config.llm.max_tokens,
        )
        embedder = EmbeddingService.from_config(config.embedding)
        return cls(store, cache=cache, classifier=classifier, embedder=embedder, config=config)

    @property
    def cache(self) -> Optional[SemanticCache]:
        return self._cache

    async def initialize(self) -> None:
        """Prepare the cache. A cache that fails to load is bypassed, not fatal."""
        if self._cache is None:
            return
        try:
            await self._cache.initialize()
        except CacheUnavailableError as e:
            logger.warning("Semantic cache unavailable, queries will bypass it: %s", e)

    # ------------------------------------------------------------------
    # Exposed API
    # ------------------------------------------------------------------

    async def process_query(
        self,
        user_message: str,
        user_scope: str,
        credentials: Optional[Credentials] = None,
    ) -> QueryResult:
        """
        Retrieve personal context for a message.

        Args:
            user_message: Raw chat message
            user_scope: Owning user's scope id
            credentials: Optional per-request API keys

        Returns:
            QueryResult. error is set (and context_text empty) when the
            knowledge store could not be read.
        """
        if not user_message or not user_message.strip():
            return QueryResult(debug_info=DebugInfo(cache_bypassed=True))

        classifier, embedder = self._services_for(credentials)
        debug = DebugInfo(embedding_available=embedder.is_available)

        use_cache = await self._cache_ready()
        if use_cache:
            lookup, use_cache = await self._lookup(user_message, user_scope, tiers=(1, 2))
            if lookup.hit:
                return self._from_cache(lookup)
        debug.cache_bypassed = not use_cache

        tasks = self._start_inputs(user_message, user_scope, classifier, embedder)
        classify_task, embed_task, snapshot_task = tasks
        try:
            embedding = await self._await_embedding(embed_task, snapshot_task)
            if use_cache and embedding:
                lookup, use_cache = await self._lookup(user_message, user_scope, tiers=(3,), embedding=embedding)
                if lookup.hit:
                    return self._from_cache(lookup)
                debug.cache_bypassed = not use_cache
            classification, snapshot = await asyncio.gather(classify_task, snapshot_task)
        except StorageUnavailableError as e:
            logger.error("Knowledge store unavailable for scope %s: %s", user_scope, e)
            return QueryResult(error=STORAGE_UNAVAILABLE, debug_info=debug)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        debug.intent = classification.intent
        debug.keywords = classification.keywords
        debug.classification_fallback = classification.used_fallback
        debug.fallback_reason = classification.fallback_reason

        try:
            result, entities, chunk_ids = self._build_result(
                user_message, classification, embedding, snapshot, debug
            )
        except Exception as e:
            logger.error("Context pipeline failed for scope %s: %s", user_scope, e, exc_info=True)
            return QueryResult(intent=classification.intent, error=INTERNAL_ERROR, debug_info=debug)

        if use_cache:
            try:
                await self._cache.store(
                    user_message,
                    user_scope,
                    embedding,
                    result.intent.value,
                    result.model_dump(mode="json"),
                    entities=entities,
                    chunk_ids=chunk_ids,
                )
            except CacheUnavailableError as e:
                logger.warning("Failed to cache result, continuing: %s", e)
                result.debug_info.cache_bypassed = True

        return result

    async def has_personal_context(self, user_scope: str) -> bool:
        """Whether a scope has any chunks or entity facts to draw on."""
        try:
            snapshot = await self._store.load_snapshot(user_scope)
        except StorageUnavailableError as e:
            logger.warning("Could not check personal context for scope %s: %s", user_scope, e)
            return False
        return not snapshot.is_empty

    async def invalidate_by_entity(self, name: str) -> int:
        """Drop cached results that depend on an entity. Call after editing its facts."""
        if not await self._cache_ready():
            return 0
        return await self._cache.invalidate_by_entity(name)

    async def invalidate_by_chunk(self, chunk_id: str) -> int:
        """Drop cached results built from a chunk. Call after editing or deleting it."""
        if not await self._cache_ready():
            return 0
        return await self._cache.invalidate_by_chunk(chunk_id)

    async def invalidate_all(self) -> int:
        if not await self._cache_ready():
            return 0
        return await self._cache.invalidate_all()

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _services_for(
        self, credentials: Optional[Credentials]
    ) -> Tuple[ClassificationAdapter, EmbeddingService]:
        if credentials is None or credentials.is_empty:
            return self._classifier, self._embedder

        classifier = self._classifier
        if credentials.classification_api_key:
            classifier = ClassificationAdapter(
                LLMClient.from_config(self._config.llm, api_key=credentials.classification_api_key),
                timeout=self._config.llm.classification_timeout,
                max_tokens=self._config.llm.max_tokens,
            )
        embedder = self._embedder
        if credentials.embedding_api_key:
            embedder = EmbeddingService.from_config(
                self._config.embedding, api_key=credentials.embedding_api_key
            )
        return classifier, embedder

    async def _cache_ready(self) -> bool:
        if self._cache is None:
            return False
        if not self._cache.is_ready:
            await self.initialize()
        return self._cache.is_ready

    async def _lookup(
        self,
        query: str,
        user_scope: str,
        tiers: Tuple[int, ...],
        embedding: Optional[List[float]] = None,
    ) -> Tuple[CacheLookup, bool]:
        """Cache lookup that degrades to a miss. Returns (lookup, cache_still_usable)."""
        try:
            return await self._cache.lookup(query, user_scope, embedding=embedding, tiers=tiers), True
        except CacheUnavailableError as e:
            logger.warning("Cache lookup failed, bypassing cache: %s", e)
            return CacheLookup.miss(), False

    def _from_cache(self, lookup: CacheLookup) -> QueryResult:
        result = QueryResult.model_validate(lookup.entry.result)
        debug = result.debug_info.model_copy(
            update={"cache_bypassed": False, "cache_similarity": lookup.similarity}
        )
        return result.model_copy(
            update={"from_cache": True, "cache_tier": lookup.tier, "error": None, "debug_info": debug}
        )

    def _start_inputs(
        self,
        user_message: str,
        user_scope: str,
        classifier: ClassificationAdapter,
        embedder: EmbeddingService,
    ) -> List[asyncio.Future]:
        """Launch classification, embedding and snapshot load concurrently.

        The caller owns the returned tasks and must cancel whatever is still
        pending when it stops early (cache hit, failure or cancellation).
        """
        return [
            asyncio.ensure_future(classifier.classify(user_message)),
            asyncio.ensure_future(self._embed(embedder, user_message)),
            asyncio.ensure_future(self._store.load_snapshot(user_scope)),
        ]

    @staticmethod
    async def _await_embedding(
        embed_task: asyncio.Future, snapshot_task: asyncio.Future
    ) -> Optional[List[float]]:
        """Wait for the query embedding; a storage failure that lands first is raised."""
        done, _ = await asyncio.wait({embed_task, snapshot_task}, return_when=asyncio.FIRST_COMPLETED)
        if snapshot_task in done:
            snapshot_task.result()
        return await embed_task

    async def _embed(self, embedder: EmbeddingService, text: str) -> Optional[List[float]]:
        if not embedder.is_available:
            return None
        try:
            return await embedder.embed(text)
        except EmbeddingError as e:
            logger.warning("Query embedding failed, skipping semantic search: %s", e)
            return None

    def _build_result(
        self,
        user_message: str,
        classification: Classification,
        embedding: Optional[List[float]],
        snapshot: KnowledgeSnapshot,
        debug: DebugInfo,
    ) -> Tuple[QueryResult, List[str], List[str]]:
        """Search, rank, assemble and render. Returns (result, entity refs, chunk refs)."""
        intent = classification.intent
        keywords = classification.keywords

        results = self._searcher.search(
            user_message, keywords, intent, embedding, snapshot.chunks, snapshot.entity_index
        )
        ranked = self._ranker.rank(results, intent)

        entity_facts = lookup_entity_facts(keywords.entities, snapshot.entity_index)
        facts_block = format_entity_facts(entity_facts)

        budget = remaining_budget(self._config.context.token_budget, facts_block)
        context = self._assembler.assemble(ranked, intent, budget)
        context_text = render_context(context, facts_block)

        debug.exact_matches = len(results.exact_matches)
        debug.semantic_matches = len(results.semantic_matches)
        debug.entity_matches = len(results.entity_matches)
        debug.ranked_chunks = len(ranked)
        debug.chunks_selected = len(context.chunks)
        debug.tokens_used = estimate_tokens(context_text)
        debug.entity_facts_found = list(entity_facts)

        logger.info(
            "Context for intent=%s: %d/%d chunks, %d tokens, %d entity facts%s",
            intent.value,
            debug.chunks_selected,
            debug.ranked_chunks,
            debug.tokens_used,
            len(entity_facts),
            " (fallback classification)" if classification.used_fallback else "",
        )

        entities = list(keywords.entities) + list(entity_facts)
        for chunk in context.chunks:
            entities.extend(chunk.entity_tags)
        chunk_ids = [chunk.id for chunk in context.chunks]

        result = QueryResult(context_text=context_text, intent=intent, debug_info=debug)
        return result, entities, chunk_ids
