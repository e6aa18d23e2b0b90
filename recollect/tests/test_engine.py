"""
Scenario tests for the PersonalizationEngine.

Each test drives the full pipeline (cache -> classify/embed/load ->
search -> rank -> assemble -> cache) with fake services.
"""

import asyncio
import json
import logging

import pytest
from unittest.mock import AsyncMock, Mock, patch

from recollect.cache.semantic_cache import SemanticCache
from recollect.common.config import RecollectConfig
from recollect.common.embedding_service import EmbeddingService
from recollect.common.errors import CacheUnavailableError, EmbeddingError, StorageUnavailableError
from recollect.common.schemas import Chunk, Intent, estimate_tokens
from recollect.common.storage import ChunkStore, InMemoryChunkStore, JsonDirectoryChunkStore
from recollect.retriever.classifier import ClassificationAdapter
from recollect.retriever.engine import Credentials, PersonalizationEngine
from recollect.retriever.entity_index import ENTITY_FACTS_HEADER

SCOPE = "user-1"


def _llm(intent="RELATIONAL", **keywords):
    llm = Mock()
    llm.is_available = True
    llm.generate = AsyncMock(return_value=json.dumps({"intent": intent, "keywords": keywords}))
    return llm


def _embedder(vector=None, side_effect=None):
    embedder = Mock(spec=EmbeddingService)
    embedder.is_available = True
    embedder.embed = AsyncMock(return_value=vector, side_effect=side_effect)
    return embedder


@pytest.fixture
def store():
    chunks = [
        Chunk(
            id="c1",
            text="Uncle Bernard works as a carpenter in Lyon.",
            embedding=[1.0, 0.0, 0.0],
            tags=frozenset({"entity:Bernard"}),
        ),
        Chunk(
            id="c2",
            text="Lilou is our tabby cat. Lilou sleeps on the radiator.",
            embedding=[0.0, 1.0, 0.0],
            tags=frozenset({"entity:Lilou"}),
        ),
        Chunk(id="c3", text="We moved to Lyon in 2019.", sequence_index=1, embedding=[0.0, 0.0, 1.0]),
    ]
    entities = {
        "Lilou": ["Lilou is a tabby cat", "Lilou was adopted in 2021"],
        "Bernard": ["Bernard is my uncle"],
    }
    return InMemoryChunkStore({SCOPE: chunks}, {SCOPE: entities})


@pytest.fixture
def cache():
    return SemanticCache()


class TestPipeline:
    @pytest.mark.asyncio
    async def test_uncle_profession_without_classification_service(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache, embedder=_embedder([0.9, 0.1, 0.0]))

        result = await engine.process_query("What's my uncle's profession?", SCOPE)

        assert result.error is None
        assert result.intent == Intent.RELATIONAL
        assert result.from_cache is False
        assert "carpenter" in result.context_text
        debug = result.debug_info
        assert debug.classification_fallback is True
        assert debug.fallback_reason == "unavailable"
        assert debug.keywords.relational == ["uncle"]
        assert debug.keywords.concepts == ["profession"]
        assert debug.semantic_matches == 1
        assert debug.chunks_selected == 1
        assert debug.embedding_available is True

    @pytest.mark.asyncio
    async def test_bogus_intent_falls_back(self, store, cache, caplog):
        classifier = ClassificationAdapter(llm_client=_llm("BOGUS"))
        engine = PersonalizationEngine(store, cache=cache, classifier=classifier)

        with caplog.at_level(logging.WARNING):
            result = await engine.process_query("What's my uncle's profession?", SCOPE)

        assert result.error is None
        assert result.intent == Intent.RELATIONAL
        assert result.debug_info.classification_fallback is True
        assert result.debug_info.fallback_reason == "schema_mismatch"

    @pytest.mark.asyncio
    async def test_entity_facts_rendered_first(self, store, cache):
        classifier = ClassificationAdapter(llm_client=_llm("RELATIONAL", entities=["Lilou"], relational=["cat"]))
        engine = PersonalizationEngine(store, cache=cache, classifier=classifier)

        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.context_text.startswith(ENTITY_FACTS_HEADER)
        assert "- Lilou: Lilou is a tabby cat; Lilou was adopted in 2021" in result.context_text
        assert "sleeps on the radiator" in result.context_text
        assert result.debug_info.entity_facts_found == ["Lilou"]
        assert result.debug_info.entity_matches == 1
        assert result.debug_info.classification_fallback is False

    @pytest.mark.asyncio
    async def test_token_budget_respected(self, store, cache):
        config = RecollectConfig()
        config.context.token_budget = 30
        engine = PersonalizationEngine(
            store, cache=cache, embedder=_embedder([1.0, 1.0, 1.0]), config=config
        )

        result = await engine.process_query("Anything about home?", SCOPE)

        assert result.debug_info.semantic_matches == 3
        assert result.debug_info.chunks_selected < 3
        assert result.debug_info.tokens_used <= 30
        assert result.debug_info.tokens_used == estimate_tokens(result.context_text)

    @pytest.mark.asyncio
    async def test_empty_knowledge_base(self, cache):
        engine = PersonalizationEngine(InMemoryChunkStore(), cache=cache)

        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.error is None
        assert result.context_text == ""
        assert result.debug_info.chunks_selected == 0

    @pytest.mark.asyncio
    async def test_blank_message(self, cache):
        store = Mock(spec=ChunkStore)
        engine = PersonalizationEngine(store, cache=cache)

        result = await engine.process_query("   ", SCOPE)

        assert result.context_text == ""
        assert result.intent == Intent.CONCEPTUAL
        store.load_snapshot.assert_not_called()


class TestCaching:
    @pytest.mark.asyncio
    async def test_identical_queries_hit_tier1(self, store, cache):
        embedder = _embedder([0.9, 0.1, 0.0])
        engine = PersonalizationEngine(store, cache=cache, embedder=embedder)

        first = await engine.process_query("What's my uncle's profession?", SCOPE)
        with patch.object(store, "load_snapshot", wraps=store.load_snapshot) as spy:
            second = await engine.process_query("What's my uncle's profession?", SCOPE)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.cache_tier == 1
        assert second.context_text == first.context_text
        assert second.intent == first.intent
        assert embedder.embed.await_count == 1
        spy.assert_not_called()

    @pytest.mark.asyncio
    async def test_similar_query_hits_tier3(self, store, cache):
        embedder = _embedder([0.0, 1.0, 0.0])
        engine = PersonalizationEngine(store, cache=cache, embedder=embedder)

        first = await engine.process_query("Tell me about Lilou", SCOPE)
        embedder.embed.return_value = [0.05, 0.99, 0.0]
        second = await engine.process_query("How is the kitty doing?", SCOPE)

        assert second.from_cache is True
        assert second.cache_tier == 3
        assert second.debug_info.cache_similarity > 0.92
        assert second.context_text == first.context_text

    @pytest.mark.asyncio
    async def test_tier3_hit_skips_classification(self, store, cache):
        completed = []

        async def generate(*args, **kwargs):
            if completed:
                await asyncio.sleep(10)
            completed.append(args[0])
            return json.dumps({"intent": "RELATIONAL", "keywords": {"entities": ["Lilou"]}})

        llm = Mock()
        llm.is_available = True
        llm.generate = generate
        embedder = _embedder([0.0, 1.0, 0.0])
        engine = PersonalizationEngine(
            store, cache=cache, classifier=ClassificationAdapter(llm_client=llm), embedder=embedder
        )

        await engine.process_query("Tell me about Lilou", SCOPE)
        embedder.embed.return_value = [0.05, 0.99, 0.0]
        second = await asyncio.wait_for(engine.process_query("How is the kitty doing?", SCOPE), timeout=2)

        assert second.from_cache is True
        assert second.cache_tier == 3
        assert completed == ['Message: "Tell me about Lilou"']

    @pytest.mark.asyncio
    async def test_invalidate_by_entity_forces_recompute(self, store, cache):
        classifier = ClassificationAdapter(llm_client=_llm("RELATIONAL", entities=["Lilou"]))
        engine = PersonalizationEngine(store, cache=cache, classifier=classifier)

        await engine.process_query("Tell me about Lilou", SCOPE)
        store.set_entity_facts(SCOPE, "Lilou", ["Lilou is a tabby cat", "Lilou hates the vet"])
        removed = await engine.invalidate_by_entity("Lilou")
        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert removed == 1
        assert result.from_cache is False
        assert "Lilou hates the vet" in result.context_text

    @pytest.mark.asyncio
    async def test_invalidate_by_chunk(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache, embedder=_embedder([0.9, 0.1, 0.0]))

        await engine.process_query("What's my uncle's profession?", SCOPE)

        assert await engine.invalidate_by_chunk("c2") == 0
        assert await engine.invalidate_by_chunk("c1") == 1

    @pytest.mark.asyncio
    async def test_invalidate_all(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache)

        await engine.process_query("Tell me about Lilou", SCOPE)
        await engine.process_query("Tell me about Lilou", "user-2")

        assert await engine.invalidate_all() == 2

    @pytest.mark.asyncio
    async def test_cache_unavailable_is_bypassed(self, store, caplog):
        broken = Mock(spec=SemanticCache)
        broken.is_ready = True
        broken.lookup = AsyncMock(side_effect=CacheUnavailableError("disk gone"))
        broken.store = AsyncMock()
        engine = PersonalizationEngine(store, cache=broken, embedder=_embedder([0.9, 0.1, 0.0]))

        with caplog.at_level(logging.WARNING, logger="recollect.retriever.engine"):
            result = await engine.process_query("What's my uncle's profession?", SCOPE)

        assert result.error is None
        assert "carpenter" in result.context_text
        assert result.debug_info.cache_bypassed is True
        broken.store.assert_not_awaited()
        assert "bypassing cache" in caplog.text

    @pytest.mark.asyncio
    async def test_works_without_cache(self, store):
        engine = PersonalizationEngine(store, cache=None)

        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.error is None
        assert result.debug_info.cache_bypassed is True
        assert await engine.invalidate_all() == 0


class TestFailures:
    @pytest.mark.asyncio
    async def test_storage_unavailable_is_an_explicit_error(self, cache):
        store = Mock(spec=ChunkStore)
        store.load_snapshot = AsyncMock(side_effect=StorageUnavailableError("connection refused"))
        engine = PersonalizationEngine(store, cache=cache)

        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.error == "storage_unavailable"
        assert result.context_text == ""
        assert (await cache.stats())["stores"] == 0

    @pytest.mark.asyncio
    async def test_undecodable_chunk_file_is_storage_unavailable(self, tmp_path, cache):
        scope_dir = tmp_path / SCOPE
        scope_dir.mkdir()
        (scope_dir / "chunks.json").write_bytes(b'[{"id": "c1", "text": "caf\xe9"}]')
        engine = PersonalizationEngine(JsonDirectoryChunkStore(tmp_path), cache=cache)

        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.error == "storage_unavailable"

    @pytest.mark.asyncio
    async def test_undecodable_cache_file_is_bypassed(self, store, tmp_path, caplog):
        path = tmp_path / "cache.json"
        path.write_bytes(b'{"version": 1, "scopes": {"u1": [{"query_normalized": "caf\xe9"}]}}')
        engine = PersonalizationEngine(store, cache=SemanticCache(persist_path=path))

        with caplog.at_level(logging.WARNING, logger="recollect.retriever.engine"):
            await engine.initialize()
            result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.error is None
        assert "Lilou" in result.context_text
        assert result.debug_info.cache_bypassed is True
        assert "Semantic cache unavailable" in caplog.text

    @pytest.mark.asyncio
    async def test_embedding_failure_skips_semantic_search(self, store, cache, caplog):
        embedder = _embedder(side_effect=EmbeddingError("rate limited"))
        engine = PersonalizationEngine(store, cache=cache, embedder=embedder)

        with caplog.at_level(logging.WARNING, logger="recollect.retriever.engine"):
            result = await engine.process_query("What's my uncle's profession?", SCOPE)

        assert result.error is None
        assert result.debug_info.semantic_matches == 0
        assert "Query embedding failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_pipeline_error_degrades(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache)
        engine._searcher.search = Mock(side_effect=ValueError("boom"))

        result = await engine.process_query("Tell me about Lilou", SCOPE)

        assert result.error == "internal_error"
        assert result.context_text == ""
        assert (await cache.stats())["stores"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_query_writes_nothing(self, cache):
        started = asyncio.Event()

        async def slow_snapshot(user_scope):
            started.set()
            await asyncio.sleep(10)

        store = Mock(spec=ChunkStore)
        store.load_snapshot = slow_snapshot
        engine = PersonalizationEngine(store, cache=cache)

        task = asyncio.create_task(engine.process_query("Tell me about Lilou", SCOPE))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        stats = await cache.stats()
        assert stats["stores"] == 0
        assert stats["entries"] == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_inputs_are_loaded_concurrently(self, store, cache):
        started = []
        all_started = asyncio.Event()

        async def gate(name):
            started.append(name)
            if len(started) == 3:
                all_started.set()
            await all_started.wait()

        async def generate(*args, **kwargs):
            await gate("classify")
            return json.dumps({"intent": "RELATIONAL", "keywords": {"entities": ["Lilou"]}})

        async def embed(text):
            await gate("embed")
            return [0.0, 1.0, 0.0]

        async def load_snapshot(user_scope):
            await gate("snapshot")
            return await store.load_snapshot(user_scope)

        llm = Mock()
        llm.is_available = True
        llm.generate = generate
        embedder = _embedder()
        embedder.embed = embed
        gated_store = Mock(spec=ChunkStore)
        gated_store.load_snapshot = load_snapshot
        engine = PersonalizationEngine(
            gated_store, cache=cache, classifier=ClassificationAdapter(llm_client=llm), embedder=embedder
        )

        result = await asyncio.wait_for(engine.process_query("Tell me about Lilou", SCOPE), timeout=2)

        assert sorted(started) == ["classify", "embed", "snapshot"]
        assert result.error is None
        assert result.debug_info.classification_fallback is False
        assert "Lilou" in result.context_text

    @pytest.mark.asyncio
    async def test_storage_failure_cancels_classification(self, cache):
        classify_started = asyncio.Event()
        classify_cancelled = asyncio.Event()

        async def generate(*args, **kwargs):
            classify_started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                classify_cancelled.set()
                raise
            return "{}"

        async def load_snapshot(user_scope):
            await classify_started.wait()
            raise StorageUnavailableError("connection refused")

        llm = Mock()
        llm.is_available = True
        llm.generate = generate
        store = Mock(spec=ChunkStore)
        store.load_snapshot = load_snapshot
        engine = PersonalizationEngine(store, cache=cache, classifier=ClassificationAdapter(llm_client=llm))

        result = await asyncio.wait_for(engine.process_query("Tell me about Lilou", SCOPE), timeout=2)

        assert result.error == "storage_unavailable"
        await asyncio.wait_for(classify_cancelled.wait(), timeout=1)


class TestCredentials:
    @pytest.mark.asyncio
    async def test_per_request_classification_key(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache)
        llm = _llm("FACTUAL", entities=["Bernard"])

        with patch("recollect.retriever.engine.LLMClient.from_config", return_value=llm) as factory:
            result = await engine.process_query(
                "What does Bernard do?",
                SCOPE,
                credentials=Credentials(classification_api_key="sk-user"),
            )

        assert factory.call_args.kwargs["api_key"] == "sk-user"
        assert result.intent == Intent.FACTUAL
        assert result.debug_info.classification_fallback is False

    @pytest.mark.asyncio
    async def test_per_request_embedding_key(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache)
        embedder = _embedder([1.0, 0.0, 0.0])

        with patch("recollect.retriever.engine.EmbeddingService.from_config", return_value=embedder) as factory:
            result = await engine.process_query(
                "What's my uncle's profession?",
                SCOPE,
                credentials=Credentials(embedding_api_key="sk-embed"),
            )

        assert factory.call_args.kwargs["api_key"] == "sk-embed"
        assert result.debug_info.embedding_available is True
        assert result.debug_info.semantic_matches == 1

    @pytest.mark.asyncio
    async def test_missing_keys_are_valid(self, store, cache):
        engine = PersonalizationEngine(store, cache=cache)

        result = await engine.process_query("Tell me about Lilou", SCOPE, credentials=Credentials())

        assert result.error is None
        assert result.debug_info.embedding_available is False
        assert result.debug_info.classification_fallback is True


class TestPersonalContext:
    @pytest.mark.asyncio
    async def test_has_personal_context(self, store):
        engine = PersonalizationEngine(store)

        assert await engine.has_personal_context(SCOPE) is True
        assert await engine.has_personal_context("nobody") is False

    @pytest.mark.asyncio
    async def test_storage_error_means_no_context(self):
        store = Mock(spec=ChunkStore)
        store.load_snapshot = AsyncMock(side_effect=StorageUnavailableError("down"))
        engine = PersonalizationEngine(store)

        assert await engine.has_personal_context(SCOPE) is False
