"""
Semantic Cache

Three-tier cache of processed query results, grouped by user scope.

Tier 1: exact match on the normalized query (trim, lower-case, collapsed
        whitespace)
Tier 2: fuzzy-key match (punctuation and stop words removed, sorted
        unique token set)
Tier 3: cosine similarity between query embeddings, strictly above the
        threshold (default 0.92)

Entries remember the entities and chunk ids that produced them so that
memory-editing flows can invalidate exactly what they touched. The cache
never detects changes to the underlying knowledge on its own.
"""

import asyncio
import json
import logging
import os
import re
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..common.config import CacheConfig
from ..common.embedding_service import batch_cosine_similarity
from ..common.errors import CacheUnavailableError

logger = logging.getLogger("recollect.cache.semantic_cache")

ALL_TIERS = (1, 2, 3)
CACHE_FORMAT_VERSION = 1

_WHITESPACE_RE = re.compile(r"\s+")
_APOSTROPHE_RE = re.compile(r"['’]")
_PUNCTUATION_RE = re.compile(r"[^\w\s]")

FUZZY_STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "is", "are", "was", "were", "be", "been",
    "am", "do", "does", "did", "to", "of", "in", "on", "at", "by", "for", "with",
    "about", "from", "it", "its", "this", "that", "these", "those", "me", "my",
    "i", "you", "your", "please", "can", "could", "would", "will", "should",
    "tell", "so", "just",
})


def normalize_query(query: str) -> str:
    """Tier 1 key: trimmed, lower-cased, whitespace collapsed."""
    return _WHITESPACE_RE.sub(" ", (query or "").strip().lower())


def fuzzy_key(query: str) -> str:
    """
    Tier 2 key: sorted unique content tokens.

    "What's my cat's name?" and "name of my cat?" do not collide
    ("cats" vs "cat"), but "My cat's name, what is it?" and
    "what is my cat's name" do.
    """
    text = _APOSTROPHE_RE.sub("", (query or "").lower())
    text = _PUNCTUATION_RE.sub(" ", text)
    tokens = {t for t in text.split() if t not in FUZZY_STOP_WORDS}
    return " ".join(sorted(tokens))


def _entity_key(name: str) -> str:
    return _WHITESPACE_RE.sub(" ", (name or "").strip()).casefold()


@dataclass
class CacheEntry:
    """One cached query result"""
    query_normalized: str
    fuzzy_key: str
    intent: str
    result: Dict[str, Any]
    created_at: float
    embedding: Optional[List[float]] = None
    entities: List[str] = field(default_factory=list)
    chunk_ids: List[str] = field(default_factory=list)

    @property
    def tier(self) -> int:
        """Highest tier this entry can be matched on."""
        return 3 if self.embedding else 2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            query_normalized=data["query_normalized"],
            fuzzy_key=data.get("fuzzy_key", ""),
            intent=data.get("intent", ""),
            result=dict(data.get("result") or {}),
            created_at=float(data.get("created_at", 0.0)),
            embedding=data.get("embedding") or None,
            entities=list(data.get("entities") or []),
            chunk_ids=list(data.get("chunk_ids") or []),
        )


@dataclass
class CacheLookup:
    """Outcome of a cache lookup"""
    hit: bool = False
    tier: Optional[int] = None
    entry: Optional[CacheEntry] = None
    similarity: Optional[float] = None

    @classmethod
    def miss(cls) -> "CacheLookup":
        return cls()


class SemanticCache:
    """
    In-process semantic cache with optional JSON persistence.

    Every public operation takes the same asyncio.Lock; no operation calls
    another public operation while holding it.
    """

    def __init__(
        self,
        tier3_threshold: float = 0.92,
        ttl_seconds: int = 0,
        max_entries_per_scope: int = 500,
        persist_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize semantic cache.

        Args:
            tier3_threshold: Similarity a Tier 3 match must exceed
            ttl_seconds: Entry lifetime; 0 disables expiry
            max_entries_per_scope: Oldest entries are evicted beyond this
            persist_path: JSON file to load from and write through to
            clock: Time source (seconds since epoch)
        """
        self._threshold = tier3_threshold
        self._ttl = ttl_seconds
        self._max_entries = max_entries_per_scope
        self._persist_path = Path(persist_path).expanduser() if persist_path else None
        self._clock = clock

        self._lock = asyncio.Lock()
        self._scopes: Dict[str, "OrderedDict[str, CacheEntry]"] = {}
        self._ready = False
        self._stats = {
            "lookups": 0,
            "hits_tier1": 0,
            "hits_tier2": 0,
            "hits_tier3": 0,
            "misses": 0,
            "stores": 0,
            "invalidated": 0,
        }

    @classmethod
    def from_config(cls, config: CacheConfig) -> "SemanticCache":
        return cls(
            tier3_threshold=config.tier3_threshold,
            ttl_seconds=config.ttl_seconds,
            max_entries_per_scope=config.max_entries_per_scope,
            persist_path=config.persist_path or None,
        )

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def tier3_threshold(self) -> float:
        return self._threshold

    async def initialize(self) -> None:
        """
        Load persisted entries (if configured) and mark the cache ready.

        Raises:
            CacheUnavailableError: the persistence file exists but cannot be read
        """
        async with self._lock:
            if self._ready:
                return
            if self._persist_path is not None:
                self._scopes = await asyncio.to_thread(self._read_file)
            self._ready = True
            logger.info(
                "Semantic cache ready (%d entries, tier3 threshold %.2f)",
                self._count_entries(),
                self._threshold,
            )

    # ------------------------------------------------------------------
    # Lookup / store
    # ------------------------------------------------------------------

    async def lookup(
        self,
        query: str,
        user_scope: str,
        embedding: Optional[List[float]] = None,
        tiers: Sequence[int] = ALL_TIERS,
    ) -> CacheLookup:
        """
        Find a cached result for a query.

        Tiers are tried in order 1, 2, 3; Tier 3 only runs when an
        embedding is supplied.

        Raises:
            CacheUnavailableError: cache not initialized
        """
        async with self._lock:
            self._require_ready()
            self._stats["lookups"] += 1
            entries = self._scopes.get(user_scope)
            if entries:
                self._drop_expired(user_scope, entries)

            result = self._match(query, entries or {}, embedding, tiers)
            if result.hit:
                self._stats[f"hits_tier{result.tier}"] += 1
                logger.info(
                    "Cache hit (tier %d) for scope %s%s",
                    result.tier,
                    user_scope,
                    f" similarity={result.similarity:.3f}" if result.similarity is not None else "",
                )
            else:
                self._stats["misses"] += 1
            return result

    def _match(
        self,
        query: str,
        entries: "OrderedDict[str, CacheEntry]",
        embedding: Optional[List[float]],
        tiers: Sequence[int],
    ) -> CacheLookup:
        if not entries:
            return CacheLookup.miss()

        if 1 in tiers:
            entry = entries.get(normalize_query(query))
            if entry is not None:
                return CacheLookup(hit=True, tier=1, entry=entry)

        if 2 in tiers:
            key = fuzzy_key(query)
            if key:
                # Newest entry wins when several share a fuzzy key
                for entry in reversed(entries.values()):
                    if entry.fuzzy_key == key:
                        return CacheLookup(hit=True, tier=2, entry=entry)

        if 3 in tiers and embedding:
            candidates = [
                e for e in entries.values()
                if e.embedding and len(e.embedding) == len(embedding)
            ]
            if candidates:
                similarities = batch_cosine_similarity(embedding, [e.embedding for e in candidates])
                best = max(range(len(candidates)), key=lambda i: similarities[i])
                if similarities[best] > self._threshold:
                    return CacheLookup(
                        hit=True,
                        tier=3,
                        entry=candidates[best],
                        similarity=float(similarities[best]),
                    )
                logger.debug("Best tier 3 similarity %.3f below threshold", similarities[best])

        return CacheLookup.miss()

    async def store(
        self,
        query: str,
        user_scope: str,
        embedding: Optional[List[float]],
        intent: str,
        result: Dict[str, Any],
        entities: Iterable[str] = (),
        chunk_ids: Iterable[str] = (),
    ) -> CacheEntry:
        """
        Store a processed result. Last write wins per normalized query.

        Args:
            query: Raw user message
            user_scope: Owning user scope
            embedding: Query embedding (None makes the entry Tier 1/2 only)
            intent: Classified intent value
            result: JSON-compatible result payload
            entities: Entity names the result depends on
            chunk_ids: Chunk ids the result was built from

        Raises:
            CacheUnavailableError: cache not initialized, or persistence failed
        """
        entry = CacheEntry(
            query_normalized=normalize_query(query),
            fuzzy_key=fuzzy_key(query),
            intent=intent,
            result=result,
            created_at=self._clock(),
            embedding=list(embedding) if embedding else None,
            entities=sorted({_entity_key(e) for e in entities if e and e.strip()}),
            chunk_ids=sorted(set(chunk_ids)),
        )

        async with self._lock:
            self._require_ready()
            entries = self._scopes.setdefault(user_scope, OrderedDict())
            entries.pop(entry.query_normalized, None)
            entries[entry.query_normalized] = entry
            while len(entries) > self._max_entries > 0:
                evicted, _ = entries.popitem(last=False)
                logger.debug("Evicted oldest cache entry %r for scope %s", evicted, user_scope)
            self._stats["stores"] += 1
            await self._persist()

        logger.debug("Cached result for scope %s (tier %d eligible)", user_scope, entry.tier)
        return entry

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate_by_entity(self, name: str) -> int:
        """Remove every entry (all scopes) that depends on an entity."""
        key = _entity_key(name)
        if not key:
            return 0
        return await self._invalidate(lambda e: key in e.entities, f"entity {name!r}")

    async def invalidate_by_chunk(self, chunk_id: str) -> int:
        """Remove every entry (all scopes) built from a chunk."""
        if not chunk_id:
            return 0
        return await self._invalidate(lambda e: chunk_id in e.chunk_ids, f"chunk {chunk_id!r}")

    async def invalidate_all(self) -> int:
        """Remove every entry in every scope."""
        return await self._invalidate(lambda e: True, "all")

    async def invalidate_scope(self, user_scope: str) -> int:
        """Remove every entry for one user scope."""
        async with self._lock:
            self._require_ready()
            removed = len(self._scopes.pop(user_scope, {}))
            if removed:
                self._stats["invalidated"] += removed
                await self._persist()
        logger.info("Invalidated %d cache entries for scope %s", removed, user_scope)
        return removed

    async def _invalidate(self, predicate: Callable[[CacheEntry], bool], label: str) -> int:
        async with self._lock:
            self._require_ready()
            removed = 0
            for scope in list(self._scopes):
                entries = self._scopes[scope]
                for key in [k for k, e in entries.items() if predicate(e)]:
                    del entries[key]
                    removed += 1
                if not entries:
                    del self._scopes[scope]
            if removed:
                self._stats["invalidated"] += removed
                await self._persist()
        logger.info("Invalidated %d cache entries (%s)", removed, label)
        return removed

    async def stats(self) -> Dict[str, Any]:
        """Counters since startup plus current entry counts."""
        async with self._lock:
            return {
                "ready": self._ready,
                "entries": self._count_entries(),
                "scopes": len(self._scopes),
                "tier3_threshold": self._threshold,
                **self._stats,
            }

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _require_ready(self) -> None:
        if not self._ready:
            raise CacheUnavailableError("Semantic cache not initialized. Call initialize() first.")

    def _count_entries(self) -> int:
        return sum(len(entries) for entries in self._scopes.values())

    def _drop_expired(self, user_scope: str, entries: "OrderedDict[str, CacheEntry]") -> None:
        if self._ttl <= 0:
            return
        cutoff = self._clock() - self._ttl
        expired = [k for k, e in entries.items() if e.created_at < cutoff]
        for key in expired:
            del entries[key]
        if expired:
            logger.debug("Expired %d cache entries for scope %s", len(expired), user_scope)

    async def _persist(self) -> None:
        if self._persist_path is None:
            return
        payload = {
            "version": CACHE_FORMAT_VERSION,
            "scopes": {
                scope: [e.to_dict() for e in entries.values()]
                for scope, entries in self._scopes.items()
            },
        }
        await asyncio.to_thread(self._write_file, payload)

    def _write_file(self, payload: Dict[str, Any]) -> None:
        path = self._persist_path
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, path)
        except OSError as e:
            raise CacheUnavailableError(f"Failed to write cache file {path}: {e}") from e

    def _read_file(self) -> Dict[str, "OrderedDict[str, CacheEntry]"]:
        path = self._persist_path
        try:
            if not path.exists():
                return {}
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (ValueError, OSError) as e:
            raise CacheUnavailableError(f"Failed to read cache file {path}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != CACHE_FORMAT_VERSION:
            logger.warning("Ignoring cache file %s with unknown format", path)
            return {}

        scopes: Dict[str, "OrderedDict[str, CacheEntry]"] = {}
        for scope, items in (data.get("scopes") or {}).items():
            entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
            for item in items:
                try:
                    entry = CacheEntry.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed cache entry in %s: %s", path, e)
                    continue
                entries[entry.query_normalized] = entry
            if entries:
                scopes[scope] = entries
        return scopes
