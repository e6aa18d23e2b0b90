"""
Chunk Store

Read-only access to a user's chunked personal knowledge and entity index.
The engine never writes to the store; memory-editing flows own the data
and call the invalidation API after they mutate it.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .errors import StorageUnavailableError
from .schemas import Chunk, EntityIndex

logger = logging.getLogger("recollect.common.storage")


@dataclass
class KnowledgeSnapshot:
    """Chunks and entity index for one user scope, loaded together"""
    chunks: List[Chunk] = field(default_factory=list)
    entity_index: EntityIndex = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.chunks and not self.entity_index


class ChunkStore(ABC):
    """Query API of the chunk/entity storage engine."""

    @abstractmethod
    async def get_chunks(self, user_scope: str) -> List[Chunk]:
        """Return every chunk for a user scope.

        Raises:
            StorageUnavailableError: the store cannot be reached
        """

    @abstractmethod
    async def get_entity_index(self, user_scope: str) -> EntityIndex:
        """Return the entity -> facts index for a user scope.

        Raises:
            StorageUnavailableError: the store cannot be reached
        """

    async def load_snapshot(self, user_scope: str) -> KnowledgeSnapshot:
        """Fetch chunks and entity index concurrently."""
        chunks, entity_index = await asyncio.gather(
            self.get_chunks(user_scope),
            self.get_entity_index(user_scope),
        )
        return KnowledgeSnapshot(chunks=list(chunks), entity_index=dict(entity_index))


class InMemoryChunkStore(ChunkStore):
    """
    Chunk store held in process memory.

    Used by hosts that already have the user's knowledge loaded, and by tests.
    Mutating it does not invalidate cached results; call the engine's
    invalidation API after changes.
    """

    def __init__(
        self,
        chunks: Optional[Dict[str, List[Chunk]]] = None,
        entity_indexes: Optional[Dict[str, EntityIndex]] = None,
    ):
        self._chunks: Dict[str, List[Chunk]] = {k: list(v) for k, v in (chunks or {}).items()}
        self._entity_indexes: Dict[str, EntityIndex] = {k: dict(v) for k, v in (entity_indexes or {}).items()}

    async def get_chunks(self, user_scope: str) -> List[Chunk]:
        return list(self._chunks.get(user_scope, []))

    async def get_entity_index(self, user_scope: str) -> EntityIndex:
        return {name: list(facts) for name, facts in self._entity_indexes.get(user_scope, {}).items()}

    def put_chunk(self, user_scope: str, chunk: Chunk) -> None:
        """Add or replace a chunk (by id)."""
        chunks = [c for c in self._chunks.get(user_scope, []) if c.id != chunk.id]
        chunks.append(chunk)
        self._chunks[user_scope] = chunks

    def remove_chunk(self, user_scope: str, chunk_id: str) -> bool:
        chunks = self._chunks.get(user_scope, [])
        remaining = [c for c in chunks if c.id != chunk_id]
        self._chunks[user_scope] = remaining
        return len(remaining) != len(chunks)

    def set_entity_facts(self, user_scope: str, entity: str, facts: List[str]) -> None:
        self._entity_indexes.setdefault(user_scope, {})[entity] = list(facts)


class JsonDirectoryChunkStore(ChunkStore):
    """
    Chunk store backed by JSON files.

    Layout:
        <root>/<user_scope>/chunks.json    [{"id", "text", "sequence_index", "embedding", "tags"}, ...]
        <root>/<user_scope>/entities.json  {"Lilou": ["Lilou is my cat", ...], ...}

    A missing scope directory or file means an empty knowledge base.
    Unreadable or malformed files raise StorageUnavailableError.
    """

    CHUNKS_FILE = "chunks.json"
    ENTITIES_FILE = "entities.json"

    def __init__(self, root: Path):
        self._root = Path(root).expanduser()

    def _scope_dir(self, user_scope: str) -> Path:
        # Scope ids become directory names; refuse anything that escapes root
        if not user_scope or "/" in user_scope or "\\" in user_scope or user_scope in (".", ".."):
            raise StorageUnavailableError(f"Invalid user scope: {user_scope!r}")
        return self._root / user_scope

    def _read_json(self, path: Path):
        try:
            if not path.exists():
                return None
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (ValueError, OSError) as e:
            raise StorageUnavailableError(f"Failed to read {path}: {e}") from e

    async def get_chunks(self, user_scope: str) -> List[Chunk]:
        path = self._scope_dir(user_scope) / self.CHUNKS_FILE
        data = await asyncio.to_thread(self._read_json, path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise StorageUnavailableError(f"{path} must contain a JSON list")
        try:
            return [Chunk.model_validate(item) for item in data]
        except ValidationError as e:
            raise StorageUnavailableError(f"Invalid chunk in {path}: {e}") from e

    async def get_entity_index(self, user_scope: str) -> EntityIndex:
        path = self._scope_dir(user_scope) / self.ENTITIES_FILE
        data = await asyncio.to_thread(self._read_json, path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StorageUnavailableError(f"{path} must contain a JSON object")

        index: EntityIndex = {}
        for name, facts in data.items():
            if isinstance(facts, str):
                facts = [facts]
            if not isinstance(facts, list):
                logger.warning("Skipping entity %r in %s: facts must be a list", name, path)
                continue
            index[str(name)] = [str(f) for f in facts if f]
        return index
