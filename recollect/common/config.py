"""
Configuration Management for Recollect

Loads configuration from ~/.recollect/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("recollect.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".recollect"
CONFIG_PATH = CONFIG_DIR / "config.json"
DATA_DIR = CONFIG_DIR / "data"
CACHE_PATH = CONFIG_DIR / "semantic_cache.json"


@dataclass
class LLMConfig:
    """Classification service (natural-language completion endpoint)"""
    provider: str = "openrouter"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openrouter_api_key: str = ""
    openrouter_model: str = "x-ai/grok-4.1-fast:free"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"
    classification_timeout: float = 8.0
    max_tokens: int = 250


@dataclass
class EmbeddingConfig:
    """Embedding service configuration"""
    api_key: str = ""
    model: str = "text-embedding-3-small"
    timeout: float = 5.0


@dataclass
class SearchConfig:
    """Hybrid search scoring"""
    semantic_threshold: float = 0.5
    exact_score: float = 10.0
    entity_tag_score: float = 5.0
    entity_mention_score: float = 3.0


@dataclass
class ContextConfig:
    """Context assembly"""
    token_budget: int = 4000


@dataclass
class CacheConfig:
    """Semantic cache configuration"""
    enabled: bool = True
    tier3_threshold: float = 0.92
    ttl_seconds: int = 0  # 0 disables expiry
    max_entries_per_scope: int = 500
    persist_path: str = ""  # empty keeps the cache in memory only


@dataclass
class StorageConfig:
    """Chunk/entity store location"""
    data_dir: str = str(DATA_DIR)


@dataclass
class ServerConfig:
    """HTTP server configuration"""
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class RecollectConfig:
    """Main Recollect configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        openrouter_api_key=llm_data.get("openrouter_api_key", ""),
        openrouter_model=llm_data.get("openrouter_model", defaults.openrouter_model),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
        classification_timeout=float(llm_data.get("classification_timeout", defaults.classification_timeout)),
        max_tokens=int(llm_data.get("max_tokens", defaults.max_tokens)),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    defaults = EmbeddingConfig()
    return EmbeddingConfig(
        api_key=embedding_data.get("api_key", ""),
        model=embedding_data.get("model", defaults.model),
        timeout=float(embedding_data.get("timeout", defaults.timeout)),
    )


def _parse_search_config(data: dict) -> SearchConfig:
    """Parse search section from config dict"""
    search_data = data.get("search", {})
    defaults = SearchConfig()
    return SearchConfig(
        semantic_threshold=float(search_data.get("semantic_threshold", defaults.semantic_threshold)),
        exact_score=float(search_data.get("exact_score", defaults.exact_score)),
        entity_tag_score=float(search_data.get("entity_tag_score", defaults.entity_tag_score)),
        entity_mention_score=float(search_data.get("entity_mention_score", defaults.entity_mention_score)),
    )


def _parse_cache_config(data: dict) -> CacheConfig:
    """Parse cache section from config dict"""
    cache_data = data.get("cache", {})
    defaults = CacheConfig()
    return CacheConfig(
        enabled=bool(cache_data.get("enabled", defaults.enabled)),
        tier3_threshold=float(cache_data.get("tier3_threshold", defaults.tier3_threshold)),
        ttl_seconds=int(cache_data.get("ttl_seconds", defaults.ttl_seconds)),
        max_entries_per_scope=int(cache_data.get("max_entries_per_scope", defaults.max_entries_per_scope)),
        persist_path=cache_data.get("persist_path", defaults.persist_path),
    )


def load_config() -> RecollectConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.recollect/config.json)
    3. Default values
    """
    config = RecollectConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.embedding = _parse_embedding_config(data)
            config.search = _parse_search_config(data)
            config.context = ContextConfig(
                token_budget=int(data.get("context", {}).get("token_budget", ContextConfig.token_budget)),
            )
            config.cache = _parse_cache_config(data)
            config.storage = StorageConfig(
                data_dir=data.get("storage", {}).get("data_dir", str(DATA_DIR)),
            )
            config.server = ServerConfig(
                host=data.get("server", {}).get("host", ServerConfig.host),
                port=int(data.get("server", {}).get("port", ServerConfig.port)),
            )
        except (json.JSONDecodeError, IOError, TypeError, ValueError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    # API keys and provider overrides (track env-sourced keys)
    _env_map = {
        "ANTHROPIC_API_KEY": (config.llm, "anthropic_api_key"),
        "OPENAI_API_KEY": (config.llm, "openai_api_key"),
        "OPENROUTER_API_KEY": (config.llm, "openrouter_api_key"),
        "GOOGLE_API_KEY": (config.llm, "google_api_key"),
        "GEMINI_API_KEY": (config.llm, "google_api_key"),
        "RECOLLECT_LLM_PROVIDER": (config.llm, "provider"),
        "EMBEDDING_API_KEY": (config.embedding, "api_key"),
        "EMBEDDING_MODEL": (config.embedding, "model"),
    }
    for env_var, (section, attr) in _env_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(attr)

    # Embeddings share the OpenAI key unless configured separately
    if not config.embedding.api_key and config.llm.openai_api_key:
        config.embedding.api_key = config.llm.openai_api_key
        if "openai_api_key" in config._env_sourced_keys:
            config._env_sourced_keys.add("api_key")

    if os.getenv("RECOLLECT_LLM_MODEL"):
        model_attr = f"{config.llm.provider.lower()}_model"
        if hasattr(config.llm, model_attr):
            setattr(config.llm, model_attr, os.getenv("RECOLLECT_LLM_MODEL"))
    if os.getenv("RECOLLECT_TOKEN_BUDGET"):
        config.context.token_budget = int(os.getenv("RECOLLECT_TOKEN_BUDGET"))
    if os.getenv("RECOLLECT_CACHE_THRESHOLD"):
        config.cache.tier3_threshold = float(os.getenv("RECOLLECT_CACHE_THRESHOLD"))
    if os.getenv("RECOLLECT_CACHE_PATH"):
        config.cache.persist_path = os.getenv("RECOLLECT_CACHE_PATH")
    if os.getenv("RECOLLECT_DATA_DIR"):
        config.storage.data_dir = os.getenv("RECOLLECT_DATA_DIR")
    if os.getenv("RECOLLECT_PORT"):
        config.server.port = int(os.getenv("RECOLLECT_PORT"))

    return config


def save_config(config: RecollectConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    def _secret(attr: str, value: str) -> str:
        return "" if attr in env_sourced else value

    data = {
        "llm": {
            "provider": config.llm.provider,
            "anthropic_api_key": _secret("anthropic_api_key", config.llm.anthropic_api_key),
            "anthropic_model": config.llm.anthropic_model,
            "openai_api_key": _secret("openai_api_key", config.llm.openai_api_key),
            "openai_model": config.llm.openai_model,
            "openrouter_api_key": _secret("openrouter_api_key", config.llm.openrouter_api_key),
            "openrouter_model": config.llm.openrouter_model,
            "google_api_key": _secret("google_api_key", config.llm.google_api_key),
            "google_model": config.llm.google_model,
            "classification_timeout": config.llm.classification_timeout,
            "max_tokens": config.llm.max_tokens,
        },
        "embedding": {
            "api_key": _secret("api_key", config.embedding.api_key),
            "model": config.embedding.model,
            "timeout": config.embedding.timeout,
        },
        "search": {
            "semantic_threshold": config.search.semantic_threshold,
            "exact_score": config.search.exact_score,
            "entity_tag_score": config.search.entity_tag_score,
            "entity_mention_score": config.search.entity_mention_score,
        },
        "context": {
            "token_budget": config.context.token_budget,
        },
        "cache": {
            "enabled": config.cache.enabled,
            "tier3_threshold": config.cache.tier3_threshold,
            "ttl_seconds": config.cache.ttl_seconds,
            "max_entries_per_scope": config.cache.max_entries_per_scope,
            "persist_path": config.cache.persist_path,
        },
        "storage": {
            "data_dir": config.storage.data_dir,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
