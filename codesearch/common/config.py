"""Configuration management for the code search service.

This module centralizes environment-driven configuration. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover commonly used environment variables
- Small service-specific subclasses to keep concerns clear

Usage
- Inject the config in your service entrypoint: ``config = SearchConfig()``
- Or select dynamically: ``config = get_config("search")``
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by every process of the service.

    Parameters are read from the process environment with the given names.
    Defaults keep local development convenient while still being explicit.

    Notes
    - Add new shared settings here so downstream configs inherit them.
    - Field names match their environment variables (case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    cs_env: str = Field(default="local", description="Deployment environment (CS_ENV)")

    # Redis (file-change events)
    cs_redis_url: str = Field(default="redis://localhost:6379", description="CS_REDIS_URL")

    # Observability
    cs_tracing_enabled: bool = Field(default=False, description="CS_TRACING_ENABLED")
    cs_otel_exporter: str = Field(default="http://localhost:4318/v1/traces", description="CS_OTEL_EXPORTER")
    cs_otel_service_name: str = Field(default="code-search", description="CS_OTEL_SERVICE_NAME")

    # Logging
    cs_log_level: str = Field(default="INFO", description="CS_LOG_LEVEL")
    cs_log_format: str = Field(default="json", description="CS_LOG_FORMAT")


class SearchConfig(BaseConfig):
    """Configuration for the search pipeline and its collaborators.

    Timeouts are in milliseconds, TTLs in seconds, budgets in tokens.
    """

    search_port: int = Field(default=9007, description="SEARCH_PORT")

    # Embeddings (Voyage AI compatible API)
    voyage_api_key: str = Field(default="", description="VOYAGE_API_KEY")
    voyage_base_url: str = Field(default="https://api.voyageai.com/v1", description="VOYAGE_BASE_URL")
    embedding_model: str = Field(default="voyage-code-3", description="EMBEDDING_MODEL")
    embedding_timeout_ms: int = Field(default=15000, description="EMBEDDING_TIMEOUT_MS")
    embedding_retry_attempts: int = Field(default=3, description="EMBEDDING_RETRY_ATTEMPTS")

    # Vector store (Qdrant REST)
    qdrant_url: str = Field(default="http://localhost:6333", description="QDRANT_URL")
    qdrant_api_key: Optional[str] = Field(default=None, description="QDRANT_API_KEY")
    collection_name: str = Field(default="codebase", description="COLLECTION_NAME")
    dense_search_timeout_ms: int = Field(default=15000, description="DENSE_SEARCH_TIMEOUT_MS")
    keyword_search_timeout_ms: int = Field(default=10000, description="KEYWORD_SEARCH_TIMEOUT_MS")
    keyword_search_max_chunks: int = Field(default=20000, description="KEYWORD_SEARCH_MAX_CHUNKS")

    # Hybrid fusion
    enable_hybrid_search: bool = Field(default=True, description="ENABLE_HYBRID_SEARCH")
    hybrid_search_alpha: float = Field(default=0.7, ge=0.0, le=1.0, description="HYBRID_SEARCH_ALPHA")
    hybrid_adaptive_alpha: bool = Field(default=False, description="HYBRID_ADAPTIVE_ALPHA")

    # Reranking
    enable_llm_reranking: bool = Field(default=True, description="ENABLE_LLM_RERANKING")
    llm_reranker_model: str = Field(default="claude-3-haiku-20240307", description="LLM_RERANKER_MODEL")
    llm_reranker_api_key: Optional[str] = Field(default=None, description="LLM_RERANKER_API_KEY")
    llm_reranker_timeout_ms: int = Field(default=45000, description="LLM_RERANKER_TIMEOUT_MS")
    search_timeout_ms: int = Field(default=45000, description="SEARCH_TIMEOUT_MS")

    # Cache
    search_cache_ttl: int = Field(default=300, description="SEARCH_CACHE_TTL")
    search_cache_max_size: int = Field(default=1000, description="SEARCH_CACHE_MAX_SIZE")
    search_cache_max_results: int = Field(default=100, description="SEARCH_CACHE_MAX_RESULTS")

    # Context assembly
    context_window_size: int = Field(default=32000, description="CONTEXT_WINDOW_SIZE")
    context_reserved_tokens: int = Field(default=2000, description="CONTEXT_RESERVED_TOKENS")

    # File-change events
    file_events_enabled: bool = Field(default=True, description="FILE_EVENTS_ENABLED")
    file_events_channel_prefix: str = Field(default="code_search_events", description="FILE_EVENTS_CHANNEL_PREFIX")

    @property
    def default_token_budget(self) -> int:
        """Tokens available to assembled context after the reserved share."""
        return max(0, self.context_window_size - self.context_reserved_tokens)


def get_config(service_name: str) -> BaseConfig:
    """Get configuration for a specific service.

    Parameters
    - service_name: Literal name, currently only ``search``.

    Returns
    - A concrete ``BaseConfig`` subclass pre-wired to read the right env vars.
    """
    config_map = {
        "search": SearchConfig,
    }

    # Default to ``BaseConfig`` to avoid surprising crashes for unknown names.
    config_class = config_map.get(service_name, BaseConfig)
    return config_class()
