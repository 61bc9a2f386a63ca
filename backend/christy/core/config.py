"""Application configuration settings."""

import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


GOOGLE_EMBEDDING_CANDIDATES = [
    "models/text-embedding-004",
    "models/gemini-embedding-001",
    "models/text-embedding-001",
    "models/embedding-001",
]

OPENAI_EMBEDDING_CANDIDATES = [
    "text-embedding-3-small",
    "text-embedding-3-large",
    "text-embedding-ada-002",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Christy"
    app_version: str = "0.1.0"
    debug: bool = False
    api_prefix: str = "/api/v1"

    # Embedding provider
    embedding_provider: str = "google"  # "google" | "openai" | "none"
    gemini_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    embedding_model: Optional[str] = None  # explicit override, no probing
    embedding_model_candidates: Optional[list[str]] = None
    embed_min_dimensions: int = 10
    embed_probe_cooldown_seconds: float = 300.0

    # Provider resilience
    embed_batch_size: int = 16
    embed_batch_delay_ms: int = 350
    embed_max_retries: int = 8

    # Query embedding cache
    query_cache_size: int = 200
    query_cache_max_chars: int = 5000
    query_cache_casefold: bool = False

    # Knowledge base
    rag_data_dir: str = "data/rag"
    knowledge_base_path: str = "data/rag/knowledge_base.json"
    chunk_max_chars: int = 800

    # Retrieval
    rag_top_k: int = 8
    rag_query_timeout_seconds: Optional[float] = None
    metadata_boosts: dict[str, float] = {
        "model_name": 0.04,
        "product_id": 0.02,
        "category": 0.01,
    }
    lexical_pricing_bonus: float = 2.0
    context_max_chars: int = 7000

    # Observability
    log_level: str = "INFO"
    log_file: Optional[str] = None
    metrics_backend: str = "inmemory"  # "inmemory" | "prometheus"

    @property
    def embedding_enabled(self) -> bool:
        return self.embedding_provider.lower() != "none"

    def model_candidates(self) -> list[str]:
        """Candidate embedding models in probe order for the configured provider."""
        if self.embedding_model_candidates:
            return list(self.embedding_model_candidates)
        if self.embedding_provider.lower() == "openai":
            return list(OPENAI_EMBEDDING_CANDIDATES)
        return list(GOOGLE_EMBEDDING_CANDIDATES)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Warns when the configured embedding provider has no credential; the
    failure itself is raised when the provider is first constructed.
    """
    settings = Settings()

    provider = settings.embedding_provider.lower()
    if provider == "google" and not settings.gemini_api_key:
        logger.warning(
            "embedding_provider is 'google' but GEMINI_API_KEY is not set. "
            "Set EMBEDDING_PROVIDER=none for lexical-only retrieval."
        )
    elif provider == "openai" and not settings.openai_api_key:
        logger.warning(
            "embedding_provider is 'openai' but OPENAI_API_KEY is not set. "
            "Set EMBEDDING_PROVIDER=none for lexical-only retrieval."
        )

    return settings
