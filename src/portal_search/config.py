"""Application configuration via pydantic-settings."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_SYNONYMS = Path(__file__).resolve().parent / "synonyms.yaml"


class Settings(BaseSettings):
    """All runtime configuration, loaded from environment / .env file."""

    # Search backend
    opensearch_url: str = "http://localhost:9200"
    opensearch_index_prefix: str = "backstage"
    opensearch_auth_type: Literal["none", "basic", "bearer"] = "none"
    opensearch_username: str | None = None
    opensearch_password: str | None = None
    opensearch_token: str | None = None
    opensearch_verify_tls: bool = True

    ranking_source_weight: float = 2.0
    ranking_tag_weight: float = 1.5

    # Feature toggles
    enable_rewrite: bool = False
    enable_rerank: bool = False
    enable_semantic: bool = False

    # Query rewrite
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-haiku-4-5"
    rewrite_temperature: float = 0.3
    synonyms_path: Path = _DEFAULT_SYNONYMS
    max_query_len: int = 512

    # Stage budgets
    rewrite_budget_ms: int = 120
    embed_budget_ms: int = 250
    rerank_budget_ms: int = 80

    # Privacy
    redact_emails: bool = True
    redact_tokens: bool = True
    redact_ips: bool = False
    redact_phone_numbers: bool = False
    redact_ssns: bool = False

    # Re-ranking
    rerank_provider: Literal["heuristic", "cross-encoder"] = "heuristic"
    rerank_top_k: int = 50
    freshness_days: int = 30
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"

    # Embeddings
    embedding_provider: Literal["hash", "sentence-transformers"] = "hash"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    vector_dim: int = 384

    # Cache
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Circuit breakers
    rewrite_breaker_threshold: int = 5
    rewrite_breaker_reset_s: float = 60.0
    embedding_breaker_threshold: int = 3
    embedding_breaker_reset_s: float = 30.0

    # Ingestion
    ingest_page_size: int = 500
    catalog_source_url: str | None = None
    techdocs_source_url: str | None = None
    apis_source_url: str | None = None

    observability_sample_rate: float = 0.0
    port: int = 7777
    log_level: str = "INFO"
    environment: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


# Module-level singleton; imported everywhere.
settings = Settings()
