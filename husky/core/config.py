"""
Application configuration and settings management.
Uses Pydantic Settings for type-safe environment variable handling.

Provider selection (exactly one per process):
  - openrouter: OpenRouter chat + embeddings (default)
  - nvidia: NVIDIA NIM chat + embeddings
  - openai: OpenAI-compatible endpoint at OPENAI_BASE_URL
"""

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALL_COLLECTIONS = ["member", "team", "project", "focusArea", "irlEvent", "webDoc"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Application
    app_env: str = Field(default="development", alias="APP_ENV")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Provider Selection
    llm_provider: Literal["openrouter", "nvidia", "openai"] = Field(
        default="openrouter", alias="LLM_PROVIDER"
    )

    # OpenRouter Configuration
    openrouter_api_key: Optional[str] = Field(default=None, alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_BASE_URL"
    )
    openrouter_model: str = Field(
        default="meta-llama/llama-3.3-70b-instruct", alias="OPENROUTER_MODEL"
    )
    openrouter_embedding_model: str = Field(
        default="qwen/qwen3-embedding-8b", alias="OPENROUTER_EMBEDDING_MODEL"
    )
    openrouter_embedding_dimension: int = Field(
        default=4096, alias="OPENROUTER_EMBEDDING_DIMENSION"
    )

    # NVIDIA NIM Configuration
    nvidia_api_key: Optional[str] = Field(default=None, alias="NVIDIA_API_KEY")
    nvidia_base_url: str = Field(
        default="https://integrate.api.nvidia.com/v1", alias="NVIDIA_BASE_URL"
    )
    nvidia_model: str = Field(default="meta/llama-3.3-70b-instruct", alias="NVIDIA_MODEL")
    nvidia_embedding_model: str = Field(
        default="nvidia/llama-3.2-nv-embedqa-1b-v2", alias="NVIDIA_EMBEDDING_MODEL"
    )
    nvidia_embedding_dimension: int = Field(
        default=2048, alias="NVIDIA_EMBEDDING_DIMENSION"
    )

    # Generic OpenAI-compatible Configuration
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1", alias="OPENAI_BASE_URL"
    )
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_embedding_model: str = Field(
        default="text-embedding-3-small", alias="OPENAI_EMBEDDING_MODEL"
    )
    openai_embedding_dimension: int = Field(
        default=1536, alias="OPENAI_EMBEDDING_DIMENSION"
    )

    # Per-collection dimension overrides, e.g. {"webDoc": 1024}
    collection_dimensions: Dict[str, int] = Field(
        default_factory=dict, alias="COLLECTION_DIMENSIONS"
    )

    @property
    def embedding_dimension(self) -> int:
        """Return active embedding dimension based on provider."""
        if self.llm_provider == "nvidia":
            return self.nvidia_embedding_dimension
        if self.llm_provider == "openai":
            return self.openai_embedding_dimension
        return self.openrouter_embedding_dimension

    def dimension_for(self, collection: str) -> int:
        return self.collection_dimensions.get(collection, self.embedding_dimension)

    # Gateway Policy
    llm_timeout_seconds: float = Field(default=30.0, alias="LLM_TIMEOUT_SECONDS")
    llm_max_attempts: int = Field(default=3, alias="LLM_MAX_ATTEMPTS")
    llm_retry_min_wait: float = Field(default=1.0, alias="LLM_RETRY_MIN_WAIT")
    llm_retry_max_wait: float = Field(default=30.0, alias="LLM_RETRY_MAX_WAIT")
    llm_rate_limit_max_wait: float = Field(default=60.0, alias="LLM_RATE_LIMIT_MAX_WAIT")
    circuit_failure_threshold: int = Field(default=5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_cooldown_seconds: float = Field(default=30.0, alias="CIRCUIT_COOLDOWN_SECONDS")

    # Rate Limiting (0 disables the local throttle)
    api_requests_per_minute: int = Field(default=40, alias="API_REQUESTS_PER_MINUTE")

    # Embedding Batch Settings
    embedding_batch_size: int = Field(default=50, alias="EMBEDDING_BATCH_SIZE")

    # Completion
    completion_temperature: float = Field(default=0.2, alias="COMPLETION_TEMPERATURE")
    completion_max_tokens: int = Field(default=1024, alias="COMPLETION_MAX_TOKENS")

    # Retrieval
    retrieval_collections: List[str] = Field(
        default_factory=lambda: list(ALL_COLLECTIONS), alias="RETRIEVAL_COLLECTIONS"
    )
    retrieval_top_k: int = Field(default=5, alias="RETRIEVAL_TOP_K")
    retrieval_min_similarity: float = Field(default=0.5, alias="RETRIEVAL_MIN_SIMILARITY")
    retrieval_max_documents: int = Field(default=8, alias="RETRIEVAL_MAX_DOCUMENTS")

    # Summarization
    summary_trigger: Literal["messages", "tokens"] = Field(
        default="messages", alias="SUMMARY_TRIGGER"
    )
    summary_threshold_messages: int = Field(default=20, alias="SUMMARY_THRESHOLD_MESSAGES")
    summary_threshold_tokens: int = Field(default=3000, alias="SUMMARY_THRESHOLD_TOKENS")
    summary_keep_recent: int = Field(default=6, alias="SUMMARY_KEEP_RECENT")
    summary_wait_seconds: float = Field(default=2.0, alias="SUMMARY_WAIT_SECONDS")
    summary_max_tokens: int = Field(default=512, alias="SUMMARY_MAX_TOKENS")

    # Cache
    cache_ttl_seconds: float = Field(default=900.0, alias="CACHE_TTL_SECONDS")

    # Concurrency
    chat_max_concurrency: int = Field(default=32, alias="CHAT_MAX_CONCURRENCY")
    ingestion_concurrency: int = Field(default=4, alias="INGESTION_CONCURRENCY")
    ingestion_interval_seconds: float = Field(
        default=3600.0, alias="INGESTION_INTERVAL_SECONDS"
    )

    # Storage Paths
    data_dir: Path = Field(default=Path("./data"), alias="DATA_DIR")
    sqlite_db_path: Path = Field(
        default=Path("./data/husky.db"), alias="SQLITE_DB_PATH"
    )
    vector_db_path: Path = Field(
        default=Path("./data/vectors.db"), alias="VECTOR_DB_PATH"
    )
    directory_export_path: Path = Field(
        default=Path("./data/directory.json"), alias="DIRECTORY_EXPORT_PATH"
    )

    # Chat Input Limits
    max_message_chars: int = Field(default=4000, alias="MAX_MESSAGE_CHARS")
    feedback_min_rating: int = Field(default=1, alias="FEEDBACK_MIN_RATING")
    feedback_max_rating: int = Field(default=5, alias="FEEDBACK_MAX_RATING")

    # Links rendered into chat actions
    directory_base_url: str = Field(
        default="https://directory.plnetwork.io", alias="DIRECTORY_BASE_URL"
    )

    @model_validator(mode="after")
    def _check_limits(self):
        if self.ingestion_concurrency >= self.chat_max_concurrency:
            raise ValueError(
                "INGESTION_CONCURRENCY must be smaller than CHAT_MAX_CONCURRENCY"
            )
        if self.summary_keep_recent > self.summary_threshold_messages:
            raise ValueError(
                "SUMMARY_KEEP_RECENT must not exceed SUMMARY_THRESHOLD_MESSAGES"
            )
        unknown = set(self.retrieval_collections) - set(ALL_COLLECTIONS)
        if unknown:
            raise ValueError(f"Unknown retrieval collections: {sorted(unknown)}")
        return self

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_db_path.parent.mkdir(parents=True, exist_ok=True)
        self.vector_db_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
