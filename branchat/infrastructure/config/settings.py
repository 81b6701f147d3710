"""Service configuration via pydantic-settings.

Every value can be overridden with a ``BRANCHAT_``-prefixed environment
variable or a ``.env`` file, e.g. ``BRANCHAT_MAX_TOTAL_TOKENS=4000``.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from environment variables and .env file"""

    model_config = SettingsConfigDict(
        env_prefix="BRANCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Context limits
    recent_message_count: int = 10
    semantic_search_results: int = 5
    subchat_histories: int = 5
    previous_conversations: int = 3
    max_total_tokens: int = 8000
    semantic_threshold: float = 0.7
    embedding_batch_size: int = 10

    # Memory index
    memory_backend: Literal["memory", "sqlite"] = "memory"
    memory_db_path: str = "data/memory.db"
    memory_vector_support: bool = True
    memory_top_k: int = 5
    memory_similarity_threshold: float = 0.7

    # Generation
    llm_provider: str = "google_genai"
    llm_model: str = "gemini-1.5-pro"
    embedding_provider: Optional[str] = "google_vertexai"
    embedding_model: str = "text-embedding-004"
    max_tokens: int = 2000
    temperature: float = 0.7

    # Streaming
    heartbeat_interval_seconds: float = 15.0

    # Background work
    embedding_workers: int = 2
    usage_log_size: int = 10000

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    service_name: str = "branchat-context"
    environment: str = "development"


class ContextLimits(BaseModel):
    """Per-tier limits used by the context assembler"""
    recent_messages: int = 10
    semantic_search_results: int = 5
    subchat_histories: int = 5
    previous_conversations: int = 3
    max_total_tokens: int = 8000
    semantic_threshold: float = 0.7
    embedding_batch_size: int = 10

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ContextLimits":
        settings = settings or get_settings()
        return cls(
            recent_messages=settings.recent_message_count,
            semantic_search_results=settings.semantic_search_results,
            subchat_histories=settings.subchat_histories,
            previous_conversations=settings.previous_conversations,
            max_total_tokens=settings.max_total_tokens,
            semantic_threshold=settings.semantic_threshold,
            embedding_batch_size=settings.embedding_batch_size,
        )


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance"""
    return Settings()
