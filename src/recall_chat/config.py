"""Application settings loaded from environment variables."""

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration. Built once at startup and handed to each component."""

    # Gemini
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    completion_model: str = Field(default="gemini-1.5-flash")
    embedding_model: str = Field(default="models/text-embedding-004")

    # Conversational completion
    max_completion_tokens: int = Field(default=500, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    response_format: Literal["text", "json"] = Field(default="text")
    completion_timeout: float = Field(default=30.0, gt=0)

    # Retry policy for transient upstream failures
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1.0)
    retry_jitter: float = Field(default=0.5, ge=0, le=1.0)

    # Memory
    max_user_memories: int = Field(default=100, gt=0)
    max_session_memories: int = Field(default=30, gt=0)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    extraction_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    extraction_max_tokens: int = Field(default=800, gt=0)
    # Directory for persisted memories; empty keeps them in process memory only
    memory_storage_path: str = Field(default="storage/memories")

    # Background extraction workers
    extraction_workers: int = Field(default=2, ge=1)
    extraction_queue_size: int = Field(default=100, ge=1)
    shutdown_timeout: float = Field(default=10.0, ge=0)

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Diagnostics
    debug_mode: bool = Field(
        default=False,
        validation_alias=AliasChoices("RECALL_CHAT_DEBUG_MODE", "SHOW_MEMORY_DEBUG"),
    )

    model_config = SettingsConfigDict(
        env_prefix="RECALL_CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )
