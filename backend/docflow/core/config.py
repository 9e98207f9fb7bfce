"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ------------------------------------------------------------------
    # Ingestion limits
    # ------------------------------------------------------------------
    max_file_size_bytes: int = 10 * 1024 * 1024   # 10 MB
    allowed_content_kinds: list[str] = Field(
        default_factory=lambda: ["pdf", "docx", "txt", "md", "csv", "json", "html"],
    )
    max_document_name_length: int = 255

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------
    chunk_size:         int = 1000   # characters, not tokens
    chunk_overlap:      int = 200
    text_preview_chars: int = 200
    content_search_limit: int = Field(5, ge=1, le=50)   # default matches per search

    # ------------------------------------------------------------------
    # Job queue (in-process worker pool)
    # ------------------------------------------------------------------
    worker_pool_size:        int   = Field(2, ge=1)
    job_max_attempts:        int   = Field(3, ge=1)
    job_retry_delay_seconds: float = 5.0     # base backoff, doubled per attempt
    job_timeout_seconds:     float = 120.0
    ocr_timeout_multiplier:  float = 3.0
    default_job_priority:    int   = Field(5, ge=0, le=10)

    # ------------------------------------------------------------------
    # Processing events + streaming
    # ------------------------------------------------------------------
    event_history_cap:          int   = 100   # per document, oldest evicted
    status_event_limit:         int   = 5
    subscriber_queue_size:      int   = 256
    heartbeat_interval_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Watchdog: force-fails documents stuck in a non-terminal state
    # ------------------------------------------------------------------
    watchdog_interval_seconds: float = 300.0
    stale_document_seconds:    float = 1800.0

    # ------------------------------------------------------------------
    # Repository backend
    # ------------------------------------------------------------------
    repository_backend: str = "memory"   # "memory" | "sql"
    database_url: str = "sqlite+aiosqlite:///./docflow.db"
    db_echo_sql:  bool = False

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False

    @model_validator(mode="after")
    def _check_chunking(self) -> "Settings":
        from docflow.processing.chunking import validate_chunk_params

        validate_chunk_params(self.chunk_size, self.chunk_overlap)
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
