from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    data_dir: Path = Path("/app/data")
    upload_dir: Path = Path("/app/data/files")
    backup_dir: Path = Path("/app/data/backup")
    db_url: str = "sqlite:////app/data/scribe.db"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_db_url(self) -> Settings:
        self.db_url = self.db_url.strip()
        if not self.db_url:
            raise ValueError(
                "DB_URL is not set. The job queue persists to the database and "
                "cannot start without a connection string."
            )
        return self

    # Durable queue
    queue_poll_interval_seconds: float = 2.0
    queue_schedule_check_seconds: float = 30.0
    queue_lease_seconds: int = 300
    queue_retry_limit: int = 2
    queue_retry_base_delay_seconds: int = 30
    queue_retry_max_delay_seconds: int = 600  # 10 minutes cap
    queue_delete_after_days: int = 7
    queue_maintenance_interval_seconds: int = 300

    # Embedding rebuild
    rebuild_batch_size: int = 5
    rebuild_max_attempts: int = 3
    rebuild_retry_backoff_seconds: float = 1.0  # multiplied by the attempt number
    rebuild_results_limit: int = 50
    rebuild_stop_timeout_seconds: float = 30.0

    # Auto archive
    auto_archive_days: int = 30

    # Recommendation fetch from followed sites
    recommend_concurrency: int = 5
    recommend_batch_pause_seconds: float = 0.1
    recommend_request_timeout_seconds: float = 10.0
    recommend_page_size: int = 30

    # Embedding backends
    qdrant_url: str = "http://qdrant:6333"
    ollama_url: str = "http://ollama:11434"
    embedding_model: str = "nomic-embed-text"
    # Optional cloud embedding fallback (OpenAI-compatible endpoint)
    fallback_embedding_url: str = ""       # e.g. "https://api.openai.com/v1"
    fallback_embedding_api_key: str = ""
    fallback_embedding_model: str = ""     # e.g. "text-embedding-3-small"


@lru_cache
def get_settings() -> Settings:
    return Settings()
