"""
convosync configuration.

Centralized configuration management using Pydantic Settings. Values come from
``CONVOSYNC_``-prefixed environment variables or a local ``.env`` file.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_data_dir() -> Path:
    return Path.home() / ".convosync"


def default_claude_code_root() -> Path:
    return Path.home() / ".claude"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CONVOSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default_factory=default_data_dir)
    write_batch_size: int = Field(default=500, gt=0)
    storage_max_attempts: int = Field(default=4, gt=0)
    storage_backoff_seconds: float = Field(default=0.2, ge=0)

    # Sources
    claude_code_root: Path = Field(default_factory=default_claude_code_root)
    extraction_concurrency: int = Field(default=4, gt=0)

    # Indexing
    scalar_index_threshold: int = Field(default=100, gt=0)

    # Locking
    lock_stale_after_seconds: float = Field(default=600.0, gt=0)

    # Embeddings
    embedding_dimensions: int = Field(default=384, gt=0)
    embedding_batch_size: int = Field(default=32, gt=0)
    worker_spawn_retries: int = Field(default=3, gt=0)
    worker_verify_delay_seconds: float = Field(default=1.5, ge=0)

    # Enrichment
    enrich_titles: bool = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / "convosync.db"

    @property
    def vector_path(self) -> Path:
        return self.data_dir / "vectors"

    @property
    def lock_path(self) -> Path:
        return self.data_dir / "sync.lock"

    @property
    def embedding_progress_path(self) -> Path:
        return self.data_dir / "embedding-progress.json"

    @property
    def sync_cache_path(self) -> Path:
        return self.data_dir / "sync-cache.json"

    @property
    def worker_log_path(self) -> Path:
        return self.data_dir / "embed.log"

    def ensure_data_dir(self) -> Path:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir
