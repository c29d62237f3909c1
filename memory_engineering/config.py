"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with MEMORY_ENGINEERING_ prefix.
Example: MEMORY_ENGINEERING_LOG_LEVEL=DEBUG

The embedding provider key also honours the conventional VOYAGE_API_KEY.
"""

import logging
from pathlib import Path
from typing import Optional, List
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Memory Engineering configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="MEMORY_ENGINEERING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Core paths
    project_root: str = "."
    storage_path: Optional[str] = None  # Auto-detect if not set

    # Server
    log_level: str = "INFO"

    # Embedding provider (Voyage AI)
    voyage_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MEMORY_ENGINEERING_VOYAGE_API_KEY", "VOYAGE_API_KEY"),
    )
    voyage_url: str = "https://api.voyageai.com/v1/embeddings"
    embedding_model: str = "voyage-3"
    embedding_dimensions: int = 1024  # Fixed for the lifetime of an index
    embedding_batch_size: int = 50    # Provider limit per request
    request_timeout: float = 30.0     # Seconds, no silent retry

    # Qdrant vector storage
    qdrant_path: Optional[str] = None  # Auto-detect if not set
    index_ready_attempts: int = 10
    index_ready_interval: float = 0.5  # Seconds between readiness polls

    # Hybrid search
    hybrid_vector_weight: float = 0.7
    hybrid_text_weight: float = 0.3
    rrf_k: int = 60
    search_oversample: int = 10  # Candidate pool = limit * oversample
    search_max_limit: int = 50
    preview_length: int = 200

    # Quality gate - lowest grade still accepted
    min_quality_grade: str = "D"

    # Loop guard
    loop_max_calls: int = 3
    loop_window_minutes: int = 10
    terminal_state_ttl_hours: int = 24

    # Working memory TTL
    working_memory_ttl_days: int = 30

    # Code indexing
    code_patterns: List[str] = ["**/*.ts", "**/*.js", "**/*.py"]
    code_skip_dirs: List[str] = [
        "node_modules", ".git", "dist", "build", "coverage", "__pycache__",
        ".venv", "venv", ".tox", ".mypy_cache", ".pytest_cache", ".memory-engineering"
    ]
    min_chunk_size: int = 5  # Lines
    max_file_size: int = 1_000_000  # Bytes

    def get_storage_path(self, project_path: Optional[str] = None) -> str:
        """
        Determine storage path with project isolation.

        Priority:
        1. storage_path setting (explicit override via MEMORY_ENGINEERING_STORAGE_PATH)
        2. <project>/.memory-engineering/storage
        """
        if self.storage_path:
            Path(self.storage_path).mkdir(parents=True, exist_ok=True)
            return self.storage_path

        project = Path(project_path or self.project_root).resolve()
        storage = project / ".memory-engineering" / "storage"
        storage.mkdir(parents=True, exist_ok=True)
        logger.info(f"Using project-specific storage: {storage}")
        return str(storage)

    def get_qdrant_path(self, project_path: Optional[str] = None) -> str:
        """Local Qdrant directory, next to the SQLite database unless overridden."""
        if self.qdrant_path:
            return self.qdrant_path
        return str(Path(self.get_storage_path(project_path)) / "qdrant")

    def validate_for_startup(self) -> None:
        """
        Fail fast on configuration the server cannot run without.

        Raises:
            ConfigurationError: credentials missing or numeric settings out of range.
        """
        if not self.voyage_api_key:
            raise ConfigurationError(
                "VOYAGE_API_KEY is not set. Export VOYAGE_API_KEY or "
                "MEMORY_ENGINEERING_VOYAGE_API_KEY before starting the server."
            )
        if self.embedding_dimensions <= 0:
            raise ConfigurationError("embedding_dimensions must be positive")
        if not 0 < self.embedding_batch_size <= 128:
            raise ConfigurationError("embedding_batch_size must be between 1 and 128")
        if self.hybrid_vector_weight < 0 or self.hybrid_text_weight < 0:
            raise ConfigurationError("hybrid weights must be non-negative")


# Global settings instance
settings = Settings()
