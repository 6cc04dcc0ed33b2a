"""Configuration and settings."""

import hashlib
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOCAL_INDEX_DIRNAME = ".code-recall"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="CODE_RECALL_",
        env_file=".env",
        extra="ignore",
    )

    # Storage settings
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".cache" / "code-recall")
    local_index: bool = False
    table_name: str = "code_chunks"
    metadata_filename: str = "index-metadata.json"
    semantic_cache_filename: str = "semantic-cache.json"

    # Chunk store settings
    embedding_dim: int = Field(default=1536, gt=0)
    distance_metric: Literal["cosine", "dot", "l2"] = "cosine"

    # Hybrid search settings
    search_top_k: int = Field(default=5, ge=1)
    vector_weight: float = 0.5
    keyword_weight: float = 0.3
    dependency_weight: float = 0.2
    dependency_max_hops: int = Field(default=2, ge=1)
    candidate_multiplier: int = Field(default=4, ge=1)
    search_timeout: float | None = None  # Seconds; None waits for every signal

    # Incremental indexing settings
    include_extensions: list[str] = Field(
        default_factory=lambda: [".ts", ".tsx", ".js", ".jsx", ".py"]
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: [
            "node_modules/**",
            "dist/**",
            "build/**",
            ".next/**",
            ".venv/**",
            "__pycache__/**",
            ".git/**",
            f"{LOCAL_INDEX_DIRNAME}/**",
        ]
    )
    use_gitignore: bool = True
    git_timeout: float = 10.0
    hash_batch_size: int = Field(default=50, ge=1)
    metadata_version: str = "1.0.0"

    # Semantic cache settings
    cache_max_entries: int = Field(default=1000, ge=1)
    cache_ttl_seconds: float = 7 * 24 * 60 * 60
    cache_similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    cache_similarity_enabled: bool = True
    cache_persist: bool = False

    # Runtime settings
    debug: bool = False
    profile: bool = False
    profile_threshold_ms: float = Field(default=0.0, ge=0.0)  # Slower calls keep a report


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings, loaded once from the environment."""
    return Settings()


def get_index_path(settings: Settings, project_path: Path) -> Path:
    """Get the index storage path for a project.

    Args:
        settings: Application settings.
        project_path: Path to the project root.

    Returns:
        Path where the index (chunk table, metadata, cache) should be stored.
    """
    if settings.local_index:
        return project_path / LOCAL_INDEX_DIRNAME

    # Hash the absolute path for global cache
    path_hash = hashlib.sha256(str(project_path.resolve()).encode()).hexdigest()[:16]
    return settings.cache_dir / path_hash
