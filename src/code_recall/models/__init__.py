"""Domain and cache models."""

from code_recall.models.cache import (
    CacheEntry,
    CacheStats,
    GenerationRequest,
    GenerationResponse,
)
from code_recall.models.domain import (
    FULL_REINDEX,
    ChangeKind,
    ChunkFilter,
    ChunkKind,
    CodeChunk,
    FileChangeInfo,
    IncrementalUpdateResult,
    IndexMetadata,
    IndexResult,
    IndexStatus,
    IndexStrategy,
    ScoreBreakdown,
    ScoredChunk,
    SearchQuery,
    SearchResult,
    SearchStats,
    SearchStrategy,
    SearchWeights,
    StoreStats,
    StrategyHits,
)

__all__ = [
    "FULL_REINDEX",
    # Cache
    "CacheEntry",
    "CacheStats",
    # Domain
    "ChangeKind",
    "ChunkFilter",
    "ChunkKind",
    "CodeChunk",
    "FileChangeInfo",
    "GenerationRequest",
    "GenerationResponse",
    "IncrementalUpdateResult",
    "IndexMetadata",
    "IndexResult",
    "IndexStatus",
    "IndexStrategy",
    "ScoreBreakdown",
    "ScoredChunk",
    "SearchQuery",
    "SearchResult",
    "SearchStats",
    "SearchStrategy",
    "SearchWeights",
    "StoreStats",
    "StrategyHits",
]
