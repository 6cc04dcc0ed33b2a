"""Domain models for chunks, search, change detection, and indexing."""

import math
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ChunkKind(str, Enum):
    """Structural kind of a code chunk."""

    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    INTERFACE = "interface"
    TYPE = "type"
    VARIABLE = "variable"
    MODULE = "module"
    OTHER = "other"


class CodeChunk(BaseModel):
    """A unit of source code selected for retrieval."""

    id: str
    file_path: str
    name: str
    content: str
    kind: ChunkKind = ChunkKind.FUNCTION
    line_start: int = 1
    line_end: int = 1
    loc: int = Field(default=0, ge=0)
    complexity: float = Field(default=0.0, ge=0)
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def id_must_not_be_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("id must not be empty")
        return v

    @field_validator("line_start")
    @classmethod
    def line_start_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("line_start must be >= 1")
        return v

    @model_validator(mode="after")
    def line_end_gte_line_start(self) -> Self:
        if self.line_end < self.line_start:
            raise ValueError("line_end must be >= line_start")
        return self

    @property
    def extension(self) -> str:
        """File extension of the owning file, without the dot."""
        _, dot, ext = self.file_path.rpartition(".")
        return ext if dot else ""


class ChunkFilter(BaseModel):
    """Restricts which chunks a search may return."""

    kind: ChunkKind | None = None
    file_path: str | None = None
    min_complexity: float | None = None
    max_complexity: float | None = None
    exclude_files: list[str] = Field(default_factory=list)
    file_types: list[str] = Field(default_factory=list)

    def matches(self, chunk: CodeChunk) -> bool:
        """Check a chunk against every condition of the filter."""
        if self.kind is not None and chunk.kind != self.kind:
            return False
        if self.file_path is not None and chunk.file_path != self.file_path:
            return False
        if self.min_complexity is not None and chunk.complexity < self.min_complexity:
            return False
        if self.max_complexity is not None and chunk.complexity > self.max_complexity:
            return False
        if chunk.file_path in self.exclude_files:
            return False
        if self.file_types and chunk.extension not in {t.lstrip(".") for t in self.file_types}:
            return False
        return True


class ScoredChunk(BaseModel):
    """A chunk returned by the vector store with its normalized similarity."""

    chunk: CodeChunk
    score: float

    @field_validator("score")
    @classmethod
    def score_must_be_in_range(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("score must be between 0 and 1")
        return v


class StoreStats(BaseModel):
    """Size and shape of a chunk store."""

    total_chunks: int
    total_files: int
    dimension: int
    metric: str
    size_bytes: int

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / (1024 * 1024), 2)


class SearchStrategy(str, Enum):
    """A ranking signal of the hybrid search engine."""

    VECTOR = "vector"
    KEYWORD = "keyword"
    DEPENDENCY = "dependency"


class SearchWeights(BaseModel):
    """Relative weight of each ranking signal.

    Negative values are rejected by the search engine, not here, so that the
    engine can report them as ``InvalidWeights``.
    """

    vector: float = 0.5
    keyword: float = 0.3
    dependency: float = 0.2

    @property
    def total(self) -> float:
        return self.vector + self.keyword + self.dependency

    def has_negative(self) -> bool:
        return min(self.vector, self.keyword, self.dependency) < 0

    def normalized(self) -> Self:
        """Scale weights to sum to 1. All-zero weights stay all-zero."""
        total = self.total
        if total == 0 or math.isclose(total, 1.0):
            return self.model_copy()
        return SearchWeights(
            vector=self.vector / total,
            keyword=self.keyword / total,
            dependency=self.dependency / total,
        )

    def for_strategy(self, strategy: SearchStrategy) -> float:
        return getattr(self, strategy.value)


class SearchQuery(BaseModel):
    """A hybrid search request. Every signal input is optional."""

    text: str = ""
    embedding: list[float] | None = None
    file_path: str | None = None
    top_k: int = Field(default=5, ge=1)
    weights: SearchWeights = Field(default_factory=SearchWeights)
    filter: ChunkFilter | None = None


class ScoreBreakdown(BaseModel):
    """Per-signal scores; a signal that did not fire is None."""

    vector: float | None = None
    keyword: float | None = None
    dependency: float | None = None


class SearchResult(BaseModel):
    """A ranked chunk with an explainable score."""

    chunk: CodeChunk
    score: float
    scores: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    matched_by: list[SearchStrategy] = Field(default_factory=list)
    weights: SearchWeights = Field(default_factory=SearchWeights)


class StrategyHits(BaseModel):
    """Number of searches with at least one result from each signal."""

    vector: int = 0
    keyword: int = 0
    dependency: int = 0


class SearchStats(BaseModel):
    """Running counters of a hybrid search engine."""

    total_searches: int = 0
    avg_response_ms: float = 0.0
    strategy_hits: StrategyHits = Field(default_factory=StrategyHits)
    timeouts: int = 0


class ChangeKind(str, Enum):
    """How a file changed since the last index run."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class FileChangeInfo(BaseModel):
    """One detected file change, uniform across detectors."""

    file_path: str
    change_kind: ChangeKind
    hash: str = ""
    timestamp: int  # epoch milliseconds
    detector: str = ""


class IndexMetadata(BaseModel):
    """Durable record of what the index currently reflects.

    Serialized with the camelCase keys of the on-disk layout:
    ``{version, lastIndexedAt, fileHashes: [[path, hash], ...], projectPath}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: str
    last_indexed_at: int = Field(alias="lastIndexedAt")  # epoch milliseconds
    file_hashes: dict[str, str] = Field(default_factory=dict, alias="fileHashes")
    project_path: str = Field(alias="projectPath")

    @field_validator("file_hashes", mode="before")
    @classmethod
    def pairs_to_mapping(cls, v: Any) -> Any:
        if isinstance(v, list):
            if not all(
                isinstance(pair, (list, tuple))
                and len(pair) == 2
                and all(isinstance(item, str) for item in pair)
                for pair in v
            ):
                raise ValueError("fileHashes must be a list of [path, hash] pairs")
            return {path: digest for path, digest in v}
        return v

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lastIndexedAt": self.last_indexed_at,
            "fileHashes": [[path, digest] for path, digest in self.file_hashes.items()],
            "projectPath": self.project_path,
        }


class IndexStrategy(str, Enum):
    """Whether an indexing cycle must rebuild everything."""

    FULL = "full"
    INCREMENTAL = "incremental"


FULL_REINDEX = -1


class IncrementalUpdateResult(BaseModel):
    """Outcome of change detection for one indexing cycle."""

    changed_files: list[str]
    affected_files: list[str] = Field(default_factory=list)
    changes: list[FileChangeInfo] = Field(default_factory=list)
    total_files_to_reindex: int
    strategy: IndexStrategy
    duration_ms: float = 0.0

    @property
    def is_full(self) -> bool:
        return self.strategy == IndexStrategy.FULL

    @property
    def deleted_files(self) -> list[str]:
        return [c.file_path for c in self.changes if c.change_kind == ChangeKind.DELETED]

    @property
    def files_to_index(self) -> list[str]:
        """Changed (not deleted) plus affected files, in a stable order."""
        deleted = set(self.deleted_files)
        ordered = [f for f in self.changed_files if f not in deleted] + self.affected_files
        return list(dict.fromkeys(ordered))


class IndexResult(BaseModel):
    """Result of an indexing cycle run by the index service."""

    strategy: IndexStrategy
    files_indexed: int
    files_deleted: int
    files_affected: int = 0
    chunks_indexed: int
    chunks_rejected: int = 0
    duration_seconds: float = 0.0


class IndexStatus(BaseModel):
    """Status of the index for a project."""

    is_indexed: bool
    last_indexed_at: int | None
    files_count: int
    chunks_count: int
    pending_changes: int
