"""Models for the semantic generation cache."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(tz=UTC)


class GenerationRequest(BaseModel):
    """The defining fields of an expensive generation call."""

    provider: str
    model: str
    prompt: str
    temperature: float = 0.0
    max_tokens: int | None = None
    embedding: list[float] | None = None  # Prompt embedding, if the caller already has one


class GenerationResponse(BaseModel):
    """A generation result worth caching."""

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CacheEntry(BaseModel):
    """A cached (request, response) pair."""

    fingerprint: str
    provider: str
    model: str
    prompt: str
    embedding: list[float] | None = None
    response: GenerationResponse
    created_at: datetime = Field(default_factory=_now)
    last_accessed_at: datetime = Field(default_factory=_now)
    hit_count: int = 0


class CacheStats(BaseModel):
    """Counters needed to judge whether the similarity threshold is well tuned."""

    total_entries: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    exact_hits: int = 0
    semantic_hits: int = 0
    avg_similarity: float = 0.0
    tokens_saved: int = 0
    evictions: int = 0
