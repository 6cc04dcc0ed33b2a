"""Exact + approximate-match cache for expensive generation calls."""

import hashlib
import json
import tempfile
import threading
from collections import OrderedDict
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Self

import numpy as np
import structlog
from pydantic import ValidationError

from code_recall.config import Settings
from code_recall.models import CacheEntry, CacheStats, GenerationRequest, GenerationResponse
from code_recall.protocols import EmbedderProtocol

log = structlog.get_logger()

CACHE_FORMAT_VERSION = 1


def fingerprint(request: GenerationRequest) -> str:
    """SHA-256 over every field that defines a generation call."""
    key = json.dumps(
        [request.provider, request.model, request.prompt, request.temperature, request.max_tokens],
        ensure_ascii=False,
    )
    return hashlib.sha256(key.encode()).hexdigest()


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


class SemanticCache:
    """LRU cache keyed by request fingerprint, with a similarity fallback.

    A lookup first tries the exact fingerprint. On a miss, and when a prompt
    embedding is available, the closest entry for the same provider and
    model is returned if its cosine similarity reaches the threshold.
    Thread-safe; one instance per logical index.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 7 * 24 * 60 * 60,
        similarity_threshold: float = 0.85,
        similarity_enabled: bool = True,
        embedder: EmbedderProtocol | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl = timedelta(seconds=ttl_seconds)
        self.similarity_threshold = similarity_threshold
        self.similarity_enabled = similarity_enabled
        self.embedder = embedder

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._reset_counters()

    @classmethod
    def from_settings(cls, settings: Settings, embedder: EmbedderProtocol | None = None) -> Self:
        return cls(
            max_entries=settings.cache_max_entries,
            ttl_seconds=settings.cache_ttl_seconds,
            similarity_threshold=settings.cache_similarity_threshold,
            similarity_enabled=settings.cache_similarity_enabled,
            embedder=embedder,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _reset_counters(self) -> None:
        self._exact_hits = 0
        self._semantic_hits = 0
        self._misses = 0
        self._similarity_sum = 0.0
        self._tokens_saved = 0
        self._evictions = 0

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at >= self.ttl

    def _embedding_for(self, request: GenerationRequest) -> list[float] | None:
        if request.embedding is not None:
            return request.embedding
        if self.embedder is None:
            return None
        try:
            return self.embedder.embed_text(request.prompt)
        except Exception as e:  # noqa: BLE001
            log.warning("cache_embedding_failed", provider=request.provider, error=str(e))
            return None

    def get(self, request: GenerationRequest) -> GenerationResponse | None:
        """Look up a cached response.

        Returns:
            The cached response, or None on a miss.
        """
        key = fingerprint(request)
        now = datetime.now(tz=UTC)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if not self._is_expired(entry, now):
                    self._exact_hits += 1
                    return self._touch(entry, now)
                del self._entries[key]
                log.debug("cache_entry_expired", fingerprint=key[:12])

            if not self.similarity_enabled:
                self._misses += 1
                return None

        embedding = self._embedding_for(request)

        with self._lock:
            if embedding is None:
                self._misses += 1
                return None

            match, similarity = self._closest(request, embedding, now)
            if match is None or similarity < self.similarity_threshold:
                self._misses += 1
                return None

            self._semantic_hits += 1
            self._similarity_sum += similarity
            log.debug("cache_semantic_hit", fingerprint=match.fingerprint[:12], similarity=similarity)
            return self._touch(match, now)

    def _closest(
        self, request: GenerationRequest, embedding: list[float], now: datetime
    ) -> tuple[CacheEntry | None, float]:
        query = np.asarray(embedding, dtype=np.float64)
        best: CacheEntry | None = None
        best_similarity = -1.0

        for key in list(self._entries):
            entry = self._entries[key]
            if self._is_expired(entry, now):
                del self._entries[key]
                continue
            if entry.provider != request.provider or entry.model != request.model:
                continue
            if entry.embedding is None or len(entry.embedding) != len(embedding):
                continue
            similarity = cosine_similarity(query, np.asarray(entry.embedding, dtype=np.float64))
            if similarity > best_similarity:
                best, best_similarity = entry, similarity

        return best, best_similarity

    def _touch(self, entry: CacheEntry, now: datetime) -> GenerationResponse:
        entry.hit_count += 1
        entry.last_accessed_at = now
        self._entries.move_to_end(entry.fingerprint)
        self._tokens_saved += entry.response.total_tokens
        return entry.response.model_copy()

    def set(self, request: GenerationRequest, response: GenerationResponse) -> CacheEntry:
        """Store a response, evicting least recently used entries beyond capacity."""
        embedding = self._embedding_for(request) if self.similarity_enabled else request.embedding
        entry = CacheEntry(
            fingerprint=fingerprint(request),
            provider=request.provider,
            model=request.model,
            prompt=request.prompt,
            embedding=embedding,
            response=response,
        )
        with self._lock:
            self._put(entry)
        return entry

    def _put(self, entry: CacheEntry) -> None:
        self._entries[entry.fingerprint] = entry
        self._entries.move_to_end(entry.fingerprint)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            log.debug("cache_entry_evicted", fingerprint=evicted[:12])

    def warmup(self, pairs: Iterable[tuple[GenerationRequest, GenerationResponse]]) -> int:
        """Preload known (request, response) pairs.

        Returns:
            Number of entries stored.
        """
        count = 0
        for request, response in pairs:
            self.set(request, response)
            count += 1
        log.info("cache_warmed_up", entries=count)
        return count

    def get_stats(self) -> CacheStats:
        with self._lock:
            hits = self._exact_hits + self._semantic_hits
            lookups = hits + self._misses
            return CacheStats(
                total_entries=len(self._entries),
                hits=hits,
                misses=self._misses,
                hit_rate=hits / lookups if lookups else 0.0,
                exact_hits=self._exact_hits,
                semantic_hits=self._semantic_hits,
                avg_similarity=(
                    self._similarity_sum / self._semantic_hits if self._semantic_hits else 0.0
                ),
                tokens_saved=self._tokens_saved,
                evictions=self._evictions,
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._reset_counters()

    def clear(self) -> None:
        """Drop every entry. Counters are kept; see reset_stats()."""
        with self._lock:
            self._entries.clear()
        log.info("cache_cleared")

    def export(self) -> list[CacheEntry]:
        """Copies of every entry, least recently used first."""
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._entries.values()]

    def import_entries(self, entries: Iterable[CacheEntry]) -> int:
        """Add exported entries, skipping expired ones.

        Returns:
            Number of entries imported.
        """
        now = datetime.now(tz=UTC)
        count = 0
        with self._lock:
            for entry in entries:
                if self._is_expired(entry, now):
                    continue
                self._put(entry.model_copy(deep=True))
                count += 1
        return count

    def save(self, path: Path) -> None:
        """Persist entries as JSON atomically (write to temp, then rename)."""
        payload = {
            "version": CACHE_FORMAT_VERSION,
            "entries": [entry.model_dump(mode="json") for entry in self.export()],
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with open(fd, "w") as f:
                json.dump(payload, f)
            Path(tmp_path).replace(path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        log.debug("cache_saved", path=str(path), entries=len(payload["entries"]))

    def load(self, path: Path) -> int:
        """Load entries saved by save(). Missing or corrupt files load nothing.

        Returns:
            Number of entries loaded.
        """
        path = Path(path)
        if not path.exists():
            return 0
        try:
            with open(path) as f:
                payload = json.load(f)
            entries = [CacheEntry.model_validate(raw) for raw in payload.get("entries", [])]
        except (json.JSONDecodeError, OSError, ValidationError, AttributeError) as e:
            log.warning("cache_load_failed", path=str(path), error=str(e))
            return 0

        count = self.import_entries(entries)
        log.info("cache_loaded", path=str(path), entries=count)
        return count
