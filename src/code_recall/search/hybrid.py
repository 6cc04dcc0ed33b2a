"""Hybrid search: vector, keyword and dependency signals fused into one ranking."""

import asyncio
import threading
import time
from collections.abc import Callable, Iterable

import structlog

from code_recall.config import Settings, get_settings
from code_recall.errors import DimensionMismatch, InvalidWeights, StoreClosed
from code_recall.indexer.graph import neighbors_within
from code_recall.models import (
    ChunkFilter,
    CodeChunk,
    ScoreBreakdown,
    SearchQuery,
    SearchResult,
    SearchStats,
    SearchStrategy,
    SearchWeights,
)
from code_recall.profiling import profile_async
from code_recall.protocols import ChunkStoreProtocol, DependencyGraph
from code_recall.search.keyword import KeywordIndex

log = structlog.get_logger()

# Errors that mean the engine is misused or misconfigured; never absorbed
STRUCTURAL_ERRORS = (StoreClosed, DimensionMismatch)

SignalHits = list[tuple[CodeChunk, float]]


class HybridSearchEngine:
    """Fuses three retrieval signals into a weighted, explainable ranking.

    - vector: chunk store similarity to the query embedding
    - keyword: term overlap with the query text
    - dependency: proximity of a chunk's file to the query file in the
      dependency graph, scored 1 / hops

    Each signal only fires when its input is present and its weight is
    positive. Signals run concurrently in worker threads; with a timeout,
    whatever finished in time is merged.
    """

    def __init__(
        self,
        store: ChunkStoreProtocol,
        keyword_index: KeywordIndex | None = None,
        dependency_graph: DependencyGraph | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.keyword_index = keyword_index if keyword_index is not None else KeywordIndex()
        self.dependency_graph: DependencyGraph = dependency_graph or {}
        self.settings = settings or get_settings()
        self._stats = SearchStats()
        self._stats_lock = threading.Lock()

    def default_query(self, **fields: object) -> SearchQuery:
        """A query using the configured top-k and signal weights."""
        fields.setdefault("top_k", self.settings.search_top_k)
        fields.setdefault(
            "weights",
            SearchWeights(
                vector=self.settings.vector_weight,
                keyword=self.settings.keyword_weight,
                dependency=self.settings.dependency_weight,
            ),
        )
        return SearchQuery.model_validate(fields)

    def set_dependency_graph(self, dependency_graph: DependencyGraph) -> None:
        self.dependency_graph = dependency_graph

    def build_keyword_index(self, chunks: Iterable[CodeChunk]) -> None:
        """Rebuild the keyword index wholesale."""
        self.keyword_index.build(chunks)

    async def refresh_keyword_index(self) -> int:
        """Rebuild the keyword index from the chunk store's current contents.

        Returns:
            Number of chunks indexed.
        """
        chunks = await asyncio.to_thread(self.store.all_chunks)
        await asyncio.to_thread(self.keyword_index.build, chunks)
        return len(chunks)

    def update_file_index(self, file_path: str, chunks: Iterable[CodeChunk]) -> None:
        """Replace one file's chunks in the keyword index."""
        self.keyword_index.update_file(file_path, chunks)

    @profile_async("hybrid_search")
    async def search(self, query: SearchQuery, timeout: float | None = None) -> list[SearchResult]:
        """Run every applicable signal and merge their scores.

        Args:
            query: The search request.
            timeout: Seconds to wait for signals; defaults to the configured
                search timeout. Signals still running are dropped.

        Returns:
            Up to query.top_k results, best first, ties by chunk id.

        Raises:
            InvalidWeights: If any weight is negative (checked before any lookup).
            StoreClosed: If the chunk store is closed.
            DimensionMismatch: If the query embedding has the wrong length.
        """
        if query.weights.has_negative():
            raise InvalidWeights(query.weights.model_dump())
        weights = query.weights.normalized()

        start = time.perf_counter()
        if timeout is None:
            timeout = self.settings.search_timeout
        candidates = query.top_k * self.settings.candidate_multiplier

        signals: dict[SearchStrategy, Callable[[], SignalHits]] = {}
        if query.embedding and weights.vector > 0:
            embedding = query.embedding
            signals[SearchStrategy.VECTOR] = lambda: self._vector_signal(
                embedding, candidates, query.filter
            )
        if query.text.strip() and weights.keyword > 0:
            signals[SearchStrategy.KEYWORD] = lambda: self._keyword_signal(
                query.text, candidates, query.filter
            )
        if query.file_path and weights.dependency > 0:
            file_path = query.file_path
            signals[SearchStrategy.DEPENDENCY] = lambda: self._dependency_signal(
                file_path, candidates, query.filter
            )

        hits, timed_out = await self._run_signals(signals, timeout)
        results = self._merge(hits, weights)

        if query.filter is not None:
            results = [r for r in results if query.filter.matches(r.chunk)]
        results.sort(key=lambda r: (-r.score, r.chunk.id))
        results = results[: query.top_k]

        duration_ms = (time.perf_counter() - start) * 1000
        self._record(results, duration_ms, timed_out)
        log.debug(
            "hybrid_search_completed",
            signals=[s.value for s in signals],
            results=len(results),
            timed_out=timed_out,
            duration_ms=round(duration_ms, 1),
        )
        return results

    async def _run_signals(
        self, signals: dict[SearchStrategy, Callable[[], SignalHits]], timeout: float | None
    ) -> tuple[dict[SearchStrategy, SignalHits], bool]:
        if not signals:
            return {}, False

        tasks = {
            strategy: asyncio.create_task(asyncio.to_thread(fn)) for strategy, fn in signals.items()
        }
        _, pending = await asyncio.wait(tasks.values(), timeout=timeout)
        for task in pending:
            task.cancel()

        hits: dict[SearchStrategy, SignalHits] = {}
        for strategy, task in tasks.items():
            if task in pending:
                log.warning("search_signal_timed_out", strategy=strategy.value, timeout=timeout)
                continue
            error = task.exception()
            if error is None:
                hits[strategy] = task.result()
            elif isinstance(error, STRUCTURAL_ERRORS):
                await self._cancel_remaining(tasks.values())
                raise error
            else:
                log.warning("search_signal_failed", strategy=strategy.value, error=str(error))

        return hits, bool(pending)

    async def _cancel_remaining(self, tasks: Iterable[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        # Collect outcomes so no sibling exception goes unretrieved
        await asyncio.gather(*tasks, return_exceptions=True)

    def _vector_signal(
        self, embedding: list[float], k: int, chunk_filter: ChunkFilter | None
    ) -> SignalHits:
        return [(hit.chunk, hit.score) for hit in self.store.search(embedding, k, chunk_filter)]

    def _keyword_signal(self, text: str, k: int, chunk_filter: ChunkFilter | None) -> SignalHits:
        if chunk_filter is None:
            return self.keyword_index.search(text, limit=k)
        # Filter before truncating so excluded chunks cannot use up the budget
        hits = self.keyword_index.search(text)
        return [(chunk, score) for chunk, score in hits if chunk_filter.matches(chunk)][:k]

    def _dependency_signal(
        self, file_path: str, k: int, chunk_filter: ChunkFilter | None
    ) -> SignalHits:
        distances = neighbors_within(
            self.dependency_graph, file_path, self.settings.dependency_max_hops
        )
        hits = [
            (chunk, 1.0 / distances[chunk.file_path])
            for chunk in self.keyword_index.chunks_in_files(distances)
            if chunk_filter is None or chunk_filter.matches(chunk)
        ]
        hits.sort(key=lambda pair: (-pair[1], pair[0].id))
        return hits[:k]

    def _merge(
        self, hits: dict[SearchStrategy, SignalHits], weights: SearchWeights
    ) -> list[SearchResult]:
        chunks: dict[str, CodeChunk] = {}
        scores: dict[str, dict[SearchStrategy, float]] = {}

        # Enum order (vector, keyword, dependency) fixes matched_by order and summation order
        for strategy in SearchStrategy:
            for chunk, score in hits.get(strategy, ()):
                chunks.setdefault(chunk.id, chunk)
                per_chunk = scores.setdefault(chunk.id, {})
                per_chunk[strategy] = max(score, per_chunk.get(strategy, 0.0))

        results: list[SearchResult] = []
        for chunk_id, per_chunk in scores.items():
            matched_by = [s for s in SearchStrategy if s in per_chunk]
            aggregate = sum(per_chunk[s] * weights.for_strategy(s) for s in matched_by)
            results.append(
                SearchResult(
                    chunk=chunks[chunk_id],
                    score=aggregate,
                    scores=ScoreBreakdown(**{s.value: per_chunk[s] for s in matched_by}),
                    matched_by=matched_by,
                    weights=weights,
                )
            )
        return results

    def _record(self, results: list[SearchResult], duration_ms: float, timed_out: bool) -> None:
        with self._stats_lock:
            stats = self._stats
            previous_total = stats.avg_response_ms * stats.total_searches
            stats.total_searches += 1
            stats.avg_response_ms = (previous_total + duration_ms) / stats.total_searches
            fired = {s for r in results for s in r.matched_by}
            for strategy in fired:
                current = getattr(stats.strategy_hits, strategy.value)
                setattr(stats.strategy_hits, strategy.value, current + 1)
            if timed_out:
                stats.timeouts += 1

    def get_stats(self) -> SearchStats:
        """Snapshot of the running counters."""
        with self._stats_lock:
            return self._stats.model_copy(deep=True)

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = SearchStats()

    @staticmethod
    def explain_search(results: list[SearchResult]) -> str:
        """Render a markdown breakdown of how each result was scored."""
        lines = ["# Hybrid Search Explanation", "", f"**Results**: {len(results)}", ""]

        for rank, result in enumerate(results, start=1):
            chunk = result.chunk
            lines.append(f"## {rank}. {chunk.name or 'anonymous'} ({chunk.file_path})")
            lines.append(f"**Overall Score**: {result.score:.4f}")
            matched = ", ".join(s.value for s in result.matched_by) or "none"
            lines.append(f"**Matched By**: {matched}")
            lines.append("**Detailed Scores**:")
            for strategy in SearchStrategy:
                score = getattr(result.scores, strategy.value)
                if score is not None:
                    lines.append(f"  - {strategy.value.capitalize()}: {score:.4f}")
            w = result.weights
            lines.append(
                f"**Weights**: vector={w.vector:.2f}, keyword={w.keyword:.2f}, "
                f"dependency={w.dependency:.2f}"
            )
            lines.append("")

        return "\n".join(lines)
