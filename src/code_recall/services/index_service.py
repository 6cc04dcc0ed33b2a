"""Index service: runs one indexing cycle end to end."""

import asyncio
import time
from pathlib import Path

import structlog

from code_recall.config import Settings
from code_recall.errors import DimensionMismatch
from code_recall.indexer.incremental import IncrementalIndexer
from code_recall.models import CodeChunk, IndexResult, IndexStatus, IndexStrategy
from code_recall.profiling import profile_async
from code_recall.protocols import (
    ChunkerProtocol,
    ChunkStoreProtocol,
    DependencyGraph,
    EmbedderProtocol,
)
from code_recall.search.hybrid import HybridSearchEngine

log = structlog.get_logger()

CHUNK_BATCH_SIZE = 20


class IndexService:
    """Ties change detection, chunking, embedding and storage together.

    Chunking and embedding are delegated to external collaborators; this
    service decides what to (re)process and keeps the chunk store, keyword
    index and metadata consistent with each other.
    """

    def __init__(
        self,
        settings: Settings,
        indexer: IncrementalIndexer,
        store: ChunkStoreProtocol,
        engine: HybridSearchEngine,
        chunker: ChunkerProtocol,
        embedder: EmbedderProtocol,
    ) -> None:
        self.settings = settings
        self.indexer = indexer
        self.store = store
        self.engine = engine
        self.chunker = chunker
        self.embedder = embedder

    @profile_async("index")
    async def index(
        self, dependency_graph: DependencyGraph | None = None, force: bool = False
    ) -> IndexResult:
        """Bring the index up to date with the project.

        Args:
            dependency_graph: Used to re-index dependents of changed files.
            force: If True, discard the index and rebuild it from scratch.

        Returns:
            IndexResult with counts and total duration.
        """
        start = time.perf_counter()

        if force:
            log.info("force_reindex", project=str(self.indexer.project_path))
            await self.indexer.clear_metadata()
            await asyncio.to_thread(self.store.clear)

        if dependency_graph is not None:
            self.engine.set_dependency_graph(dependency_graph)

        update = await self.indexer.detect_changes(dependency_graph)

        if update.is_full:
            files_to_index = await asyncio.to_thread(self.indexer.scanner.scan)
            files_to_delete: list[str] = []
            await asyncio.to_thread(self.store.clear)
        else:
            files_to_delete = update.deleted_files
            files_to_index = [f for f in update.files_to_index if Path(f).is_file()]

            if not files_to_index and not files_to_delete:
                log.info("index_up_to_date", project=str(self.indexer.project_path))
                return IndexResult(
                    strategy=IndexStrategy.INCREMENTAL,
                    files_indexed=0,
                    files_deleted=0,
                    chunks_indexed=0,
                    duration_seconds=round(time.perf_counter() - start, 3),
                )

            # Stale chunks of re-indexed files go too, not just those of deleted files
            for file_path in [*files_to_delete, *files_to_index]:
                await asyncio.to_thread(self.store.delete_file, file_path)

        chunks, failed = await self.chunk_files(files_to_index)
        chunks_rejected = await self.embed_and_store(chunks)
        await self.engine.refresh_keyword_index()

        current_files = await asyncio.to_thread(self.indexer.scanner.scan)
        await self.indexer.save_metadata(f for f in current_files if f not in failed)

        result = IndexResult(
            strategy=update.strategy,
            files_indexed=len(files_to_index) - len(failed),
            files_deleted=len(files_to_delete),
            files_affected=len(update.affected_files),
            chunks_indexed=len(chunks) - chunks_rejected,
            chunks_rejected=chunks_rejected,
            duration_seconds=round(time.perf_counter() - start, 3),
        )
        log.info(
            "index_completed",
            strategy=result.strategy.value,
            files=result.files_indexed,
            deleted=result.files_deleted,
            chunks=result.chunks_indexed,
            rejected=result.chunks_rejected,
            duration_s=result.duration_seconds,
        )
        return result

    async def chunk_files(self, files: list[str]) -> tuple[list[CodeChunk], set[str]]:
        """Chunk files in parallel batches.

        Returns:
            All chunks, and the files that could not be read.
        """
        all_chunks: list[CodeChunk] = []
        failed: set[str] = set()

        t0 = time.perf_counter()
        for batch_start in range(0, len(files), CHUNK_BATCH_SIZE):
            batch = files[batch_start : batch_start + CHUNK_BATCH_SIZE]
            results = await asyncio.gather(
                *(asyncio.to_thread(self.chunker.chunk_file, f) for f in batch),
                return_exceptions=True,
            )
            for file_path, result in zip(batch, results, strict=True):
                if isinstance(result, (OSError, UnicodeDecodeError)):
                    log.warning("chunking_failed", file_path=file_path, error=str(result))
                    failed.add(file_path)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    all_chunks.extend(result)

        log.debug(
            "chunking_completed",
            files=len(files),
            chunks=len(all_chunks),
            duration_ms=round((time.perf_counter() - t0) * 1000, 1),
        )
        return all_chunks, failed

    async def embed_and_store(self, chunks: list[CodeChunk]) -> int:
        """Embed chunk contents in one batch and upsert them.

        Returns:
            Number of chunks the store rejected for a wrong embedding size.
        """
        if not chunks:
            return 0

        t0 = time.perf_counter()
        embeddings = await asyncio.to_thread(self.embedder.embed_batch, [c.content for c in chunks])
        embedded = [
            chunk.model_copy(update={"embedding": embedding})
            for chunk, embedding in zip(chunks, embeddings, strict=True)
        ]
        embed_ms = (time.perf_counter() - t0) * 1000

        t0 = time.perf_counter()
        rejected = 0
        try:
            await asyncio.to_thread(self.store.insert_chunks, embedded)
        except DimensionMismatch as e:
            rejected = len(e.rejected)
            log.warning("chunks_rejected", count=rejected, expected_dim=e.expected)
        store_ms = (time.perf_counter() - t0) * 1000

        log.debug(
            "embed_and_store_completed",
            chunks=len(chunks),
            embed_ms=round(embed_ms, 1),
            store_ms=round(store_ms, 1),
        )
        return rejected

    async def get_status(self) -> IndexStatus:
        """Indexed file/chunk counts and how many files changed since."""
        metadata = await asyncio.to_thread(self.indexer.metadata_store.load)
        indexed_files = await asyncio.to_thread(self.store.get_indexed_files)
        chunks_count = await asyncio.to_thread(self.store.count)

        if metadata is None:
            return IndexStatus(
                is_indexed=False,
                last_indexed_at=None,
                files_count=len(indexed_files),
                chunks_count=chunks_count,
                pending_changes=0,
            )

        update = await self.indexer.detect_changes()
        return IndexStatus(
            is_indexed=True,
            last_indexed_at=metadata.last_indexed_at,
            files_count=len(indexed_files),
            chunks_count=chunks_count,
            pending_changes=update.total_files_to_reindex,
        )
