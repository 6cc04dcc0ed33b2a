"""Protocols for dependency injection and external collaborators."""

from collections.abc import Mapping, Set
from typing import Protocol

from code_recall.models import ChunkFilter, CodeChunk, ScoredChunk, StoreStats

# file -> files it directly imports. Supplied by an external graph builder,
# read-only here, may contain cycles.
DependencyGraph = Mapping[str, Set[str]]


class ChunkStoreProtocol(Protocol):
    """Interface for durable chunk + embedding storage."""

    def insert_chunks(self, chunks: list[CodeChunk]) -> None:
        """Upsert chunks by id."""
        ...

    def search(
        self,
        query_embedding: list[float],
        k: int = 5,
        filter: ChunkFilter | None = None,
    ) -> list[ScoredChunk]:
        """Return the k most similar chunks."""
        ...

    def delete_file(self, file_path: str) -> int:
        """Delete all chunks of a file."""
        ...

    def all_chunks(self) -> list[CodeChunk]:
        """Return every stored chunk, without embeddings."""
        ...

    def get_indexed_files(self) -> list[str]:
        """Get list of all indexed file paths."""
        ...

    def count(self) -> int:
        """Count total chunks in the store."""
        ...

    def clear(self) -> None:
        """Delete all chunks from the store."""
        ...

    def get_stats(self) -> StoreStats:
        """Size and shape of the store."""
        ...


class EmbedderProtocol(Protocol):
    """Interface for the external embedding provider."""

    def embed_text(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        ...


class ChunkerProtocol(Protocol):
    """Interface for the external code chunker."""

    def chunk_file(self, file_path: str) -> list[CodeChunk]:
        """Extract chunks from a source file."""
        ...
