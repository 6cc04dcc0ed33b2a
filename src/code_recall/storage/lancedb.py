"""LanceDB-backed chunk store."""

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, Literal, Self

import lancedb
import pyarrow as pa
import pyarrow.compute as pc
import structlog

from code_recall.config import Settings
from code_recall.errors import DimensionMismatch, StorageUnavailable, StoreClosed
from code_recall.models import ChunkFilter, ChunkKind, CodeChunk, ScoredChunk, StoreStats

log = structlog.get_logger()

Metric = Literal["cosine", "dot", "l2"]

# Columns returned to callers; the vector column is only read by the ANN search itself.
CHUNK_COLUMNS = [
    "id",
    "file_path",
    "name",
    "content",
    "kind",
    "line_start",
    "line_end",
    "loc",
    "complexity",
    "metadata",
    "seq",
]

# The ANN search ranks by distance only; overfetch so that chunks tied at the
# k-th score can still be ordered by id.
TIE_OVERFETCH_FACTOR = 2


def chunks_schema(dimension: int) -> pa.Schema:
    """Schema for the chunks table with a fixed embedding dimension."""
    return pa.schema(
        [
            pa.field("id", pa.utf8(), nullable=False),
            pa.field("file_path", pa.utf8()),
            pa.field("name", pa.utf8()),
            pa.field("content", pa.utf8()),
            pa.field("kind", pa.utf8()),
            pa.field("line_start", pa.int32()),
            pa.field("line_end", pa.int32()),
            pa.field("loc", pa.int32()),
            pa.field("complexity", pa.float64()),
            pa.field("metadata", pa.utf8()),  # JSON
            pa.field("seq", pa.int64()),  # insertion order
            pa.field("vector", pa.list_(pa.float32(), dimension)),
        ]
    )


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def filter_to_where(filter: ChunkFilter | None) -> str | None:
    """Translate a ChunkFilter into a LanceDB SQL predicate."""
    if filter is None:
        return None

    clauses: list[str] = []
    if filter.kind is not None:
        clauses.append(f"kind = {_quote(filter.kind.value)}")
    if filter.file_path is not None:
        clauses.append(f"file_path = {_quote(filter.file_path)}")
    if filter.min_complexity is not None:
        clauses.append(f"complexity >= {float(filter.min_complexity)}")
    if filter.max_complexity is not None:
        clauses.append(f"complexity <= {float(filter.max_complexity)}")
    if filter.exclude_files:
        excluded = ", ".join(_quote(f) for f in filter.exclude_files)
        clauses.append(f"file_path NOT IN ({excluded})")
    if filter.file_types:
        suffixes = " OR ".join(
            f"file_path LIKE {_quote('%.' + t.lstrip('.'))}" for t in filter.file_types
        )
        clauses.append(f"({suffixes})")

    return " AND ".join(clauses) or None


def _row_to_chunk(row: dict[str, Any]) -> CodeChunk:
    return CodeChunk(
        id=row["id"],
        file_path=row["file_path"],
        name=row["name"],
        content=row["content"],
        kind=ChunkKind(row["kind"]),
        line_start=int(row["line_start"]),
        line_end=int(row["line_end"]),
        loc=int(row["loc"]),
        complexity=float(row["complexity"]),
        metadata=json.loads(row["metadata"] or "{}"),
    )


class LanceDBChunkStore:
    """Durable, queryable storage of code chunks and their embeddings.

    The store must be initialized before use, either explicitly or as a
    context manager. Every embedding must have exactly ``dimension`` values.
    """

    def __init__(
        self,
        db_path: Path,
        dimension: int = 1536,
        metric: Metric = "cosine",
        table_name: str = "code_chunks",
    ) -> None:
        """Configure the store. Nothing is opened until initialize().

        Args:
            db_path: Directory of the LanceDB database.
            dimension: Fixed embedding length for this store.
            metric: Similarity metric used by search().
            table_name: Name of the chunks table.
        """
        self.db_path = Path(db_path)
        self.dimension = dimension
        self.metric = metric
        self.table_name = table_name
        self._schema = chunks_schema(dimension)
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None
        self._closed = False
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, index_path: Path) -> Self:
        return cls(
            index_path / "chunks.lance",
            dimension=settings.embedding_dim,
            metric=settings.distance_metric,
            table_name=settings.table_name,
        )

    # --- lifecycle ---

    def initialize(self) -> None:
        """Open (or create) the database and the chunks table.

        Raises:
            StorageUnavailable: If the path is inaccessible or the database
                cannot be opened.
            DimensionMismatch: If the existing table was created with a
                different embedding dimension.
        """
        if self._table is not None:
            return

        try:
            self.db_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(self.db_path, str(e)) from e
        if not os.access(self.db_path, os.R_OK | os.W_OK | os.X_OK):
            raise StorageUnavailable(self.db_path, "directory is not readable and writable")

        try:
            db = lancedb.connect(str(self.db_path))
            try:
                table = db.open_table(self.table_name)
            except (ValueError, FileNotFoundError):
                # Table doesn't exist yet
                table = db.create_table(self.table_name, schema=self._schema)
                log.debug("created_table", table=self.table_name, dimension=self.dimension)
        except (OSError, RuntimeError) as e:
            raise StorageUnavailable(self.db_path, str(e)) from e

        persisted = table.schema.field("vector").type
        persisted_dim = getattr(persisted, "list_size", None)
        if persisted_dim != self.dimension:
            raise DimensionMismatch(self.dimension, {"<table>": persisted_dim or 0})

        self._db = db
        self._table = table
        self._closed = False
        log.info(
            "chunk_store_opened",
            path=str(self.db_path),
            chunks=table.count_rows(),
            dimension=self.dimension,
            metric=self.metric,
        )

    def close(self) -> None:
        """Release the storage resource. Later operations raise StoreClosed."""
        if self._table is None:
            self._closed = True
            return
        self._table = None
        self._db = None
        self._closed = True
        log.info("chunk_store_closed", path=str(self.db_path))

    @property
    def is_open(self) -> bool:
        return self._table is not None

    def __enter__(self) -> Self:
        self.initialize()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get_table(self) -> lancedb.table.Table:
        if self._table is None:
            raise StoreClosed(
                "chunk store is closed" if self._closed else "chunk store is not initialized"
            )
        return self._table

    # --- writes ---

    def insert_chunks(self, chunks: list[CodeChunk]) -> None:
        """Upsert chunks by id.

        Every chunk with a correctly sized embedding is written in a single
        merge-insert. Chunks with a missing or wrongly sized embedding are
        left out and reported afterwards.

        Args:
            chunks: Chunks carrying their embeddings.

        Raises:
            DimensionMismatch: If any chunk was rejected. The valid chunks of
                the batch have already been written.
        """
        table = self._get_table()

        rejected: dict[str, int] = {}
        valid: dict[str, CodeChunk] = {}
        for chunk in chunks:
            length = len(chunk.embedding or [])
            if length != self.dimension:
                rejected[chunk.id] = length
                continue
            valid[chunk.id] = chunk  # last duplicate wins

        if valid:
            base_seq = time.time_ns()
            rows = [self._chunk_to_row(chunk, base_seq + i) for i, chunk in enumerate(valid.values())]
            data = pa.Table.from_pylist(rows, schema=self._schema)
            with self._write_lock:
                (
                    table.merge_insert("id")
                    .when_matched_update_all()
                    .when_not_matched_insert_all()
                    .execute(data)
                )
            log.debug("upserted_chunks", count=len(rows))

        if rejected:
            log.warning("rejected_chunks", count=len(rejected), expected_dim=self.dimension)
            raise DimensionMismatch(self.dimension, rejected)

    def update_file(self, file_path: str, chunks: list[CodeChunk]) -> None:
        """Replace all chunks of a file with a new set."""
        self.delete_file(file_path)
        self.insert_chunks(chunks)

    def delete_file(self, file_path: str) -> int:
        """Delete all chunks for a specific file.

        Returns:
            Number of chunks deleted.
        """
        table = self._get_table()
        predicate = f"file_path = {_quote(file_path)}"
        with self._write_lock:
            count = table.count_rows(predicate)
            if count:
                table.delete(predicate)
        log.debug("deleted_chunks_for_file", file_path=file_path, count=count)
        return count

    def delete_chunks(self, ids: list[str]) -> None:
        """Delete chunks by id. Unknown ids are ignored."""
        if not ids:
            return
        table = self._get_table()
        with self._write_lock:
            table.delete(f"id IN ({', '.join(_quote(i) for i in ids)})")
        log.debug("deleted_chunks", count=len(ids))

    def clear(self) -> None:
        """Delete all chunks from the store."""
        self._get_table()
        db = self._db
        with self._write_lock:
            db.drop_table(self.table_name, ignore_missing=True)
            self._table = db.create_table(self.table_name, schema=self._schema)
        log.debug("cleared_store", table=self.table_name)

    # --- reads ---

    def search(
        self,
        query_embedding: list[float],
        k: int = 5,
        filter: ChunkFilter | None = None,
    ) -> list[ScoredChunk]:
        """Find the k chunks most similar to the query embedding.

        Args:
            query_embedding: The query vector.
            k: Maximum number of results.
            filter: Optional restriction applied before ranking.

        Returns:
            Chunks with scores in [0, 1], best first, ties broken by id.
        """
        table = self._get_table()
        if len(query_embedding) != self.dimension:
            raise DimensionMismatch(self.dimension, {"<query>": len(query_embedding)})
        if k < 1 or table.count_rows() == 0:
            return []

        query = (
            table.search(query_embedding, vector_column_name="vector")
            .distance_type(self.metric)
            .select(CHUNK_COLUMNS)
        )
        where = filter_to_where(filter)
        if where:
            query = query.where(where, prefilter=True)

        rows = query.limit(k * TIE_OVERFETCH_FACTOR).to_list()

        results = [
            ScoredChunk(chunk=_row_to_chunk(row), score=self._to_score(row["_distance"]))
            for row in rows
        ]
        results.sort(key=lambda r: (-r.score, r.chunk.id))
        return results[:k]

    def _to_score(self, distance: float) -> float:
        # cosine/dot distances lie in [0, 2]; l2 is unbounded (squared euclidean)
        if self.metric == "l2":
            score = 1.0 / (1.0 + distance)
        else:
            score = 1.0 - distance / 2.0
        return max(0.0, min(1.0, score))

    def _scan(self, columns: list[str], where: str | None = None) -> list[dict[str, Any]]:
        table = self._get_table()
        total = table.count_rows()
        if total == 0:
            return []
        query = table.search().select(columns)
        if where:
            query = query.where(where)
        return query.limit(total).to_list()

    def get_chunks(self, ids: list[str]) -> list[CodeChunk]:
        """Fetch chunks by id, in insertion order. Unknown ids are skipped."""
        if not ids:
            return []
        rows = self._scan(CHUNK_COLUMNS, f"id IN ({', '.join(_quote(i) for i in ids)})")
        rows.sort(key=lambda r: r["seq"])
        return [_row_to_chunk(row) for row in rows]

    def all_chunks(self) -> list[CodeChunk]:
        """Return every stored chunk (without embeddings), in insertion order."""
        rows = self._scan(CHUNK_COLUMNS)
        rows.sort(key=lambda r: r["seq"])
        return [_row_to_chunk(row) for row in rows]

    def get_indexed_files(self) -> list[str]:
        """Get the sorted list of distinct indexed file paths."""
        table = self._get_table()
        if table.count_rows() == 0:
            return []
        paths = table.search().select(["file_path"]).limit(table.count_rows()).to_arrow()
        return sorted(pc.unique(paths.column("file_path")).to_pylist())

    def count(self) -> int:
        """Count total chunks in the store."""
        return self._get_table().count_rows()

    def get_stats(self) -> StoreStats:
        """Total chunks, distinct files, and approximate on-disk size."""
        total_chunks = self.count()
        size_bytes = sum(p.stat().st_size for p in self.db_path.rglob("*") if p.is_file())
        return StoreStats(
            total_chunks=total_chunks,
            total_files=len(self.get_indexed_files()),
            dimension=self.dimension,
            metric=self.metric,
            size_bytes=size_bytes,
        )

    def _chunk_to_row(self, chunk: CodeChunk, seq: int) -> dict[str, Any]:
        return {
            "id": chunk.id,
            "file_path": chunk.file_path,
            "name": chunk.name,
            "content": chunk.content,
            "kind": chunk.kind.value,
            "line_start": chunk.line_start,
            "line_end": chunk.line_end,
            "loc": chunk.loc,
            "complexity": float(chunk.complexity),
            "metadata": json.dumps(chunk.metadata),
            "seq": seq,
            "vector": chunk.embedding,
        }
