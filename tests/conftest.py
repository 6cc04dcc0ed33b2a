"""Pytest configuration and fixtures."""

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from code_recall.config import Settings
from code_recall.models import ChunkKind, CodeChunk
from code_recall.protocols import ChunkerProtocol, ChunkStoreProtocol, EmbedderProtocol
from code_recall.storage.lancedb import LanceDBChunkStore

# Small vectors keep the LanceDB tests fast
DIM = 8


def make_vector(*values: float) -> list[float]:
    """Pad the leading values with zeros up to DIM."""
    return [*values, *([0.0] * (DIM - len(values)))]


def make_chunk(
    chunk_id: str,
    file_path: str = "/project/src/a.ts",
    name: str | None = None,
    content: str = "",
    embedding: list[float] | None = None,
    **fields,
) -> CodeChunk:
    return CodeChunk(
        id=chunk_id,
        file_path=file_path,
        name=name or chunk_id,
        content=content or f"function {chunk_id}() {{}}",
        embedding=embedding,
        **fields,
    )


# Settings fixtures


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temp cache dir and small embeddings."""
    return Settings(cache_dir=tmp_path / "cache", embedding_dim=DIM)


# Protocol mock fixtures


@pytest.fixture
def mock_store() -> ChunkStoreProtocol:
    """Create a mock chunk store implementing the protocol."""
    mock = MagicMock(spec=ChunkStoreProtocol)
    mock.count.return_value = 0
    mock.search.return_value = []
    mock.all_chunks.return_value = []
    mock.get_indexed_files.return_value = []
    mock.delete_file.return_value = 0
    return mock


@pytest.fixture
def mock_embedder() -> EmbedderProtocol:
    """Create a mock embedder returning DIM-sized vectors."""
    mock = MagicMock(spec=EmbedderProtocol)
    mock.embed_text.return_value = make_vector(1.0)
    mock.embed_batch.side_effect = lambda texts: [make_vector(1.0, 0.5) for _ in texts]
    return mock


@pytest.fixture
def mock_chunker() -> ChunkerProtocol:
    """Create a mock chunker implementing the protocol."""
    mock = MagicMock(spec=ChunkerProtocol)
    mock.chunk_file.return_value = []
    return mock


# Real component fixtures


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Create a temporary directory for the database."""
    return tmp_path / "chunks.lance"


@pytest.fixture
def chunk_store(temp_db_path: Path) -> Iterator[LanceDBChunkStore]:
    """An initialized LanceDB chunk store with DIM-sized vectors."""
    store = LanceDBChunkStore(temp_db_path, dimension=DIM)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def sample_chunk() -> CodeChunk:
    """Create a sample chunk for testing."""
    return CodeChunk(
        id="src/user.ts:getUserName:10",
        file_path="/project/src/user.ts",
        name="getUserName",
        content="function getUserName(user) {\n  return user.name;\n}",
        kind=ChunkKind.FUNCTION,
        line_start=10,
        line_end=12,
        loc=3,
        complexity=1.0,
        embedding=make_vector(1.0, 0.0, 0.5),
    )


# Sample project fixtures


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    """A small TypeScript project outside any git repository."""
    project = (tmp_path / "project").resolve()
    (project / "src").mkdir(parents=True)

    (project / "src" / "user.ts").write_text(
        "export function getUserName(user) {\n  return user.name;\n}\n"
    )
    (project / "src" / "api.ts").write_text(
        "import { getUserName } from './user';\n"
        "export function fetchUser(id) {\n  return getUserName({ id });\n}\n"
    )
    (project / "README.md").write_text("# Sample\n")

    return project
