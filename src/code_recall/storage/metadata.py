"""Persisted index metadata for incremental indexing."""

import hashlib
import json
import tempfile
import threading
from pathlib import Path

import structlog
from pydantic import ValidationError

from code_recall.models import IndexMetadata

log = structlog.get_logger()

HASH_READ_SIZE = 1 << 16

_path_locks: dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    """One lock per metadata file, shared by every store pointing at it."""
    key = str(path.resolve())
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = _path_locks[key] = threading.Lock()
        return lock


def compute_file_hash(file_path: str | Path) -> str:
    """SHA-256 hex digest over a file's raw bytes.

    Raises:
        OSError: If the file cannot be read.
    """
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        while block := f.read(HASH_READ_SIZE):
            digest.update(block)
    return digest.hexdigest()


class MetadataStore:
    """Reads and writes the index metadata file.

    Writes are atomic (temp file, then rename) and serialized per path, so a
    second writer waits instead of interleaving with the first.
    """

    def __init__(self, metadata_path: Path) -> None:
        """Initialize the metadata store.

        Args:
            metadata_path: Location of the metadata JSON file.
        """
        self.metadata_path = Path(metadata_path)
        self.lock = _lock_for(self.metadata_path)

    def exists(self) -> bool:
        return self.metadata_path.exists()

    def load(self) -> IndexMetadata | None:
        """Load metadata from disk.

        Returns:
            The metadata, or None if missing or unreadable.
        """
        with self.lock:
            return self._load_unlocked()

    def _load_unlocked(self) -> IndexMetadata | None:
        if not self.metadata_path.exists():
            log.debug("metadata_not_found", path=str(self.metadata_path))
            return None

        try:
            with open(self.metadata_path) as f:
                metadata = IndexMetadata.model_validate(json.load(f))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError, ValidationError) as e:
            log.warning("metadata_load_failed", path=str(self.metadata_path), error=str(e))
            return None

        log.debug(
            "metadata_loaded",
            last_indexed_at=metadata.last_indexed_at,
            files_count=len(metadata.file_hashes),
        )
        return metadata

    def save(self, metadata: IndexMetadata) -> None:
        """Replace the metadata on disk atomically (write to temp, then rename)."""
        with self.lock:
            directory = self.metadata_path.parent
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with open(fd, "w") as f:
                    json.dump(metadata.to_json_dict(), f, indent=2)
                Path(tmp_path).replace(self.metadata_path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        log.debug("metadata_saved", files_count=len(metadata.file_hashes))

    def clear(self) -> bool:
        """Delete the metadata file. Safe to call when none exists.

        Returns:
            True if a file was removed.
        """
        with self.lock:
            existed = self.metadata_path.exists()
            self.metadata_path.unlink(missing_ok=True)
        if existed:
            log.info("metadata_cleared", path=str(self.metadata_path))
        return existed
