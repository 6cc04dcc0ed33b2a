"""Change detectors: version control, content hash, and modification time.

Each detector compares the project against the last saved IndexMetadata and
reports uniform FileChangeInfo records, so merging is a dedup by path.
"""

import asyncio
import os
import subprocess  # nosec B404
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

import structlog

from code_recall.config import Settings
from code_recall.indexer.scanner import FileScanner, git_toplevel
from code_recall.models import ChangeKind, FileChangeInfo, IndexMetadata
from code_recall.storage.metadata import compute_file_hash

log = structlog.get_logger()


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def _is_readable(file_path: str) -> bool:
    return os.access(file_path, os.R_OK)


def _try_hash(file_path: str) -> str | None:
    try:
        return compute_file_hash(file_path)
    except OSError as e:
        log.warning("file_hash_failed", file_path=file_path, error=str(e))
        return None


async def hash_files(file_paths: Iterable[str], batch_size: int = 50) -> dict[str, str]:
    """Hash files concurrently in batches.

    Unreadable files are logged and left out of the result.

    Returns:
        Mapping of file path to SHA-256 hex digest, in input order.
    """
    paths = list(dict.fromkeys(file_paths))
    hashes: dict[str, str] = {}

    for batch_start in range(0, len(paths), batch_size):
        batch = paths[batch_start : batch_start + batch_size]
        digests = await asyncio.gather(*(asyncio.to_thread(_try_hash, p) for p in batch))
        for file_path, digest in zip(batch, digests, strict=True):
            if digest is not None:
                hashes[file_path] = digest

    return hashes


class ChangeDetector(Protocol):
    """A source of file changes since the last index run."""

    name: str

    async def detect(self, metadata: IndexMetadata) -> list[FileChangeInfo]:
        """Report changes relative to the given metadata."""
        ...


class GitDetector:
    """Classifies changes from the working-tree status of a git repository.

    Skipped (empty result, not an error) when git is missing or the project
    is not inside a work tree. Entries whose content already matches the
    indexed hash are dropped, since git status is relative to HEAD rather
    than to the last index run.
    """

    name = "git"

    def __init__(self, settings: Settings, scanner: FileScanner) -> None:
        self.settings = settings
        self.scanner = scanner

    async def detect(self, metadata: IndexMetadata) -> list[FileChangeInfo]:
        project_path = self.scanner.project_path
        toplevel = await asyncio.to_thread(git_toplevel, project_path, self.settings.git_timeout)
        if toplevel is None:
            log.debug("git_detection_skipped", project=str(project_path))
            return []

        entries = await asyncio.to_thread(self._status, project_path)
        if entries is None:
            return []

        changes: list[FileChangeInfo] = []
        for rel_path, kind in entries:
            # porcelain paths are relative to the repository root
            file_path = str(toplevel / rel_path)
            if not self.scanner.is_relevant(file_path):
                continue

            if kind == ChangeKind.DELETED:
                if file_path not in metadata.file_hashes:
                    continue
                changes.append(
                    FileChangeInfo(
                        file_path=file_path,
                        change_kind=kind,
                        timestamp=now_ms(),
                        detector=self.name,
                    )
                )
                continue

            digest = await asyncio.to_thread(_try_hash, file_path)
            if digest is None or digest == metadata.file_hashes.get(file_path):
                continue
            changes.append(
                FileChangeInfo(
                    file_path=file_path,
                    change_kind=kind,
                    hash=digest,
                    timestamp=now_ms(),
                    detector=self.name,
                )
            )

        log.debug("git_changes_detected", count=len(changes))
        return changes

    def _status(self, project_path: Path) -> list[tuple[str, ChangeKind]] | None:
        """Parse `git status --porcelain -z` into (path, kind) pairs."""
        try:
            result = subprocess.run(  # nosec B603, B607
                ["git", "status", "--porcelain=v1", "-z", "--untracked-files=all"],
                cwd=project_path,
                capture_output=True,
                timeout=self.settings.git_timeout,
            )
        except subprocess.TimeoutExpired:
            log.warning("git_status_timed_out", project=str(project_path))
            return None
        if result.returncode != 0:
            log.warning(
                "git_status_failed",
                project=str(project_path),
                stderr=os.fsdecode(result.stderr).strip(),
            )
            return None

        entries: list[tuple[str, ChangeKind]] = []
        # Raw bytes: filenames need not be valid UTF-8
        fields = iter(result.stdout.split(b"\0"))
        for field in fields:
            if len(field) < 4:
                continue
            code, rel_path = field[:2].decode("ascii", "replace"), os.fsdecode(field[3:])
            if code == "!!":
                continue
            if "R" in code or "C" in code:
                next(fields, None)  # skip the original path of a rename/copy

            if code == "??" or "A" in code:
                kind = ChangeKind.ADDED
            elif "D" in code:
                kind = ChangeKind.DELETED
            else:
                kind = ChangeKind.MODIFIED
            entries.append((rel_path, kind))
        return entries


class HashDetector:
    """Compares content hashes against the stored ones.

    Authoritative for correctness: every relevant file is read.
    """

    name = "hash"

    def __init__(self, settings: Settings, scanner: FileScanner) -> None:
        self.settings = settings
        self.scanner = scanner

    async def detect(self, metadata: IndexMetadata) -> list[FileChangeInfo]:
        files = await asyncio.to_thread(self.scanner.scan)
        hashes = await hash_files(files, self.settings.hash_batch_size)
        detected_at = now_ms()

        changes: list[FileChangeInfo] = []
        for file_path, digest in hashes.items():
            previous = metadata.file_hashes.get(file_path)
            if previous == digest:
                continue
            changes.append(
                FileChangeInfo(
                    file_path=file_path,
                    change_kind=ChangeKind.ADDED if previous is None else ChangeKind.MODIFIED,
                    hash=digest,
                    timestamp=detected_at,
                    detector=self.name,
                )
            )

        current = set(files)
        for old_path in sorted(metadata.file_hashes):
            if old_path not in current:
                changes.append(
                    FileChangeInfo(
                        file_path=old_path,
                        change_kind=ChangeKind.DELETED,
                        timestamp=detected_at,
                        detector=self.name,
                    )
                )

        log.debug("hash_changes_detected", count=len(changes))
        return changes


class TimestampDetector:
    """Flags files modified after the last index run.

    Cheap but fooled by clock skew and tools that rewrite mtimes; layered
    under the other detectors.
    """

    name = "timestamp"

    def __init__(self, settings: Settings, scanner: FileScanner) -> None:
        self.settings = settings
        self.scanner = scanner

    async def detect(self, metadata: IndexMetadata) -> list[FileChangeInfo]:
        files = await asyncio.to_thread(self.scanner.scan)
        return await asyncio.to_thread(self._compare, files, metadata)

    def _compare(self, files: list[str], metadata: IndexMetadata) -> list[FileChangeInfo]:
        changes: list[FileChangeInfo] = []
        for file_path in sorted(set(files) | set(metadata.file_hashes)):
            tracked = file_path in metadata.file_hashes
            try:
                mtime_ms = os.stat(file_path).st_mtime_ns // 1_000_000
            except OSError:
                mtime_ms = None

            # Tracked but gone or unreadable: its chunks no longer reflect the file
            if tracked and (mtime_ms is None or not _is_readable(file_path)):
                changes.append(self._deleted(file_path))
                continue
            if mtime_ms is None or mtime_ms <= metadata.last_indexed_at:
                continue

            digest = _try_hash(file_path)
            if digest is None:
                if tracked:
                    changes.append(self._deleted(file_path))
                continue
            changes.append(
                FileChangeInfo(
                    file_path=file_path,
                    change_kind=ChangeKind.MODIFIED,
                    hash=digest,
                    timestamp=mtime_ms,
                    detector=self.name,
                )
            )

        log.debug("timestamp_changes_detected", count=len(changes))
        return changes

    def _deleted(self, file_path: str) -> FileChangeInfo:
        return FileChangeInfo(
            file_path=file_path,
            change_kind=ChangeKind.DELETED,
            timestamp=now_ms(),
            detector=self.name,
        )


def merge_changes(*detections: list[FileChangeInfo]) -> list[FileChangeInfo]:
    """Deduplicate by path; the earliest detection list wins for a path."""
    merged: dict[str, FileChangeInfo] = {}
    for detection in detections:
        for change in detection:
            merged.setdefault(change.file_path, change)
    return list(merged.values())
