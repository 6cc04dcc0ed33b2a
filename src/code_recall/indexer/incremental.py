"""Incremental indexer: decides which files an indexing cycle must touch."""

import asyncio
import time
from collections.abc import Iterable, Sequence
from pathlib import Path

import structlog

from code_recall.config import Settings, get_index_path
from code_recall.indexer.detectors import (
    ChangeDetector,
    GitDetector,
    HashDetector,
    TimestampDetector,
    hash_files,
    merge_changes,
    now_ms,
)
from code_recall.indexer.graph import calculate_affected_files
from code_recall.indexer.scanner import FileScanner
from code_recall.models import (
    FULL_REINDEX,
    FileChangeInfo,
    IncrementalUpdateResult,
    IndexMetadata,
    IndexStrategy,
)
from code_recall.profiling import profile_async
from code_recall.protocols import DependencyGraph
from code_recall.storage.metadata import MetadataStore

log = structlog.get_logger()


class IncrementalIndexer:
    """Detects changed and affected files against the last saved metadata.

    Three detectors run concurrently. Their reports are merged in a fixed
    priority order (git, then hash, then timestamp) so the outcome never
    depends on which detector finishes first.
    """

    def __init__(
        self,
        settings: Settings,
        project_path: Path,
        metadata_store: MetadataStore | None = None,
        scanner: FileScanner | None = None,
        detectors: Sequence[ChangeDetector] | None = None,
    ) -> None:
        self.settings = settings
        self.project_path = project_path.resolve()
        if metadata_store is None:
            index_path = get_index_path(settings, self.project_path)
            metadata_store = MetadataStore(index_path / settings.metadata_filename)
        self.metadata_store = metadata_store
        self.scanner = scanner or FileScanner(settings, self.project_path)
        self.detectors: list[ChangeDetector] = list(
            detectors
            if detectors is not None
            else (
                GitDetector(settings, self.scanner),
                HashDetector(settings, self.scanner),
                TimestampDetector(settings, self.scanner),
            )
        )
        self.metadata: IndexMetadata | None = None

    @profile_async("detect_changes")
    async def detect_changes(
        self, dependency_graph: DependencyGraph | None = None
    ) -> IncrementalUpdateResult:
        """Compare the project against the last saved metadata.

        Args:
            dependency_graph: Optional file -> dependencies mapping used to
                expand the changed set with transitive dependents.

        Returns:
            A full strategy when no usable metadata exists, otherwise the
            merged incremental change set.
        """
        start = time.perf_counter()
        self.metadata = await asyncio.to_thread(self.metadata_store.load)

        if self.metadata is None:
            log.info("full_index_required", project=str(self.project_path))
            return IncrementalUpdateResult(
                changed_files=[],
                total_files_to_reindex=FULL_REINDEX,
                strategy=IndexStrategy.FULL,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        detections = await asyncio.gather(
            *(self._run_detector(detector, self.metadata) for detector in self.detectors)
        )
        changes = merge_changes(*detections)
        changed_files = [change.file_path for change in changes]

        affected_files: list[str] = []
        if dependency_graph is not None:
            affected_files = self.calculate_affected_files(changed_files, dependency_graph)

        result = IncrementalUpdateResult(
            changed_files=changed_files,
            affected_files=affected_files,
            changes=changes,
            total_files_to_reindex=len(changed_files) + len(affected_files),
            strategy=IndexStrategy.INCREMENTAL,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        log.info(
            "changes_detected",
            changed=len(changed_files),
            affected=len(affected_files),
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def _run_detector(
        self, detector: ChangeDetector, metadata: IndexMetadata
    ) -> list[FileChangeInfo]:
        try:
            return await detector.detect(metadata)
        except (OSError, ValueError) as e:
            log.warning("change_detector_failed", detector=detector.name, error=str(e))
            return []

    def calculate_affected_files(
        self, changed_files: Iterable[str], dependency_graph: DependencyGraph
    ) -> list[str]:
        """Transitive dependents of the changed files, excluding the changed files."""
        return calculate_affected_files(changed_files, dependency_graph)

    async def save_metadata(self, files: Iterable[str | Path]) -> IndexMetadata:
        """Record the current content hash of each file as the indexed state.

        Replaces the stored metadata wholesale. Unreadable files are skipped.

        Args:
            files: Files the index now reflects.

        Returns:
            The saved metadata.
        """
        # Taken before hashing so edits made during the save are seen next cycle
        started_at = now_ms()
        paths = [self._absolute(f) for f in files]
        hashes = await hash_files(paths, self.settings.hash_batch_size)

        metadata = IndexMetadata(
            version=self.settings.metadata_version,
            last_indexed_at=started_at,
            file_hashes=hashes,
            project_path=str(self.project_path),
        )
        await asyncio.to_thread(self.metadata_store.save, metadata)
        self.metadata = metadata

        log.info("metadata_saved", files=len(hashes), skipped=len(paths) - len(hashes))
        return metadata

    async def clear_metadata(self) -> None:
        """Forget the indexed state; the next cycle is a full index."""
        await asyncio.to_thread(self.metadata_store.clear)
        self.metadata = None

    def get_tracked_files(self) -> list[str]:
        """Files recorded by the last loaded or saved metadata."""
        if self.metadata is None:
            return []
        return list(self.metadata.file_hashes)

    def _absolute(self, file_path: str | Path) -> str:
        path = Path(file_path)
        if not path.is_absolute():
            path = self.project_path / path
        return str(path)
