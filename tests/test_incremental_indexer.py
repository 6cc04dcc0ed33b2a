"""Tests for change detection and metadata handling of the incremental indexer."""

import asyncio
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from code_recall.config import Settings, get_index_path
from code_recall.indexer import detectors
from code_recall.indexer.detectors import GitDetector, HashDetector, merge_changes
from code_recall.indexer.incremental import IncrementalIndexer
from code_recall.indexer.scanner import FileScanner
from code_recall.models import (
    FULL_REINDEX,
    ChangeKind,
    FileChangeInfo,
    IndexMetadata,
    IndexStrategy,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def change(path: str, detector: str, kind: ChangeKind = ChangeKind.MODIFIED) -> FileChangeInfo:
    return FileChangeInfo(file_path=path, change_kind=kind, timestamp=0, detector=detector)


class FakeDetector:
    """Reports fixed changes after a delay."""

    def __init__(self, name: str, changes: list[FileChangeInfo], delay: float = 0.0) -> None:
        self.name = name
        self.changes = changes
        self.delay = delay

    async def detect(self, metadata: IndexMetadata) -> list[FileChangeInfo]:
        await asyncio.sleep(self.delay)
        return self.changes


class FailingDetector:
    name = "broken"

    async def detect(self, metadata: IndexMetadata) -> list[FileChangeInfo]:
        raise OSError("disk on fire")


@pytest.fixture
def indexer(test_settings: Settings, sample_project: Path) -> IncrementalIndexer:
    return IncrementalIndexer(test_settings, sample_project)


async def save_all(indexer: IncrementalIndexer) -> IndexMetadata:
    return await indexer.save_metadata(indexer.scanner.scan())


class TestDetectChanges:
    """Tests for detect_changes()."""

    @pytest.mark.asyncio
    async def test_no_metadata_means_full(self, indexer: IncrementalIndexer):
        """Without metadata, a full index is required."""
        result = await indexer.detect_changes()

        assert result.strategy == IndexStrategy.FULL
        assert result.changed_files == []
        assert result.total_files_to_reindex == FULL_REINDEX

    @pytest.mark.asyncio
    async def test_empty_project_is_full(self, test_settings: Settings, tmp_path: Path):
        """A project with no relevant files and no metadata still gets the full strategy."""
        empty = tmp_path / "empty"
        empty.mkdir()

        result = await IncrementalIndexer(test_settings, empty).detect_changes()

        assert result.strategy == IndexStrategy.FULL
        assert result.total_files_to_reindex == -1

    @pytest.mark.asyncio
    async def test_corrupt_metadata_means_full(self, indexer: IncrementalIndexer):
        """Unreadable metadata is treated as absent."""
        indexer.metadata_store.metadata_path.parent.mkdir(parents=True, exist_ok=True)
        indexer.metadata_store.metadata_path.write_text("garbage")

        result = await indexer.detect_changes()

        assert result.is_full

    @pytest.mark.asyncio
    async def test_malformed_hash_pairs_mean_full(self, indexer: IncrementalIndexer):
        """Metadata whose fileHashes are not [path, hash] pairs is treated as absent."""
        path = indexer.metadata_store.metadata_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            '{"version": "1.0.0", "lastIndexedAt": 1, "fileHashes": [1, 2], "projectPath": "/p"}'
        )

        result = await indexer.detect_changes()

        assert result.is_full
        assert result.total_files_to_reindex == FULL_REINDEX

    @pytest.mark.asyncio
    async def test_idempotent_after_save(self, indexer: IncrementalIndexer):
        """Saving twice with unchanged files leaves nothing to do."""
        await save_all(indexer)
        await save_all(indexer)

        result = await indexer.detect_changes()

        assert result.strategy == IndexStrategy.INCREMENTAL
        assert result.changed_files == []
        assert result.total_files_to_reindex == 0

    @pytest.mark.asyncio
    async def test_content_change_detected(self, indexer: IncrementalIndexer, sample_project: Path):
        """A byte-level content change is reported as modified."""
        await save_all(indexer)
        user = sample_project / "src" / "user.ts"
        user.write_text(user.read_text() + "// edited\n")

        result = await indexer.detect_changes()

        assert result.changed_files == [str(user)]
        [info] = result.changes
        assert info.change_kind == ChangeKind.MODIFIED
        assert info.detector == "hash"
        assert info.hash

    @pytest.mark.asyncio
    async def test_content_change_with_old_mtime_detected(
        self, indexer: IncrementalIndexer, sample_project: Path
    ):
        """A change hidden from the timestamp detector is still caught by hashing."""
        metadata = await save_all(indexer)
        user = sample_project / "src" / "user.ts"
        user.write_text("export const changed = true;\n")
        old = (metadata.last_indexed_at - 60_000) / 1000
        os.utime(user, (old, old))

        result = await indexer.detect_changes()

        assert result.changed_files == [str(user)]

    @pytest.mark.asyncio
    async def test_touched_file_reported_by_timestamp(
        self, indexer: IncrementalIndexer, sample_project: Path
    ):
        """A newer mtime alone is reported, by the timestamp detector."""
        metadata = await save_all(indexer)
        user = sample_project / "src" / "user.ts"
        newer = (metadata.last_indexed_at + 60_000) / 1000
        os.utime(user, (newer, newer))

        result = await indexer.detect_changes()

        [info] = result.changes
        assert info.file_path == str(user)
        assert info.detector == "timestamp"

    @pytest.mark.asyncio
    async def test_unreadable_tracked_file_reported_deleted(
        self,
        indexer: IncrementalIndexer,
        sample_project: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """A tracked file that exists but cannot be read is reported as deleted."""
        await save_all(indexer)
        api = str(sample_project / "src" / "api.ts")
        readable = detectors._is_readable
        monkeypatch.setattr(detectors, "_is_readable", lambda p: p != api and readable(p))

        result = await indexer.detect_changes()

        [info] = result.changes
        assert info.file_path == api
        assert info.change_kind == ChangeKind.DELETED
        assert info.detector == "timestamp"

    @pytest.mark.asyncio
    async def test_added_file_detected(self, indexer: IncrementalIndexer, sample_project: Path):
        """A new relevant file is reported as added."""
        await save_all(indexer)
        new_file = sample_project / "src" / "order.ts"
        new_file.write_text("export const order = 1;\n")

        result = await indexer.detect_changes()

        assert [(c.file_path, c.change_kind) for c in result.changes] == [
            (str(new_file), ChangeKind.ADDED)
        ]

    @pytest.mark.asyncio
    async def test_deleted_file_detected(self, indexer: IncrementalIndexer, sample_project: Path):
        """A tracked file that disappeared is reported as deleted."""
        await save_all(indexer)
        api = sample_project / "src" / "api.ts"
        api.unlink()

        result = await indexer.detect_changes()

        assert result.changed_files == [str(api)]
        assert result.deleted_files == [str(api)]
        assert result.files_to_index == []

    @pytest.mark.asyncio
    async def test_irrelevant_files_ignored(self, indexer: IncrementalIndexer, sample_project: Path):
        """Changes to files outside include_extensions are not reported."""
        await save_all(indexer)
        (sample_project / "README.md").write_text("# Changed\n")
        (sample_project / "notes.txt").write_text("new")

        result = await indexer.detect_changes()

        assert result.changed_files == []

    @pytest.mark.asyncio
    async def test_affected_files_from_dependency_graph(
        self, indexer: IncrementalIndexer, sample_project: Path
    ):
        """Dependents of a changed file are added as affected files."""
        await save_all(indexer)
        user = str(sample_project / "src" / "user.ts")
        api = str(sample_project / "src" / "api.ts")
        Path(user).write_text("export function getUserName(u) { return u.fullName; }\n")

        result = await indexer.detect_changes({api: {user}, user: set()})

        assert result.changed_files == [user]
        assert result.affected_files == [api]
        assert result.total_files_to_reindex == 2
        assert result.files_to_index == [user, api]


class TestDetectorMerge:
    """Tests for deterministic merging of detector reports."""

    def test_merge_first_wins(self):
        """For a path reported twice, the earlier detection list wins."""
        merged = merge_changes(
            [change("/p/a.ts", "git")],
            [change("/p/a.ts", "hash"), change("/p/b.ts", "hash")],
            [change("/p/b.ts", "timestamp")],
        )

        assert [(c.file_path, c.detector) for c in merged] == [
            ("/p/a.ts", "git"),
            ("/p/b.ts", "hash"),
        ]

    @pytest.mark.asyncio
    async def test_priority_independent_of_completion_order(
        self, test_settings: Settings, sample_project: Path
    ):
        """The higher-priority detector wins even when it finishes last."""
        detectors = [
            FakeDetector("git", [change("/p/a.ts", "git", ChangeKind.DELETED)], delay=0.05),
            FakeDetector("hash", [change("/p/a.ts", "hash")]),
            FakeDetector("timestamp", [change("/p/a.ts", "timestamp")]),
        ]
        indexer = IncrementalIndexer(test_settings, sample_project, detectors=detectors)
        await indexer.save_metadata([])

        result = await indexer.detect_changes()

        [info] = result.changes
        assert info.detector == "git"
        assert info.change_kind == ChangeKind.DELETED

    @pytest.mark.asyncio
    async def test_failing_detector_contributes_nothing(
        self, test_settings: Settings, sample_project: Path
    ):
        """A detector that raises is skipped; the others still report."""
        detectors = [FailingDetector(), FakeDetector("hash", [change("/p/a.ts", "hash")])]
        indexer = IncrementalIndexer(test_settings, sample_project, detectors=detectors)
        await indexer.save_metadata([])

        result = await indexer.detect_changes()

        assert result.changed_files == ["/p/a.ts"]


class TestGitDetector:
    """Tests for the git status detector."""

    @pytest.mark.asyncio
    async def test_outside_repository_reports_nothing(
        self, test_settings: Settings, sample_project: Path
    ):
        """Not being in a work tree is a skip, not an error."""
        detector = GitDetector(test_settings, FileScanner(test_settings, sample_project))
        metadata = IndexMetadata(
            version="1.0.0", last_indexed_at=0, project_path=str(sample_project)
        )

        assert await detector.detect(metadata) == []

    @requires_git
    @pytest.mark.asyncio
    async def test_reports_working_tree_changes(
        self, test_settings: Settings, sample_project: Path
    ):
        """Modified, untracked and deleted files are classified from git status."""
        git = ["git", "-c", "user.name=test", "-c", "user.email=test@example.com"]
        subprocess.run([*git, "init", "-q"], cwd=sample_project, check=True)
        subprocess.run([*git, "add", "."], cwd=sample_project, check=True)
        subprocess.run([*git, "commit", "-q", "-m", "init"], cwd=sample_project, check=True)

        indexer = IncrementalIndexer(test_settings, sample_project)
        await save_all(indexer)

        user = sample_project / "src" / "user.ts"
        api = sample_project / "src" / "api.ts"
        new_file = sample_project / "src" / "order.ts"
        user.write_text("export const changed = 1;\n")
        api.unlink()
        new_file.write_text("export const order = 1;\n")

        detector = GitDetector(test_settings, indexer.scanner)
        changes = await detector.detect(indexer.metadata)

        by_path = {c.file_path: c.change_kind for c in changes}
        assert by_path == {
            str(user): ChangeKind.MODIFIED,
            str(api): ChangeKind.DELETED,
            str(new_file): ChangeKind.ADDED,
        }

    @requires_git
    @pytest.mark.asyncio
    async def test_non_utf8_filename_does_not_hide_changes(
        self, test_settings: Settings, sample_project: Path
    ):
        """A filename that is not valid UTF-8 elsewhere in the repo leaves detection intact."""
        subprocess.run(["git", "init", "-q"], cwd=sample_project, check=True)
        indexer = IncrementalIndexer(test_settings, sample_project)
        await save_all(indexer)

        user = sample_project / "src" / "user.ts"
        user.write_text("export const changed = 1;\n")
        with open(os.path.join(os.fsencode(sample_project), b"\xff.md"), "wb") as f:
            f.write(b"# notes\n")

        result = await indexer.detect_changes()

        assert result.changed_files == [str(user)]
        assert result.changes[0].detector == "git"

    @requires_git
    @pytest.mark.asyncio
    async def test_already_indexed_changes_are_dropped(
        self, test_settings: Settings, sample_project: Path
    ):
        """Uncommitted edits that the index already reflects are not reported again."""
        subprocess.run(["git", "init", "-q"], cwd=sample_project, check=True)
        indexer = IncrementalIndexer(test_settings, sample_project)
        await save_all(indexer)

        result = await indexer.detect_changes()

        assert result.changed_files == []


class TestHashDetector:
    """Tests for the content hash detector."""

    @pytest.mark.asyncio
    async def test_unreadable_file_skipped(
        self, test_settings: Settings, sample_project: Path, monkeypatch: pytest.MonkeyPatch
    ):
        """A file that cannot be hashed is left out instead of failing the scan."""
        scanner = FileScanner(test_settings, sample_project)
        ghost = str(sample_project / "src" / "ghost.ts")
        real = scanner.scan()
        monkeypatch.setattr(scanner, "scan", lambda: [*real, ghost])
        metadata = IndexMetadata(
            version="1.0.0", last_indexed_at=0, project_path=str(sample_project)
        )

        changes = await HashDetector(test_settings, scanner).detect(metadata)

        assert ghost not in {c.file_path for c in changes}
        assert len(changes) == len(real)


class TestSaveMetadata:
    """Tests for save_metadata() and clear_metadata()."""

    @pytest.mark.asyncio
    async def test_records_hash_per_file(self, indexer: IncrementalIndexer, sample_project: Path):
        """Every readable file is recorded with its hash and the project path."""
        metadata = await save_all(indexer)

        assert set(metadata.file_hashes) == {
            str(sample_project / "src" / "api.ts"),
            str(sample_project / "src" / "user.ts"),
        }
        assert metadata.project_path == str(sample_project)
        assert metadata.version == "1.0.0"
        assert indexer.metadata_store.load() == metadata

    @pytest.mark.asyncio
    async def test_unreadable_files_skipped(self, indexer: IncrementalIndexer, sample_project: Path):
        """Missing files are skipped rather than failing the save."""
        metadata = await indexer.save_metadata(
            [sample_project / "src" / "user.ts", sample_project / "src" / "missing.ts"]
        )

        assert list(metadata.file_hashes) == [str(sample_project / "src" / "user.ts")]

    @pytest.mark.asyncio
    async def test_relative_paths_resolved_against_project(
        self, indexer: IncrementalIndexer, sample_project: Path
    ):
        """Relative paths are recorded as absolute project paths."""
        metadata = await indexer.save_metadata(["src/user.ts"])

        assert list(metadata.file_hashes) == [str(sample_project / "src" / "user.ts")]

    @pytest.mark.asyncio
    async def test_save_replaces_wholesale(self, indexer: IncrementalIndexer, sample_project: Path):
        """A later save forgets files it does not list."""
        await save_all(indexer)

        metadata = await indexer.save_metadata([sample_project / "src" / "api.ts"])

        assert indexer.get_tracked_files() == [str(sample_project / "src" / "api.ts")]
        assert indexer.metadata_store.load() == metadata

    @pytest.mark.asyncio
    async def test_metadata_lives_in_index_dir(
        self, indexer: IncrementalIndexer, test_settings: Settings, sample_project: Path
    ):
        """The metadata file is stored under the project's index path."""
        await save_all(indexer)

        expected = get_index_path(test_settings, sample_project) / "index-metadata.json"
        assert expected.exists()

    @pytest.mark.asyncio
    async def test_clear_metadata_forces_full(self, indexer: IncrementalIndexer):
        """After clearing, the next cycle is a full index; clearing twice is fine."""
        await save_all(indexer)

        await indexer.clear_metadata()
        await indexer.clear_metadata()

        assert (await indexer.detect_changes()).is_full
