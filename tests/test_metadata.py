"""Tests for the index metadata store."""

import hashlib
import json
import threading
from pathlib import Path

import pytest

from code_recall.models import IndexMetadata
from code_recall.storage.metadata import MetadataStore, compute_file_hash


def make_metadata(**file_hashes: str) -> IndexMetadata:
    return IndexMetadata(
        version="1.0.0",
        last_indexed_at=1_700_000_000_000,
        file_hashes=file_hashes,
        project_path="/project",
    )


class TestComputeFileHash:
    """Tests for compute_file_hash()."""

    def test_sha256_of_raw_bytes(self, tmp_path: Path):
        """The digest is SHA-256 over the file's exact bytes."""
        f = tmp_path / "a.ts"
        f.write_bytes(b"const a = 1;\r\n")

        assert compute_file_hash(f) == hashlib.sha256(b"const a = 1;\r\n").hexdigest()

    def test_missing_file_raises(self, tmp_path: Path):
        """An unreadable file surfaces as OSError for the caller to absorb."""
        with pytest.raises(OSError):
            compute_file_hash(tmp_path / "missing.ts")


class TestMetadataStore:
    """Tests for MetadataStore load/save/clear."""

    def test_load_missing_returns_none(self, tmp_path: Path):
        """No file means no metadata."""
        store = MetadataStore(tmp_path / "meta.json")

        assert store.load() is None
        assert not store.exists()

    def test_save_and_load_round_trip(self, tmp_path: Path):
        """Saved metadata loads back equal."""
        store = MetadataStore(tmp_path / "meta.json")
        metadata = make_metadata(**{"/project/a.ts": "abc"})

        store.save(metadata)

        assert store.load() == metadata

    def test_on_disk_layout(self, tmp_path: Path):
        """The file uses camelCase keys and [path, hash] pairs."""
        path = tmp_path / "meta.json"
        MetadataStore(path).save(make_metadata(**{"/project/a.ts": "abc"}))

        data = json.loads(path.read_text())

        assert data == {
            "version": "1.0.0",
            "lastIndexedAt": 1_700_000_000_000,
            "fileHashes": [["/project/a.ts", "abc"]],
            "projectPath": "/project",
        }

    def test_corrupt_file_loads_as_none(self, tmp_path: Path):
        """Corrupt metadata is treated as absent."""
        path = tmp_path / "meta.json"
        path.write_text("{not json")

        assert MetadataStore(path).load() is None

    @pytest.mark.parametrize(
        "file_hashes",
        [[1, 2], [["/project/a.ts"]], [[["/project/a.ts"], "abc"]], [["/project/a.ts", 7]]],
    )
    def test_malformed_hash_pairs_load_as_none(self, tmp_path: Path, file_hashes):
        """fileHashes entries that are not [path, hash] pairs are treated as corrupt."""
        path = tmp_path / "meta.json"
        path.write_text(
            json.dumps(
                {
                    "version": "1.0.0",
                    "lastIndexedAt": 1,
                    "fileHashes": file_hashes,
                    "projectPath": "/project",
                }
            )
        )

        assert MetadataStore(path).load() is None

    def test_non_utf8_file_loads_as_none(self, tmp_path: Path):
        """Undecodable bytes are treated as corrupt."""
        path = tmp_path / "meta.json"
        path.write_bytes(b'{"version": "\xff"}')

        assert MetadataStore(path).load() is None

    def test_wrong_shape_loads_as_none(self, tmp_path: Path):
        """Valid JSON with missing fields is treated as absent."""
        path = tmp_path / "meta.json"
        path.write_text('{"version": "1.0.0"}')

        assert MetadataStore(path).load() is None

    def test_save_leaves_no_temp_files(self, tmp_path: Path):
        """Atomic save cleans up after itself."""
        store = MetadataStore(tmp_path / "meta.json")
        store.save(make_metadata())
        store.save(make_metadata(**{"/project/b.ts": "def"}))

        assert [p.name for p in tmp_path.iterdir()] == ["meta.json"]

    def test_clear_is_idempotent(self, tmp_path: Path):
        """clear() removes the file and can be called again safely."""
        store = MetadataStore(tmp_path / "meta.json")
        store.save(make_metadata())

        assert store.clear() is True
        assert store.clear() is False
        assert store.load() is None

    def test_stores_share_lock_per_path(self, tmp_path: Path):
        """Two stores on the same file serialize through one lock."""
        a = MetadataStore(tmp_path / "meta.json")
        b = MetadataStore(tmp_path / "." / "meta.json")

        assert a.lock is b.lock

    def test_concurrent_saves_never_corrupt(self, tmp_path: Path):
        """Concurrent writers leave one complete, loadable file."""
        store = MetadataStore(tmp_path / "meta.json")
        payloads = [make_metadata(**{f"/project/{i}.ts": str(i) * 64}) for i in range(20)]

        threads = [threading.Thread(target=store.save, args=(m,)) for m in payloads]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.load() in payloads
