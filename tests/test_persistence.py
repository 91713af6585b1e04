"""Tests for snapshot save/load, recovery and storage statistics."""

import json
from datetime import datetime, timezone

import pytest

from notes_rag.ingest import Chunk
from notes_rag.persistence import (
    SCHEMA_VERSION,
    IndexedFile,
    IndexManifest,
    SnapshotStore,
    format_bytes,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def sample():
    chunks = [
        Chunk("a0", "alpha zero", "a.md", "ha", 0, NOW),
        Chunk("a1", "alpha one", "a.md", "ha", 1, NOW),
        Chunk("b0", "beta zero", "notes/b.md", "hb", 0, NOW),
    ]
    vectors = [[1.0, 0.0], [0.5, 0.5], [0.0, 1.0]]
    manifest = IndexManifest(
        provider_type="ollama",
        model_name="mxbai-embed-large",
        indexed_files={
            "a.md": IndexedFile(content_hash="ha", chunk_ids=["a0", "a1"], last_indexed_at=NOW),
            "notes/b.md": IndexedFile(content_hash="hb", chunk_ids=["b0"], last_indexed_at=NOW),
        },
    )
    return manifest, chunks, vectors


@pytest.fixture
def snapshots(tmp_path):
    return SnapshotStore(tmp_path / "index")


class TestSaveAndLoad:
    def test_round_trip(self, snapshots):
        manifest, chunks, vectors = sample()
        assert snapshots.save(manifest, chunks, vectors) is True

        loaded = SnapshotStore(snapshots.storage_dir).load()

        assert loaded is not None
        assert loaded.manifest.provider_type == "ollama"
        assert loaded.manifest.model_name == "mxbai-embed-large"
        assert loaded.manifest.total_chunks == 3
        assert set(loaded.manifest.indexed_files) == {"a.md", "notes/b.md"}
        assert {c.id for c in loaded.chunks} == {"a0", "a1", "b0"}
        by_id = dict(zip([c.id for c in loaded.chunks], loaded.vectors))
        assert by_id["a1"] == [0.5, 0.5]
        assert loaded.chunks[0].created_at == NOW

    def test_file_layout_uses_documented_keys(self, snapshots):
        snapshots.save(*sample())
        doc = json.loads(snapshots.path.read_text(encoding="utf-8"))
        assert doc["schemaVersion"] == SCHEMA_VERSION
        assert doc["providerType"] == "ollama"
        assert doc["modelName"] == "mxbai-embed-large"
        assert doc["indexedFiles"]["a.md"]["chunkIds"] == ["a0", "a1"]
        record = doc["chunks"][0]
        assert set(record) == {"id", "sourcePath", "ordinal", "text", "vector", "contentHash", "createdAt"}

    def test_no_temp_files_left_behind(self, snapshots):
        snapshots.save(*sample())
        snapshots.save(*sample())
        assert [p.name for p in snapshots.storage_dir.iterdir()] == ["embeddings.json"]

    def test_failed_write_keeps_previous_snapshot(self, snapshots, monkeypatch):
        manifest, chunks, vectors = sample()
        snapshots.save(manifest, chunks, vectors)
        before = snapshots.path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("notes_rag.persistence.os.replace", broken_replace)
        assert snapshots.save(manifest, chunks[:1], vectors[:1]) is False
        assert snapshots.path.read_bytes() == before
        assert [p.name for p in snapshots.storage_dir.iterdir()] == ["embeddings.json"]


class TestRecovery:
    def test_missing_file_is_not_found(self, snapshots):
        assert snapshots.load() is None

    def test_truncated_file_is_not_found(self, snapshots):
        snapshots.save(*sample())
        raw = snapshots.path.read_bytes()
        snapshots.path.write_bytes(raw[: len(raw) // 2])
        assert snapshots.load() is None

    def test_structurally_invalid_file_is_not_found(self, snapshots):
        snapshots.storage_dir.mkdir(parents=True)
        snapshots.path.write_text(json.dumps({"schemaVersion": SCHEMA_VERSION, "chunks": "nope"}))
        assert snapshots.load() is None

    def test_non_object_root_is_not_found(self, snapshots):
        snapshots.storage_dir.mkdir(parents=True)
        snapshots.path.write_text("[1, 2, 3]")
        assert snapshots.load() is None

    def test_schema_version_mismatch_is_not_found(self, snapshots):
        snapshots.save(*sample())
        doc = json.loads(snapshots.path.read_text())
        doc["schemaVersion"] = SCHEMA_VERSION + 1
        snapshots.path.write_text(json.dumps(doc))
        assert snapshots.load() is None

    def test_mixed_dimensions_are_not_found(self, snapshots):
        manifest, chunks, vectors = sample()
        snapshots.save(manifest, chunks, [[1.0, 0.0], [0.5, 0.5, 0.5], [0.0, 1.0]])
        assert snapshots.load() is None

    def test_entry_with_missing_chunks_is_dropped(self, snapshots):
        snapshots.save(*sample())
        doc = json.loads(snapshots.path.read_text())
        doc["chunks"] = [c for c in doc["chunks"] if c["id"] != "a1"]
        snapshots.path.write_text(json.dumps(doc))

        loaded = snapshots.load()

        assert loaded is not None
        assert set(loaded.manifest.indexed_files) == {"notes/b.md"}
        assert [c.id for c in loaded.chunks] == ["b0"]
        assert loaded.manifest.total_chunks == 1

    def test_orphan_chunks_are_discarded(self, snapshots):
        manifest, chunks, vectors = sample()
        del manifest.indexed_files["notes/b.md"]
        snapshots.save(manifest, chunks, vectors)

        loaded = snapshots.load()

        assert [c.id for c in loaded.chunks] == ["a0", "a1"]


class TestStorageStats:
    def test_stats_after_save(self, snapshots):
        snapshots.save(*sample())
        stats = snapshots.get_storage_stats()
        assert stats.total_embeddings == 3
        assert stats.indexed_files == 2
        assert stats.last_indexed == NOW
        assert stats.storage_used.endswith(("B", "KB"))

    def test_stats_from_disk_when_nothing_cached(self, snapshots):
        snapshots.save(*sample())
        stats = SnapshotStore(snapshots.storage_dir).get_storage_stats()
        assert stats.total_embeddings == 3
        assert stats.indexed_files == 2

    def test_stats_without_snapshot(self, snapshots):
        stats = snapshots.get_storage_stats()
        assert (stats.total_embeddings, stats.indexed_files, stats.last_indexed) == (0, 0, None)
        assert stats.storage_used == "0 B"

    def test_delete(self, snapshots):
        snapshots.save(*sample())
        snapshots.delete()
        assert not snapshots.exists()
        assert snapshots.get_storage_stats().total_embeddings == 0
        snapshots.delete()


@pytest.mark.parametrize(
    "size,expected",
    [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected
