"""
Durable snapshot of the vector store and its index manifest.

The whole index lives in one JSON document (``embeddings.json``)::

    {
      "schemaVersion": 1,
      "providerType": "ollama",
      "modelName": "mxbai-embed-large",
      "indexedFiles": {"notes/a.md": {"contentHash": "...", "chunkIds": [...], "lastIndexedAt": "..."}},
      "totalChunks": 12,
      "lastIndexed": "...",
      "chunks": [{"id": "...", "sourcePath": "...", "ordinal": 0, "text": "...",
                  "vector": [0.1, ...], "contentHash": "...", "createdAt": "..."}]
    }

Writes go to a temporary file in the same directory which is then renamed over
the previous snapshot, so a crash mid-write leaves the old snapshot intact.
A snapshot that cannot be decoded, or that was written by a different schema
version, loads as "not found" and the caller rebuilds the index.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import CorruptSnapshot
from .ingest import Chunk

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SNAPSHOT_FILENAME = "embeddings.json"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IndexedFile(_CamelModel):
    content_hash: str = Field(alias="contentHash")
    chunk_ids: List[str] = Field(default_factory=list, alias="chunkIds")
    last_indexed_at: datetime = Field(alias="lastIndexedAt")


class IndexManifest(_CamelModel):
    provider_type: str = Field(alias="providerType")
    model_name: str = Field(alias="modelName")
    indexed_files: Dict[str, IndexedFile] = Field(default_factory=dict, alias="indexedFiles")
    total_chunks: int = Field(default=0, alias="totalChunks")
    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")

    @classmethod
    def empty(cls, provider_type: str, model_name: str) -> "IndexManifest":
        return cls(provider_type=provider_type, model_name=model_name)

    @property
    def last_indexed(self) -> Optional[datetime]:
        stamps = [f.last_indexed_at for f in self.indexed_files.values()]
        return max(stamps) if stamps else None

    def chunk_ids(self) -> set:
        return {cid for f in self.indexed_files.values() for cid in f.chunk_ids}


class ChunkRecord(_CamelModel):
    id: str
    source_path: str = Field(alias="sourcePath")
    ordinal: int
    text: str
    vector: List[float]
    content_hash: str = Field(alias="contentHash")
    created_at: datetime = Field(alias="createdAt")


class SnapshotDocument(_CamelModel):
    schema_version: int = Field(alias="schemaVersion")
    provider_type: str = Field(alias="providerType")
    model_name: str = Field(alias="modelName")
    indexed_files: Dict[str, IndexedFile] = Field(default_factory=dict, alias="indexedFiles")
    total_chunks: int = Field(default=0, alias="totalChunks")
    last_indexed: Optional[datetime] = Field(default=None, alias="lastIndexed")
    chunks: List[ChunkRecord] = Field(default_factory=list)


@dataclass
class LoadedSnapshot:
    manifest: IndexManifest
    chunks: List[Chunk]
    vectors: List[List[float]]


@dataclass
class StorageStats:
    total_embeddings: int
    indexed_files: int
    last_indexed: Optional[datetime]
    storage_used: str


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"  # pragma: no cover


def decode_snapshot(raw: str) -> LoadedSnapshot:
    """
    Decode a snapshot document.

    Raises CorruptSnapshot when the document is unreadable or internally
    inconsistent. Manifest entries that reference missing chunks are dropped so
    that those files get re-indexed.
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptSnapshot(f"invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise CorruptSnapshot("snapshot root is not an object")

    try:
        doc = SnapshotDocument.model_validate(payload)
    except ValidationError as e:
        raise CorruptSnapshot(f"invalid snapshot structure: {e.error_count()} error(s)") from e

    dims = {len(r.vector) for r in doc.chunks}
    if len(dims) > 1:
        raise CorruptSnapshot(f"mixed vector dimensionalities {sorted(dims)}")

    records = {r.id: r for r in doc.chunks}
    indexed_files: Dict[str, IndexedFile] = {}
    for path, entry in doc.indexed_files.items():
        missing = [cid for cid in entry.chunk_ids if cid not in records]
        if missing:
            logger.warning(
                "Manifest entry %s references %d missing chunk(s); it will be re-indexed",
                path,
                len(missing),
            )
            continue
        indexed_files[path] = entry

    chunks: List[Chunk] = []
    vectors: List[List[float]] = []
    for path, entry in indexed_files.items():
        for cid in entry.chunk_ids:
            r = records[cid]
            chunks.append(
                Chunk(
                    id=r.id,
                    text=r.text,
                    source_path=r.source_path,
                    source_content_hash=r.content_hash,
                    ordinal=r.ordinal,
                    created_at=r.created_at,
                )
            )
            vectors.append(r.vector)

    manifest = IndexManifest(
        provider_type=doc.provider_type,
        model_name=doc.model_name,
        indexed_files=indexed_files,
        total_chunks=len(chunks),
        schema_version=doc.schema_version,
    )
    return LoadedSnapshot(manifest=manifest, chunks=chunks, vectors=vectors)


def encode_snapshot(
    manifest: IndexManifest,
    chunks: Sequence[Chunk],
    vectors: Sequence[Sequence[float]],
) -> str:
    doc = SnapshotDocument(
        schema_version=SCHEMA_VERSION,
        provider_type=manifest.provider_type,
        model_name=manifest.model_name,
        indexed_files=manifest.indexed_files,
        total_chunks=len(chunks),
        last_indexed=manifest.last_indexed,
        chunks=[
            ChunkRecord(
                id=c.id,
                source_path=c.source_path,
                ordinal=c.ordinal,
                text=c.text,
                vector=list(v),
                content_hash=c.source_content_hash,
                created_at=c.created_at,
            )
            for c, v in zip(chunks, vectors)
        ],
    )
    return doc.model_dump_json(by_alias=True)


class SnapshotStore:
    """Reads and writes ``embeddings.json`` inside the storage directory."""

    def __init__(self, storage_dir: Path, filename: str = SNAPSHOT_FILENAME) -> None:
        self.storage_dir = Path(storage_dir)
        self.path = self.storage_dir / filename
        self._manifest: Optional[IndexManifest] = None

    def exists(self) -> bool:
        return self.path.exists()

    def save(
        self,
        manifest: IndexManifest,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
    ) -> bool:
        if len(chunks) != len(vectors):
            raise ValueError(f"Got {len(chunks)} chunks but {len(vectors)} vectors")

        data = encode_snapshot(manifest, chunks, vectors)
        tmp_name: Optional[str] = None
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.storage_dir, prefix=f".{self.path.stem}-", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            logger.exception("Failed to write snapshot %s", self.path)
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            return False

        self._manifest = manifest.model_copy(update={"total_chunks": len(chunks)})
        logger.info("Saved %d embeddings for %d files to %s",
                    len(chunks), len(manifest.indexed_files), self.path)
        return True

    def load(self) -> Optional[LoadedSnapshot]:
        """Return the persisted snapshot, or None when there is no usable one."""
        self._manifest = None
        if not self.path.exists():
            logger.info("No snapshot at %s", self.path)
            return None

        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error("Cannot read snapshot %s: %s", self.path, e)
            return None

        try:
            version = json.loads(raw).get("schemaVersion")
        except (json.JSONDecodeError, AttributeError):
            version = SCHEMA_VERSION  # let the decoder report the corruption
        if version != SCHEMA_VERSION:
            logger.warning(
                "Snapshot %s has schema version %r, expected %d; ignoring it",
                self.path,
                version,
                SCHEMA_VERSION,
            )
            return None

        try:
            snapshot = decode_snapshot(raw)
        except CorruptSnapshot as e:
            logger.error("Snapshot %s is corrupt (%s); starting with an empty index", self.path, e)
            return None

        self._manifest = snapshot.manifest
        logger.info(
            "Loaded %d embeddings for %d files from %s",
            len(snapshot.chunks),
            len(snapshot.manifest.indexed_files),
            self.path,
        )
        return snapshot

    def delete(self) -> None:
        self._manifest = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def get_storage_stats(self) -> StorageStats:
        if self._manifest is None and self.path.exists():
            self.load()
        size = self.path.stat().st_size if self.path.exists() else 0
        manifest = self._manifest
        if manifest is None:
            return StorageStats(0, 0, None, format_bytes(size))
        return StorageStats(
            total_embeddings=manifest.total_chunks,
            indexed_files=len(manifest.indexed_files),
            last_indexed=manifest.last_indexed,
            storage_used=format_bytes(size),
        )


__all__ = [
    "SCHEMA_VERSION",
    "SNAPSHOT_FILENAME",
    "IndexedFile",
    "IndexManifest",
    "LoadedSnapshot",
    "StorageStats",
    "SnapshotStore",
    "decode_snapshot",
    "encode_snapshot",
    "format_bytes",
]
