from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .errors import DimensionMismatch
from .ingest import Chunk


@dataclass(frozen=True)
class SearchResult:
    text: str
    source_path: str
    score: float
    chunk: Chunk


def _as_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    return np.asarray([list(v) for v in vectors], dtype="float32")


class VectorStore:
    """
    In-memory chunk/vector collection searched by exact cosine similarity.

    Vectors are kept in a dense float32 matrix with one row per chunk; search is
    a full scan, which is fine for a single person's notes. Every vector must
    share the dimensionality established by the first one added.
    """

    def __init__(self) -> None:
        self._chunks: List[Chunk] = []
        self._matrix: Optional[np.ndarray] = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def dimension(self) -> Optional[int]:
        if self._matrix is None:
            return None
        return int(self._matrix.shape[1])

    def add_chunks(self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]]) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(f"Got {len(chunks)} chunks but {len(vectors)} vectors")
        if not chunks:
            return

        with self._lock:
            expected = self.dimension
            if expected is None:
                expected = len(vectors[0])
            for vector in vectors:
                if len(vector) != expected:
                    raise DimensionMismatch(expected, len(vector))

            block = _as_matrix(vectors)
            if self._matrix is None:
                self._matrix = block
            else:
                self._matrix = np.vstack([self._matrix, block])
            self._chunks.extend(chunks)

    def remove_by_source_path(self, path: str) -> int:
        with self._lock:
            keep = [i for i, c in enumerate(self._chunks) if c.source_path != path]
            removed = len(self._chunks) - len(keep)
            if removed == 0:
                return 0
            self._chunks = [self._chunks[i] for i in keep]
            if keep:
                self._matrix = self._matrix[keep]
            else:
                self._matrix = None
            return removed

    def clear(self) -> None:
        with self._lock:
            self._chunks = []
            self._matrix = None

    def similarity_search(self, query_vector: Sequence[float], k: int) -> List[SearchResult]:
        if k < 1:
            raise ValueError("k must be >= 1")

        with self._lock:
            if not self._chunks:
                return []
            query = np.asarray(list(query_vector), dtype="float32")
            if query.shape[0] != self.dimension:
                raise DimensionMismatch(self.dimension, int(query.shape[0]))

            norms = np.linalg.norm(self._matrix, axis=1) * np.linalg.norm(query)
            dots = self._matrix @ query
            scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

            order = sorted(
                range(len(self._chunks)),
                key=lambda i: (-float(scores[i]), -self._chunks[i].created_at.timestamp()),
            )
            return [
                SearchResult(
                    text=self._chunks[i].text,
                    source_path=self._chunks[i].source_path,
                    score=float(scores[i]),
                    chunk=self._chunks[i],
                )
                for i in order[:k]
            ]

    def chunks(self) -> List[Chunk]:
        with self._lock:
            return list(self._chunks)

    def vectors(self) -> List[List[float]]:
        with self._lock:
            if self._matrix is None:
                return []
            return [row.tolist() for row in self._matrix]

    def chunk_ids(self) -> set:
        with self._lock:
            return {c.id for c in self._chunks}

    def source_paths(self) -> set:
        with self._lock:
            return {c.source_path for c in self._chunks}


__all__ = ["SearchResult", "VectorStore"]
