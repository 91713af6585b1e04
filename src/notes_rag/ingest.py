from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Protocol, Sequence, Tuple

NOTE_SUFFIXES = {".md", ".markdown", ".txt"}

# Preferred cut points, strongest first.
_BOUNDARIES: Tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", "; ", " ")

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\n.*?\n(?:---|\.\.\.)[ \t]*(?:\n|\Z)", re.DOTALL)
_INLINE_SPACE_RE = re.compile(r"[ \t\f\v]+")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Chunk:
    id: str
    text: str
    source_path: str
    source_content_hash: str
    ordinal: int
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class NoteFile:
    path: str
    mtime: float


class CorpusProvider(Protocol):
    def list_files(self) -> Sequence[NoteFile]: ...

    def read_file(self, handle: NoteFile) -> str: ...


class NotesDirectory:
    """Markdown and text notes below a root directory, addressed by POSIX relative path."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _iter_paths(self) -> Iterable[Path]:
        for path in self.root.rglob("*"):
            rel = path.relative_to(self.root)
            if any(part.startswith(".") for part in rel.parts):
                continue
            if path.is_file() and path.suffix.lower() in NOTE_SUFFIXES:
                yield path

    def list_files(self) -> List[NoteFile]:
        if not self.root.exists():
            return []
        files = [
            NoteFile(path=p.relative_to(self.root).as_posix(), mtime=p.stat().st_mtime)
            for p in self._iter_paths()
        ]
        return sorted(files, key=lambda f: f.path)

    def read_file(self, handle: NoteFile) -> str:
        return (self.root / handle.path).read_text(encoding="utf-8")


def compute_content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_chunk_id(source_path: str, content_hash: str, ordinal: int) -> str:
    digest = hashlib.sha256(f"{source_path}\0{content_hash}\0{ordinal}".encode("utf-8"))
    return digest.hexdigest()[:32]


def preprocess(text: str) -> str:
    """Drop front matter and squeeze whitespace noise out of a note."""
    cleaned = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _FRONT_MATTER_RE.sub("", cleaned, count=1)
    cleaned = _INLINE_SPACE_RE.sub(" ", cleaned)
    cleaned = _TRAILING_SPACE_RE.sub("\n", cleaned)
    cleaned = _BLANK_LINES_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def _find_cut(text: str, limit: int, floor: int) -> int:
    window = text[floor:limit]
    for sep in _BOUNDARIES:
        pos = window.rfind(sep)
        if pos != -1:
            return floor + pos + len(sep)
    return limit


def split(text: str, target_size: int, overlap: int) -> List[Tuple[str, int]]:
    """
    Split text into ``(chunk_text, ordinal)`` pairs of at most ``target_size`` characters.

    Each chunk after the first begins with the last ``overlap`` characters of
    its predecessor. Cuts land on paragraph, line, sentence or word boundaries
    found in the back half of the window, else exactly at ``target_size``.
    """
    if target_size <= 0:
        raise ValueError("target_size must be positive")
    if not 0 <= overlap < target_size:
        raise ValueError("overlap must be >= 0 and smaller than target_size")

    if not text.strip():
        return []
    if len(text) <= target_size:
        return [(text, 0)]

    pieces: List[Tuple[str, int]] = []
    start = 0
    while True:
        limit = start + target_size
        if limit >= len(text):
            pieces.append((text[start:], len(pieces)))
            break
        # Cutting beyond start + overlap guarantees forward progress.
        floor = start + max(overlap + 1, target_size // 2)
        end = _find_cut(text, limit, floor)
        pieces.append((text[start:end], len(pieces)))
        start = end - overlap
    return pieces


def chunk_document(
    text: str,
    source_path: str,
    content_hash: str,
    target_size: int,
    overlap: int,
) -> List[Chunk]:
    created_at = _utcnow()
    return [
        Chunk(
            id=make_chunk_id(source_path, content_hash, ordinal),
            text=piece,
            source_path=source_path,
            source_content_hash=content_hash,
            ordinal=ordinal,
            created_at=created_at,
        )
        for piece, ordinal in split(preprocess(text), target_size, overlap)
    ]


__all__ = [
    "Chunk",
    "NoteFile",
    "CorpusProvider",
    "NotesDirectory",
    "compute_content_hash",
    "make_chunk_id",
    "preprocess",
    "split",
    "chunk_document",
]
