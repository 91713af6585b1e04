from __future__ import annotations

from typing import Optional


class NotesRagError(Exception):
    """Base class for every error raised by notes_rag."""


class ProviderUnavailable(NotesRagError):
    """The embedding server is unreachable or the configured model is missing."""

    def __init__(self, message: str, provider_type: str = "", model_name: str = "") -> None:
        super().__init__(message)
        self.provider_type = provider_type
        self.model_name = model_name


class EmbeddingFailure(NotesRagError):
    """A single item of an embedding batch could not be embedded."""

    def __init__(self, index: int, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Embedding failed for item {index}: {message}")
        self.index = index
        self.cause = cause


class DimensionMismatch(NotesRagError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimensionality mismatch: store holds {expected}-d vectors, got {actual}-d. "
            "The index must be rebuilt for the current embedding model."
        )
        self.expected = expected
        self.actual = actual


class CorruptSnapshot(NotesRagError):
    """The persisted snapshot could not be decoded."""


class IndexingInProgress(NotesRagError):
    def __init__(self) -> None:
        super().__init__("An indexing run is already in progress.")


class GenerationError(NotesRagError):
    """The text-generation service failed to produce an answer."""


__all__ = [
    "NotesRagError",
    "ProviderUnavailable",
    "EmbeddingFailure",
    "DimensionMismatch",
    "CorruptSnapshot",
    "IndexingInProgress",
    "GenerationError",
]
