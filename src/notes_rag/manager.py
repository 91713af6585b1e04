"""
RAGManager: indexing and question answering over a folder of notes.

An indexing run moves through ``IndexState``: scanning the corpus, diffing it
against the manifest by content hash, embedding the changed files one at a
time, and persisting the snapshot. A file that fails to read or embed is logged
and skipped; the run carries on with the others. An unreachable provider or a
dimensionality mismatch aborts the run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .config import AppConfig
from .embeddings import EmbeddingProvider, create_embedding_provider
from .errors import (
    DimensionMismatch,
    EmbeddingFailure,
    IndexingInProgress,
    ProviderUnavailable,
)
from .index import SearchResult, VectorStore
from .ingest import CorpusProvider, NoteFile, NotesDirectory, chunk_document, compute_content_hash
from .persistence import IndexedFile, IndexManifest, SnapshotStore, StorageStats
from .personas import PersonaStore
from .query import (
    CancellationFlag,
    CompletionRequest,
    OpenAIChatGenerator,
    TextGenerator,
    build_context_block,
    cancellable,
    extract_actual_response,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
FragmentCallback = Callable[[str], None]

EMPTY_INDEX_MESSAGE = (
    "No notes have been indexed yet. Index your notes first, then ask again."
)
SEARCH_FAILED_MESSAGE = (
    "The search request failed ({error}). Check that the embedding server is running; "
    "details are in the log."
)


class IndexState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    ERROR = "error"


class QueryStatus(str, Enum):
    OK = "ok"
    EMPTY_INDEX = "empty_index"
    SEARCH_FAILED = "search_failed"


@dataclass
class IndexSummary:
    indexed: int = 0
    unchanged: int = 0
    removed: int = 0
    skipped: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    total_chunks: int = 0
    persisted: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.indexed or self.removed)


@dataclass
class QueryResult:
    answer: str
    sources: List[str]
    status: QueryStatus = QueryStatus.OK
    results: List[SearchResult] = field(default_factory=list)


def _unique(paths: List[str]) -> List[str]:
    seen = set()
    out = []
    for p in paths:
        if p not in seen:
            seen.add(p)
            out.append(p)
    return out


class RAGManager:
    def __init__(
        self,
        config: AppConfig,
        corpus: CorpusProvider,
        provider: EmbeddingProvider,
        generator: TextGenerator,
        snapshots: Optional[SnapshotStore] = None,
        personas: Optional[PersonaStore] = None,
        cancellation: Optional[CancellationFlag] = None,
    ) -> None:
        self.config = config
        self.corpus = corpus
        self.provider = provider
        self.generator = generator
        self.snapshots = snapshots or SnapshotStore(config.storage_dir_resolved)
        self.personas = personas or PersonaStore()
        self.cancellation = cancellation or CancellationFlag()

        self.store = VectorStore()
        self.manifest = IndexManifest.empty(*config.embedding_fingerprint())
        self.state = IndexState.IDLE
        self.history: List[Tuple[str, str]] = []
        self._initialized = False
        self._index_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: AppConfig, personas: Optional[PersonaStore] = None) -> "RAGManager":
        return cls(
            config=config,
            corpus=NotesDirectory(config.data_dir_resolved),
            provider=create_embedding_provider(config),
            generator=OpenAIChatGenerator.from_config(config),
            personas=personas,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_indexing(self) -> bool:
        return self._index_lock.locked()

    @property
    def indexed_files_count(self) -> int:
        return len(self.manifest.indexed_files)

    def _reset_index(self) -> None:
        self.store.clear()
        self.manifest = IndexManifest.empty(*self.config.embedding_fingerprint())

    async def initialize(self) -> None:
        """Rebuild the in-memory store from the persisted snapshot, if it is usable."""
        self._reset_index()
        snapshot = self.snapshots.load()
        if snapshot is not None:
            fingerprint = (snapshot.manifest.provider_type, snapshot.manifest.model_name)
            if fingerprint != self.config.embedding_fingerprint():
                logger.warning(
                    "Snapshot was built with %s/%s but %s/%s is configured; a full reindex is required",
                    *fingerprint,
                    *self.config.embedding_fingerprint(),
                )
                self.snapshots.delete()
            else:
                self.store.add_chunks(snapshot.chunks, snapshot.vectors)
                self.manifest = snapshot.manifest
        self._initialized = True
        logger.info("Index ready: %d chunks from %d files", len(self.store), self.indexed_files_count)

    # Indexing

    async def index_all(self, on_progress: Optional[ProgressCallback] = None) -> IndexSummary:
        if self._index_lock.locked():
            raise IndexingInProgress()
        async with self._index_lock:
            if not self._initialized:
                await self.initialize()
            try:
                summary = await self._run_index(on_progress)
            except Exception:
                self.state = IndexState.ERROR
                raise
            self.state = IndexState.IDLE
            return summary

    def _diff(
        self, files: List[NoteFile], summary: IndexSummary
    ) -> Tuple[List[Tuple[NoteFile, str]], List[str]]:
        queued: List[Tuple[NoteFile, str]] = []
        store_ids = self.store.chunk_ids()
        for handle in files:
            try:
                text = self.corpus.read_file(handle)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping %s: cannot read it (%s)", handle.path, e)
                summary.skipped += 1
                summary.failures.append((handle.path, f"read failed: {e}"))
                continue
            entry = self.manifest.indexed_files.get(handle.path)
            if entry is None or entry.content_hash != compute_content_hash(text):
                queued.append((handle, text))
            elif not set(entry.chunk_ids) <= store_ids:
                logger.warning("Chunks for %s are missing from the store; re-indexing it", handle.path)
                queued.append((handle, text))
            else:
                summary.unchanged += 1

        present = {f.path for f in files}
        vanished = [p for p in self.manifest.indexed_files if p not in present]
        return queued, vanished

    async def _index_file(self, handle: NoteFile, text: str) -> int:
        content_hash = compute_content_hash(text)
        chunks = chunk_document(
            text,
            handle.path,
            content_hash,
            self.config.chunk_size,
            self.config.chunk_overlap,
        )
        vectors = await self.provider.embed_documents([c.text for c in chunks]) if chunks else []

        self.store.remove_by_source_path(handle.path)
        self.store.add_chunks(chunks, vectors)
        self.manifest.indexed_files[handle.path] = IndexedFile(
            content_hash=content_hash,
            chunk_ids=[c.id for c in chunks],
            last_indexed_at=datetime.now(timezone.utc),
        )
        return len(chunks)

    def _persist(self, summary: IndexSummary) -> None:
        if not summary.changed and self.snapshots.exists():
            logger.info("Index unchanged; snapshot left as is")
            return
        self.state = IndexState.PERSISTING
        self.manifest.total_chunks = len(self.store)
        summary.persisted = self.snapshots.save(self.manifest, self.store.chunks(), self.store.vectors())

    async def _run_index(self, on_progress: Optional[ProgressCallback]) -> IndexSummary:
        summary = IndexSummary()
        await self.provider.check_availability()

        self.state = IndexState.SCANNING
        files = list(self.corpus.list_files())
        logger.info("Found %d notes", len(files))

        self.state = IndexState.DIFFING
        queued, vanished = self._diff(files, summary)
        logger.info(
            "%d new or changed, %d unchanged, %d removed", len(queued), summary.unchanged, len(vanished)
        )

        self.state = IndexState.EMBEDDING
        for path in vanished:
            self.store.remove_by_source_path(path)
            del self.manifest.indexed_files[path]
            summary.removed += 1

        try:
            for n, (handle, text) in enumerate(queued, start=1):
                try:
                    count = await self._index_file(handle, text)
                except EmbeddingFailure as e:
                    logger.warning("Skipping %s: %s", handle.path, e)
                    summary.skipped += 1
                    summary.failures.append((handle.path, str(e)))
                else:
                    summary.indexed += 1
                    logger.debug("Indexed %s (%d chunks)", handle.path, count)
                if on_progress is not None:
                    on_progress(n / len(queued))
        except DimensionMismatch:
            logger.error("Embedding dimensionality changed mid-run; clearing the index")
            self._reset_index()
            self.snapshots.delete()
            raise
        except ProviderUnavailable:
            # Keep what was embedded before the provider went away.
            self._persist(summary)
            raise

        if on_progress is not None and not queued:
            on_progress(1.0)

        self._persist(summary)
        summary.total_chunks = len(self.store)
        logger.info(
            "Indexing finished: %d indexed, %d unchanged, %d removed, %d skipped",
            summary.indexed,
            summary.unchanged,
            summary.removed,
            summary.skipped,
        )
        return summary

    # Querying

    async def search(self, text: str, k: Optional[int] = None) -> List[SearchResult]:
        vector = await self.provider.embed_query(text)
        return self.store.similarity_search(vector, k if k is not None else self.config.top_k)

    def _history_window(self) -> List[Tuple[str, str]]:
        if self.config.max_conv_history <= 0:
            return []
        return self.history[-self.config.max_conv_history:]

    def _remember(self, question: str, answer: str) -> None:
        if self.config.max_conv_history <= 0:
            return
        self.history.append((question, answer))
        del self.history[:-self.config.max_conv_history]

    async def _retrieve(self, text: str) -> Tuple[Optional[CompletionRequest], QueryResult]:
        if len(self.store) == 0:
            return None, QueryResult(EMPTY_INDEX_MESSAGE, [], QueryStatus.EMPTY_INDEX)
        try:
            results = await self.search(text)
        except (EmbeddingFailure, ProviderUnavailable) as e:
            logger.error("Search for %r failed: %s", text, e)
            return None, QueryResult(SEARCH_FAILED_MESSAGE.format(error=e), [], QueryStatus.SEARCH_FAILED)

        relevant = [r for r in results if r.score >= self.config.min_similarity]
        context_block, used = build_context_block(relevant, self.config.max_context_chars)
        request = CompletionRequest(
            system_prompt=self.personas.system_prompt_for(
                self.config.persona, self.config.default_system_prompt
            ),
            context_block=context_block,
            user_query=text,
            history=self._history_window(),
        )
        sources = _unique([r.source_path for r in used])
        return request, QueryResult("", sources, QueryStatus.OK, used)

    def _finish(self, question: str, raw_answer: str, result: QueryResult) -> QueryResult:
        answer = raw_answer
        if self.config.extract_reasoning_responses:
            answer = extract_actual_response(answer, self.config.reasoning_markers)
        result.answer = answer.strip()
        self._remember(question, result.answer)
        return result

    async def query(self, text: str) -> QueryResult:
        request, result = await self._retrieve(text)
        if request is None:
            return result
        raw_answer = await self.generator.complete(request)
        return self._finish(text, raw_answer, result)

    async def stream_query(self, text: str, on_fragment: FragmentCallback) -> QueryResult:
        """Like ``query`` but pushes answer fragments as they arrive.

        Stops early when ``self.cancellation`` is raised between fragments.
        """
        request, result = await self._retrieve(text)
        if request is None:
            on_fragment(result.answer)
            return result
        self.cancellation.reset()
        fragments: List[str] = []
        async for fragment in cancellable(self.generator.stream(request), self.cancellation):
            fragments.append(fragment)
            on_fragment(fragment)
        return self._finish(text, "".join(fragments), result)

    # Settings and maintenance

    async def update_settings(self, config: AppConfig, provider: Optional[EmbeddingProvider] = None) -> None:
        """Apply new settings; a new provider or embedding model invalidates the index."""
        if self._index_lock.locked():
            raise IndexingInProgress()
        old = self.config
        self.config = config
        if provider is None and (
            old.embedding_fingerprint() != config.embedding_fingerprint()
            or old.server_address != config.server_address
            or old.openai_api_key != config.openai_api_key
        ):
            provider = create_embedding_provider(config)
        if provider is not None:
            await self.provider.aclose()
            self.provider = provider

        if old.embedding_fingerprint() != config.embedding_fingerprint():
            logger.warning(
                "Embedding provider changed from %s/%s to %s/%s; clearing the index",
                *old.embedding_fingerprint(),
                *config.embedding_fingerprint(),
            )
            self._reset_index()
            self.snapshots.delete()

    async def clear_index(self) -> None:
        if self._index_lock.locked():
            raise IndexingInProgress()
        self._reset_index()
        self.snapshots.delete()
        logger.info("Index cleared")

    def get_storage_stats(self) -> StorageStats:
        return self.snapshots.get_storage_stats()

    async def aclose(self) -> None:
        await self.provider.aclose()
        close = getattr(self.generator, "aclose", None)
        if close is not None:
            await close()


__all__ = [
    "EMPTY_INDEX_MESSAGE",
    "SEARCH_FAILED_MESSAGE",
    "IndexState",
    "IndexSummary",
    "QueryStatus",
    "QueryResult",
    "RAGManager",
]
