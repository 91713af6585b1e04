"""Shared fixtures: in-memory corpus, deterministic embeddings and a scripted chat model."""

import re
import sys
from pathlib import Path

import pytest

_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

from notes_rag.config import AppConfig  # noqa: E402
from notes_rag.errors import EmbeddingFailure, ProviderUnavailable  # noqa: E402
from notes_rag.ingest import NoteFile  # noqa: E402
from notes_rag.manager import RAGManager  # noqa: E402
from notes_rag.persistence import SnapshotStore  # noqa: E402

_STOPWORDS = {"a", "an", "and", "is", "of", "the", "to", "what", "in", "on", "for", "it", "my"}
_WORD_RE = re.compile(r"[a-z0-9]+")


class FakeEmbeddings:
    """Bag-of-words vectors over a vocabulary assigned in first-seen order."""

    provider_type = "ollama"
    model_name = "fake-embed"

    def __init__(self, dim=64, fail_on=None, available=True):
        self.dim = dim
        self.fail_on = fail_on
        self.available = available
        self.fail_queries = False
        self.vocab = {}
        self.document_calls = []
        self.query_calls = []
        self.closed = False

    def _vector(self, text):
        vec = [0.0] * self.dim
        for word in _WORD_RE.findall(text.lower()):
            if word in _STOPWORDS:
                continue
            if word not in self.vocab:
                self.vocab[word] = len(self.vocab) % self.dim
            vec[self.vocab[word]] += 1.0
        return vec

    async def embed_documents(self, texts):
        self.document_calls.append(list(texts))
        vectors = []
        for i, text in enumerate(texts):
            if self.fail_on and self.fail_on in text:
                raise EmbeddingFailure(i, "scripted failure")
            vectors.append(self._vector(text))
        return vectors

    async def embed_query(self, text):
        self.query_calls.append(text)
        if self.fail_queries:
            raise EmbeddingFailure(0, "scripted query failure")
        return self._vector(text)

    async def check_availability(self):
        if not self.available:
            raise ProviderUnavailable("fake server is down")

    async def aclose(self):
        self.closed = True

    @property
    def embedded_texts(self):
        return [t for call in self.document_calls for t in call]


class FakeCorpus:
    def __init__(self, files=None):
        self.files = dict(files or {})
        self.unreadable = set()
        self.reads = []

    def list_files(self):
        return [NoteFile(path=p, mtime=0.0) for p in sorted(self.files)]

    def read_file(self, handle):
        self.reads.append(handle.path)
        if handle.path in self.unreadable:
            raise OSError(f"permission denied: {handle.path}")
        return self.files[handle.path]


class FakeGenerator:
    def __init__(self, answer="scripted answer", fragments=None):
        self.answer = answer
        self.fragments = fragments or ["scripted ", "answer"]
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        return self.answer

    async def stream(self, request):
        self.requests.append(request)
        for fragment in self.fragments:
            yield fragment


@pytest.fixture
def make_config(tmp_path):
    def _factory(**overrides):
        values = dict(
            data_dir=tmp_path / "notes",
            storage_dir=tmp_path / "index",
            provider_type="ollama",
            embedding_model_name="fake-embed",
            chunk_size=200,
            chunk_overlap=20,
            min_similarity=0.2,
        )
        values.update(overrides)
        cfg = AppConfig(**values)
        cfg.storage_dir_resolved.mkdir(parents=True, exist_ok=True)
        return cfg

    return _factory


@pytest.fixture
def corpus():
    return FakeCorpus()


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def make_manager(make_config, corpus, embeddings, generator):
    def _factory(config=None, provider=None, **overrides):
        cfg = config or make_config(**overrides)
        return RAGManager(
            config=cfg,
            corpus=corpus,
            provider=provider or embeddings,
            generator=generator,
            snapshots=SnapshotStore(cfg.storage_dir_resolved),
        )

    return _factory
