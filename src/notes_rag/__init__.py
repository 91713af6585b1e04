"""
notes-rag.

Retrieval-augmented question answering over a folder of markdown notes:
chunking, embedding through a local or OpenAI-compatible server, a persisted
in-memory vector index, and grounded answers from a chat model.
"""

from .manager import IndexSummary, QueryResult, QueryStatus, RAGManager

__all__ = [
    "backlinks",
    "config",
    "embeddings",
    "errors",
    "index",
    "ingest",
    "manager",
    "persistence",
    "personas",
    "query",
    "IndexSummary",
    "QueryResult",
    "QueryStatus",
    "RAGManager",
]
