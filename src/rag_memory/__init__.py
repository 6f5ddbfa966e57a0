"""
rag-memory: a local retrieval-augmented memory store.

Splits long texts into overlapping chunks, embeds them through an external
model, indexes them in ChromaDB and answers semantic queries with whole,
reassembled documents.
"""

from .chunking import assemble_chunks, chunk_text, parse_tags
from .config import Settings
from .errors import (
    BackendError,
    BackendUnavailable,
    InputError,
    NotFoundError,
    PersistenceError,
    RagMemoryError,
)
from .memory import MemoryManager
from .registry import Document, DocumentRegistry
from .store import VectorStore

__all__ = [
    "MemoryManager",
    "Settings",
    "VectorStore",
    "Document",
    "DocumentRegistry",
    "chunk_text",
    "assemble_chunks",
    "parse_tags",
    "RagMemoryError",
    "InputError",
    "NotFoundError",
    "BackendError",
    "BackendUnavailable",
    "PersistenceError",
]
