"""
Exception hierarchy for rag-memory.

Every error raised by the core derives from :class:`RagMemoryError` so that
outer surfaces (CLI, MCP server) can report failures uniformly.
"""

from __future__ import annotations


class RagMemoryError(Exception):
    """Base class for all rag-memory errors."""


class InputError(RagMemoryError):
    """A required argument is missing or malformed.  Raised before any work."""


class NotFoundError(RagMemoryError):
    """A single-target operation referenced an unknown document id."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class BackendError(RagMemoryError):
    """The embedding/generation backend or the vector index failed."""


class BackendUnavailable(BackendError):
    """The backend could not be reached (connection refused, timeout...)."""


class PersistenceError(RagMemoryError):
    """The registry file could not be read or written."""
