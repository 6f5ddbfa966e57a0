"""
Document registry: the durable mapping from document id to document metadata.

The vector store only knows about chunks.  Everything that describes a
document as a whole (type, tags, preview, chunk count, timestamps) lives here
and is persisted as a single JSON snapshot that is rewritten after every
mutation.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import PersistenceError

logger = logging.getLogger(__name__)

#: Bumped whenever the on-disk layout changes.
SNAPSHOT_VERSION = 1

MEMORY = "memory"
DOCUMENT = "document"
DOCUMENT_TYPES = (MEMORY, DOCUMENT)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Document:
    """Metadata for one stored document.

    Attributes:
        id: Unique identifier, generated at creation.
        type: ``"memory"`` for short notes, ``"document"`` for chunked sources.
        preview: First characters of the full text, computed once.
        tags: Sorted, de-duplicated labels.
        chunk_count: Number of chunk records stored for this document.
        created_at: ISO-8601 creation timestamp.
        updated_at: ISO-8601 timestamp of the last content update, if any.
        source: Originating file path for file-backed ingestion.
    """

    id: str
    type: str
    preview: str
    tags: list[str] = field(default_factory=list)
    chunk_count: int = 1
    created_at: str = field(default_factory=utc_now)
    updated_at: str | None = None
    source: str | None = None

    def has_any_tag(self, tags: Iterable[str]) -> bool:
        return not set(self.tags).isdisjoint(tags)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Document":
        return cls(
            id=data["id"],
            type=data.get("type", MEMORY),
            preview=data.get("preview", ""),
            tags=list(data.get("tags") or []),
            chunk_count=int(data.get("chunk_count", 1)),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at"),
            source=data.get("source"),
        )


class DocumentRegistry:
    """
    In-memory mapping id → :class:`Document` with whole-file persistence.

    Every mutation is immediately followed by a full rewrite of the snapshot
    file.  The registry is not safe for concurrent mutation on its own;
    callers mutate it only while holding the exclusive access guard.

    Parameters
    ----------
    path:
        Location of the JSON snapshot.  ``None`` keeps the registry purely in
        memory (used by tests).
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._documents: dict[str, Document] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read the snapshot from disk.  A missing file means an empty registry."""
        self._documents = {}
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            entries = raw.get("documents", {})
            self._documents = {
                doc_id: Document.from_dict(entry) for doc_id, entry in entries.items()
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise PersistenceError(f"Cannot read registry {self.path}: {exc}") from exc
        logger.debug("Loaded %d documents from %s", len(self._documents), self.path)

    def save(self) -> None:
        """Rewrite the whole snapshot (write to a temp file, then replace)."""
        if self.path is None:
            return
        payload = {
            "version": SNAPSHOT_VERSION,
            "documents": {doc_id: doc.to_dict() for doc_id, doc in self._documents.items()},
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceError(f"Cannot write registry {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @contextmanager
    def _committing(self) -> Iterator[None]:
        """Persist after the block; on a failed write, undo the in-memory change."""
        backup = dict(self._documents)
        try:
            yield
            self.save()
        except PersistenceError:
            self._documents = backup
            raise

    def put(self, document: Document) -> None:
        with self._committing():
            self._documents[document.id] = document

    def replace(self, old_id: str, document: Document) -> None:
        """Swap *old_id* for *document* in a single write."""
        with self._committing():
            self._documents.pop(old_id, None)
            self._documents[document.id] = document

    def remove(self, document_id: str) -> Document | None:
        if document_id not in self._documents:
            return None
        with self._committing():
            removed = self._documents.pop(document_id)
        return removed

    def remove_many(self, document_ids: Iterable[str]) -> list[Document]:
        """Remove several documents and persist once if anything changed."""
        wanted = [doc_id for doc_id in dict.fromkeys(document_ids) if doc_id in self._documents]
        if not wanted:
            return []
        with self._committing():
            removed = [self._documents.pop(doc_id) for doc_id in wanted]
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    def all(self) -> list[Document]:
        return list(self._documents.values())

    def list(
        self,
        tags: Iterable[str] | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Document], int]:
        """
        Return one page of documents, most recent first.

        When *tags* is non-empty only documents sharing at least one tag are
        considered.  Returns ``(page, total)`` where *total* counts every
        matching document before pagination.
        """
        docs = self.all()
        wanted = set(tags or ())
        if wanted:
            docs = [d for d in docs if d.has_any_tag(wanted)]
        docs.sort(key=lambda d: d.created_at, reverse=True)
        return docs[offset : offset + limit], len(docs)

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._documents

    def __len__(self) -> int:
        return len(self._documents)
