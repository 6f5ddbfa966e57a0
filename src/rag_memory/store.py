"""
Vector store wrapper around ChromaDB for chunk records.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import chromadb

from .errors import BackendError


@dataclass
class ChunkRecord:
    """One embedded chunk as stored in the collection."""

    chunk_id: str
    document_id: str
    chunk_index: int
    total_chunks: int
    content: str
    score: float | None = None

    def metadata(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
        }


def _record(chunk_id: str, content: str, meta: dict | None, score: float | None = None) -> ChunkRecord:
    meta = meta or {}
    return ChunkRecord(
        chunk_id=chunk_id,
        document_id=str(meta.get("document_id", "")),
        chunk_index=int(meta.get("chunk_index", 0)),
        total_chunks=int(meta.get("total_chunks", 1)),
        content=content or "",
        score=score,
    )


class VectorStore:
    """
    Persistent chunk store backed by ChromaDB.

    Embeddings are computed by the caller and passed in explicitly, so the
    collection is created without an embedding function.  The collection
    uses cosine distance, and query scores are reported as similarities:
        similarity = 1 - distance
        distance ∈ [0, 2]  →  similarity ∈ [-1, 1]
    """

    def __init__(
        self,
        path: str = "./chroma",
        collection_name: str = "rag_memory",
        _client: chromadb.ClientAPI | None = None,
    ) -> None:
        self.client = _client or chromadb.PersistentClient(path=path)
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def add_chunks(
        self,
        records: Sequence[ChunkRecord],
        embeddings: Sequence[Sequence[float]],
    ) -> None:
        """Insert a batch of chunk records with their embeddings."""
        if not records:
            return
        if len(records) != len(embeddings):
            raise BackendError(
                f"Got {len(embeddings)} embeddings for {len(records)} chunks"
            )
        try:
            self.collection.add(
                ids=[r.chunk_id for r in records],
                embeddings=[list(e) for e in embeddings],
                documents=[r.content for r in records],
                metadatas=[r.metadata() for r in records],
            )
        except Exception as exc:
            raise BackendError(f"Vector index insert failed: {exc}") from exc

    def delete(self, chunk_ids: Iterable[str]) -> None:
        """Delete chunk records by ID."""
        ids = list(chunk_ids)
        if not ids:
            return
        try:
            self.collection.delete(ids=ids)
        except Exception as exc:
            raise BackendError(f"Vector index delete failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def query(self, embedding: Sequence[float], n_results: int = 5) -> list[ChunkRecord]:
        """Return up to *n_results* nearest chunks, most similar first."""
        n = min(n_results, self.count())
        if n <= 0:
            return []
        try:
            result = self.collection.query(
                query_embeddings=[list(embedding)],
                n_results=n,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise BackendError(f"Vector index query failed: {exc}") from exc

        ids = result["ids"][0]
        docs = (result.get("documents") or [[]])[0]
        metas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        return [
            _record(ids[i], docs[i], metas[i], score=1.0 - distances[i])
            for i in range(len(ids))
        ]

    def get_by_document(
        self,
        document_id: str,
        chunk_indices: Iterable[int] | None = None,
    ) -> list[ChunkRecord]:
        """
        Fetch a document's chunks by metadata (no vector search).

        When *chunk_indices* is given only those positions are returned.
        Results are sorted by ``chunk_index``.
        """
        where: dict[str, Any] = {"document_id": document_id}
        if chunk_indices is not None:
            wanted = sorted(set(chunk_indices))
            if not wanted:
                return []
            where = {"$and": [where, {"chunk_index": {"$in": wanted}}]}
        try:
            result = self.collection.get(where=where, include=["documents", "metadatas"])
        except Exception as exc:
            raise BackendError(f"Vector index lookup failed: {exc}") from exc

        ids = result.get("ids") or []
        docs = result.get("documents") or [""] * len(ids)
        metas = result.get("metadatas") or [{}] * len(ids)
        records = [_record(ids[i], docs[i], metas[i]) for i in range(len(ids))]
        records.sort(key=lambda r: r.chunk_index)
        return records

    def document_ids(self) -> dict[str, list[str]]:
        """Map every referenced document id to the ids of its chunks."""
        try:
            result = self.collection.get(include=["metadatas"])
        except Exception as exc:
            raise BackendError(f"Vector index scan failed: {exc}") from exc

        owners: dict[str, list[str]] = {}
        ids = result.get("ids") or []
        metas = result.get("metadatas") or [{}] * len(ids)
        for chunk_id, meta in zip(ids, metas):
            owner = str((meta or {}).get("document_id", ""))
            owners.setdefault(owner, []).append(chunk_id)
        return owners

    def count(self) -> int:
        """Return the total number of stored chunks."""
        return self.collection.count()
