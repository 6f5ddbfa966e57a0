"""
MemoryManager: high-level API for storing and retrieving chunked documents.

This is the main entry-point for applications (and for the MCP server and
CLI) that want a local retrieval-augmented memory.

Usage example::

    from rag_memory import MemoryManager, Settings

    memory = MemoryManager(Settings(data_dir="./my_memory"))
    await memory.init()

    # Store a short note, or a long text that gets chunked
    await memory.remember("The user prefers tabs over spaces.", tags="style")
    await memory.ingest(filename="/path/to/handbook.md", tags=["docs"])

    # Later, retrieve relevant context
    for hit in await memory.recall("indentation preferences"):
        print(hit["score"], hit["content"])

    await memory.close()
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from .backends import Backend, create_backend
from .chunking import (
    assemble_chunks,
    chunk_text,
    generate_id,
    make_preview,
    parse_tags,
)
from .config import Settings, validate_chunking
from .errors import (
    BackendError,
    InputError,
    NotFoundError,
    PersistenceError,
    RagMemoryError,
)
from .guard import ExclusiveGuard
from .registry import DOCUMENT, DOCUMENT_TYPES, MEMORY, Document, DocumentRegistry, utc_now
from .store import ChunkRecord, VectorStore

logger = logging.getLogger(__name__)

#: Nearest-neighbour over-fetch factor compensating for later filtering.
OVERFETCH_FACTOR: int = 3

DEFAULT_RECALL_LIMIT: int = 5
DEFAULT_THRESHOLD: float = 0.3

NO_RESULTS_MESSAGE = "No relevant information found in the knowledge base."

HYDE_PROMPT = (
    "Write a short, direct answer to the user's question as if it were an "
    "excerpt from a reference document. State facts only. No explanations, "
    "no introductions, no meta-commentary, no questions back. Answer in the "
    "language of the question."
)

RESEARCH_PROMPT = """You are a technical assistant specialised in analysing and synthesising documentation. Analyse the provided context and produce a precise, technical and objective summary.

STRICT RULES:
- Analyse ONLY the provided content
- Do NOT add personal observations
- Do NOT open with phrases like "Sure, here is the summary" or "Based on the context"
- Produce the final answer directly
- Be technical and precise
- Preserve important details (code, examples, lists)
- Keep tables and structures intact
- Answer in the language of the context"""

RESEARCH_REMINDER = (
    "Produce the complete analysis now. Direct answer, no meta-commentary, "
    "no greetings, no introductions."
)


class MemoryManager:
    """
    Chunked-document memory backed by a ChromaDB index and a JSON registry.

    Responsibilities
    ----------------
    * **Ingest** – Splits long text into overlapping chunks, embeds them in
      one batch and stores chunk records plus one registry entry per
      document.  Short notes (``remember``) skip chunking.
    * **Recall** – Embeds the query (optionally via a hypothetical answer),
      over-fetches nearest chunks, groups them per document, pulls in the
      neighbouring chunks and reassembles a continuous snippet per document.
    * **Manage** – Cascading deletes, listing, JSONL export/import, content
      replacement and index/registry reconciliation.

    Every operation that touches the index + registry pair runs inside an
    :class:`ExclusiveGuard`; embedding and file reads happen outside it.

    Parameters
    ----------
    settings:
        Runtime configuration.  Defaults to :class:`Settings` defaults.
    _store, _registry, _backend:
        Injected collaborators (tests).  Built from *settings* when omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        _store: VectorStore | None = None,
        _registry: DocumentRegistry | None = None,
        _backend: Backend | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._store = _store or VectorStore(
            path=str(self.settings.chroma_path),
            collection_name=self.settings.collection,
        )
        self._registry = _registry if _registry is not None else DocumentRegistry(
            self.settings.registry_path
        )
        self._backend = _backend or create_backend(self.settings)
        self._guard = ExclusiveGuard()
        self._ready = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Load the registry snapshot; optionally reconcile it with the index."""
        self._registry.load()
        self._ready = True
        logger.info(
            "Memory ready: %d documents, %d chunks",
            len(self._registry),
            self._store.count(),
        )
        if self.settings.reconcile_on_start:
            await self.reconcile()

    async def close(self) -> None:
        await self._backend.close()
        self._ready = False

    async def ping(self) -> None:
        """Raise :class:`BackendError` if the embedding backend is unreachable."""
        await self._backend.ping()

    def _require_ready(self) -> None:
        if not self._ready:
            raise RagMemoryError("MemoryManager.init() must be awaited before use")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def remember(
        self,
        content: str,
        tags: str | list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Store a short note as a single chunk, without chunking.

        Returns
        -------
        dict
            ``{"document_id", "chunk_id"}``
        """
        self._require_ready()
        if not content or not content.strip():
            raise InputError("content must not be empty")
        tag_list = parse_tags(tags)
        [vector] = await self._embed([content])

        async def _store() -> dict[str, Any]:
            document_id = generate_id()
            record = ChunkRecord(
                chunk_id=generate_id(),
                document_id=document_id,
                chunk_index=0,
                total_chunks=1,
                content=content,
            )
            self._store.add_chunks([record], [vector])
            self._commit(
                Document(
                    id=document_id,
                    type=MEMORY,
                    preview=make_preview(content),
                    tags=tag_list,
                    chunk_count=1,
                ),
                [record.chunk_id],
            )
            return {"document_id": document_id, "chunk_id": record.chunk_id}

        result = await self._guard.run(_store)
        logger.info("Remembered %s", result["document_id"])
        return result

    async def ingest(
        self,
        content: str | None = None,
        filename: str | None = None,
        tags: str | list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Chunk, embed and store a long text given inline or as a file path.

        Exactly one of *content* / *filename* must be supplied.

        Returns
        -------
        dict
            ``{"document_id", "chunk_count", "preview"}``
        """
        self._require_ready()
        text, source = await self._read_source(content, filename)
        tag_list = parse_tags(tags)
        size, overlap = self.settings.chunk_size, self.settings.chunk_overlap
        validate_chunking(size, overlap)

        chunks = chunk_text(text, size, overlap)
        vectors = await self._embed(chunks)

        async def _store() -> dict[str, Any]:
            document_id = generate_id()
            records = [
                ChunkRecord(
                    chunk_id=generate_id(),
                    document_id=document_id,
                    chunk_index=i,
                    total_chunks=len(chunks),
                    content=chunk,
                )
                for i, chunk in enumerate(chunks)
            ]
            self._store.add_chunks(records, vectors)
            document = Document(
                id=document_id,
                type=DOCUMENT,
                preview=make_preview(text),
                tags=tag_list,
                chunk_count=len(records),
                source=source,
            )
            self._commit(document, [r.chunk_id for r in records])
            return {
                "document_id": document_id,
                "chunk_count": document.chunk_count,
                "preview": document.preview,
            }

        result = await self._guard.run(_store)
        logger.info(
            "Ingested %s (%d chunks%s)",
            result["document_id"],
            result["chunk_count"],
            f" from {source}" if source else "",
        )
        return result

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    async def recall(
        self,
        query: str,
        limit: int = DEFAULT_RECALL_LIMIT,
        threshold: float = DEFAULT_THRESHOLD,
        tags: str | list[str] | None = None,
        hyde: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Retrieve the most relevant documents for *query*.

        Parameters
        ----------
        query:
            Natural-language question or statement to search against.
        limit:
            Maximum number of documents to return.
        threshold:
            Chunks whose cosine similarity is below this value are ignored.
        tags:
            Only documents sharing at least one of these tags are returned.
        hyde:
            Embed a generated hypothetical answer instead of the query.

        Returns
        -------
        list[dict]
            Best first.  Each dict has keys ``id``, ``content``, ``score``,
            ``type``, ``tags``, ``chunks`` and, for file-backed documents,
            ``source``.  ``content`` is the reassembly of the matched chunks
            and their immediate neighbours.
        """
        self._require_ready()
        if not query or not query.strip():
            raise InputError("query must not be empty")
        if limit < 1:
            raise InputError(f"limit must be at least 1, got {limit}")

        search_text = await self._hypothetical_answer(query) if hyde else query
        [vector] = await self._embed([search_text])
        tag_filter = set(parse_tags(tags))
        return await self._guard.run(self._search, vector, limit, threshold, tag_filter)

    async def _search(
        self,
        vector: list[float],
        limit: int,
        threshold: float,
        tag_filter: set[str],
    ) -> list[dict[str, Any]]:
        hits = self._store.query(vector, n_results=limit * OVERFETCH_FACTOR)

        groups: dict[str, dict[str, Any]] = {}
        for hit in hits:
            if hit.score is None or hit.score < threshold:
                continue
            document = self._registry.get(hit.document_id)
            if document is None:
                logger.debug("Skipping chunk %s of unknown document %s", hit.chunk_id, hit.document_id)
                continue
            if tag_filter and not document.has_any_tag(tag_filter):
                continue
            group = groups.setdefault(
                hit.document_id,
                {"document": document, "score": hit.score, "indices": set(), "total": hit.total_chunks},
            )
            group["score"] = max(group["score"], hit.score)
            group["indices"].add(hit.chunk_index)

        ranked = sorted(groups.values(), key=lambda g: g["score"], reverse=True)[:limit]
        logger.debug("Recall: %d hits, %d documents kept", len(hits), len(ranked))

        results: list[dict[str, Any]] = []
        for group in ranked:
            document = group["document"]
            needed = _with_neighbours(group["indices"], group["total"])
            chunks = self._store.get_by_document(document.id, needed)
            results.append(
                _describe(
                    document,
                    content=assemble_chunks([c.content for c in chunks], self.settings.chunk_overlap),
                    score=group["score"],
                    chunks=[c.chunk_index for c in chunks],
                )
            )
        return results

    async def _hypothetical_answer(self, query: str) -> str:
        answer = await self._backend.generate(
            [
                {"role": "system", "content": HYDE_PROMPT},
                {"role": "user", "content": query},
            ]
        )
        logger.debug("HyDE expansion: %r -> %r", query, answer[:80])
        return answer.strip() or query

    async def research(
        self,
        query: str,
        limit: int = DEFAULT_RECALL_LIMIT,
        threshold: float = DEFAULT_THRESHOLD,
        tags: str | list[str] | None = None,
    ) -> str:
        """Recall, then have the generation model synthesise the results."""
        results = await self.recall(query, limit=limit, threshold=threshold, tags=tags)
        if not results:
            return NO_RESULTS_MESSAGE

        context = "\n\n".join(
            f"--- Document {i} (relevance: {r['score'] * 100:.1f}%) ---\n{r['content']}"
            for i, r in enumerate(results, 1)
        )
        return await self._backend.generate(
            [
                {"role": "system", "content": RESEARCH_PROMPT},
                {"role": "user", "content": context},
                {"role": "system", "content": RESEARCH_REMINDER},
            ]
        )

    # ------------------------------------------------------------------
    # Deletion & replacement
    # ------------------------------------------------------------------

    async def forget(self, ids: str | list[str]) -> dict[str, Any]:
        """
        Delete documents and all of their chunks.

        Unknown ids are reported in ``not_found`` instead of raising.

        Returns
        -------
        dict
            ``{"deleted": [...], "not_found": [...], "chunks_removed": int}``
        """
        self._require_ready()
        requested = [ids] if isinstance(ids, str) else list(ids)
        requested = list(dict.fromkeys(requested))

        async def _delete() -> dict[str, Any]:
            deleted: list[str] = []
            not_found: list[str] = []
            chunk_ids: list[str] = []
            for document_id in requested:
                if document_id not in self._registry:
                    not_found.append(document_id)
                    continue
                chunk_ids.extend(c.chunk_id for c in self._store.get_by_document(document_id))
                deleted.append(document_id)
            # Registry first; chunks left behind by a failed delete are orphans.
            self._registry.remove_many(deleted)
            self._store.delete(chunk_ids)
            return {
                "deleted": deleted,
                "not_found": not_found,
                "chunks_removed": len(chunk_ids),
            }

        result = await self._guard.run(_delete)
        if result["deleted"]:
            logger.info(
                "Forgot %d document(s), %d chunk(s)",
                len(result["deleted"]),
                result["chunks_removed"],
            )
        return result

    async def update(self, document_id: str, content: str) -> dict[str, Any]:
        """
        Replace a document's content.

        The new content is stored under a new document id; type, tags, source
        and ``created_at`` carry over and ``updated_at`` is set.

        Returns
        -------
        dict
            ``{"document_id", "previous_id", "chunk_count"}``
        """
        self._require_ready()
        if not content or not content.strip():
            raise InputError("content must not be empty")
        existing = self._registry.get(document_id)
        if existing is None:
            raise NotFoundError(document_id)

        if existing.type == MEMORY:
            chunks = [content]
        else:
            chunks = chunk_text(content, self.settings.chunk_size, self.settings.chunk_overlap)
        vectors = await self._embed(chunks)

        async def _replace() -> dict[str, Any]:
            current = self._registry.get(document_id)
            if current is None:
                raise NotFoundError(document_id)
            old_chunks = self._store.get_by_document(document_id)

            new_id = generate_id()
            records = [
                ChunkRecord(
                    chunk_id=generate_id(),
                    document_id=new_id,
                    chunk_index=i,
                    total_chunks=len(chunks),
                    content=chunk,
                )
                for i, chunk in enumerate(chunks)
            ]
            self._store.add_chunks(records, vectors)
            replacement = Document(
                id=new_id,
                type=current.type,
                preview=make_preview(content),
                tags=list(current.tags),
                chunk_count=len(records),
                created_at=current.created_at,
                updated_at=utc_now(),
                source=current.source,
            )
            try:
                self._registry.replace(document_id, replacement)
            except PersistenceError:
                self._store.delete(r.chunk_id for r in records)
                raise
            self._store.delete(c.chunk_id for c in old_chunks)
            return {
                "document_id": new_id,
                "previous_id": document_id,
                "chunk_count": len(records),
            }

        result = await self._guard.run(_replace)
        logger.info("Updated %s -> %s", document_id, result["document_id"])
        return result

    # ------------------------------------------------------------------
    # Listing & stats
    # ------------------------------------------------------------------

    def list_documents(
        self,
        offset: int = 0,
        limit: int = 10,
        tags: str | list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Return one page of registry entries, most recent first.

        Returns
        -------
        dict
            ``{"documents": [...], "count", "total", "offset", "limit"}``
        """
        self._require_ready()
        _check_page(offset, limit)
        page, total = self._registry.list(tags=parse_tags(tags), offset=offset, limit=limit)
        return {
            "documents": [doc.to_dict() for doc in page],
            "count": len(page),
            "total": total,
            "offset": offset,
            "limit": limit,
        }

    def count(self) -> int:
        """Return the number of stored documents."""
        return len(self._registry)

    def stats(self) -> dict[str, int]:
        self._require_ready()
        documents = self._registry.all()
        return {
            "documents": len(documents),
            "memories": sum(1 for d in documents if d.type == MEMORY),
            "chunks": self._store.count(),
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def download(
        self,
        offset: int = 0,
        limit: int = 50,
        tags: str | list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Export one page of documents as JSON lines.

        Each line is ``{"type", "content", "tags"}`` plus ``"source"`` for
        file-backed documents; ``content`` is the reassembled full text.
        """
        self._require_ready()
        _check_page(offset, limit)
        tag_filter = parse_tags(tags)

        async def _export() -> dict[str, Any]:
            page, total = self._registry.list(tags=tag_filter, offset=offset, limit=limit)
            lines = []
            for document in page:
                chunks = self._store.get_by_document(document.id)
                entry: dict[str, Any] = {
                    "type": document.type,
                    "content": assemble_chunks([c.content for c in chunks], self.settings.chunk_overlap),
                    "tags": list(document.tags),
                }
                if document.source:
                    entry["source"] = document.source
                lines.append(json.dumps(entry, ensure_ascii=False))
            return {
                "jsonl": "\n".join(lines) + ("\n" if lines else ""),
                "count": len(lines),
                "total": total,
                "offset": offset,
                "limit": limit,
            }

        return await self._guard.run(_export)

    async def upload(self, jsonl: str) -> dict[str, Any]:
        """
        Import JSON lines produced by :meth:`download`.

        Every line is re-embedded through :meth:`remember` or :meth:`ingest`
        according to its ``type``; original ids are not restored.  A bad line
        is recorded in ``errors`` with its 1-based line number and the import
        carries on.

        Returns
        -------
        dict
            ``{"imported": int, "failed": int, "errors": [{"line", "error"}]}``
        """
        self._require_ready()
        imported = 0
        errors: list[dict[str, Any]] = []

        for line_no, line in enumerate(jsonl.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                item = json.loads(line)
                if not isinstance(item, dict):
                    raise InputError("Line is not a JSON object")
                kind = item.get("type", MEMORY)
                content = item.get("content")
                tags = item.get("tags")
                if kind not in DOCUMENT_TYPES:
                    raise InputError(f"Unknown type {kind!r}")
                if not isinstance(content, str) or not content.strip():
                    raise InputError("Missing or invalid content field")
                if tags is not None and not isinstance(tags, (str, list)):
                    raise InputError("tags must be a string or a list of strings")

                if kind == MEMORY:
                    await self.remember(content, tags=tags)
                else:
                    await self.ingest(content=content, tags=tags)
                imported += 1
            except (ValueError, RagMemoryError) as exc:
                errors.append({"line": line_no, "error": str(exc)})

        if errors:
            logger.warning("Upload finished with %d failed line(s)", len(errors))
        return {"imported": imported, "failed": len(errors), "errors": errors}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reconcile(self) -> dict[str, int]:
        """
        Repair drift between the index and the registry.

        Deletes chunk records whose document is not registered and drops
        registry entries that have no chunks left.
        """
        self._require_ready()

        async def _repair() -> dict[str, int]:
            owners = self._store.document_ids()
            orphans = [
                chunk_id
                for document_id, chunk_ids in owners.items()
                if document_id not in self._registry
                for chunk_id in chunk_ids
            ]
            self._store.delete(orphans)
            empty = [d.id for d in self._registry.all() if d.id not in owners]
            self._registry.remove_many(empty)
            return {
                "orphan_chunks_removed": len(orphans),
                "empty_documents_removed": len(empty),
            }

        result = await self._guard.run(_repair)
        if any(result.values()):
            logger.warning(
                "Reconciled index: removed %d orphan chunk(s), %d empty document(s)",
                result["orphan_chunks_removed"],
                result["empty_documents_removed"],
            )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        vectors = await self._backend.embed(texts)
        if len(vectors) != len(texts):
            raise BackendError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors

    def _commit(self, document: Document, chunk_ids: list[str]) -> None:
        """Register *document*; drop its freshly inserted chunks if that fails."""
        try:
            self._registry.put(document)
        except PersistenceError:
            self._store.delete(chunk_ids)
            raise

    async def _read_source(
        self,
        content: str | None,
        filename: str | None,
    ) -> tuple[str, str | None]:
        if content is not None and filename:
            raise InputError("Provide either content or filename, not both")
        if content is None and not filename:
            raise InputError("Either content or filename is required")

        source = None
        if filename:
            path = Path(filename).expanduser().resolve()
            try:
                content = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise InputError(f"Cannot read file {path}: {exc}") from exc
            source = str(path)

        if not content or not content.strip():
            raise InputError("content must not be empty")
        return content, source


def _with_neighbours(indices: set[int], total: int) -> set[int]:
    """Each index plus its predecessor and successor, within ``[0, total)``."""
    needed: set[int] = set()
    for i in indices:
        for j in (i - 1, i, i + 1):
            if 0 <= j < total:
                needed.add(j)
    return needed


def _describe(document: Document, content: str, score: float, chunks: list[int]) -> dict[str, Any]:
    result: dict[str, Any] = {
        "id": document.id,
        "content": content,
        "score": score,
        "type": document.type,
        "tags": list(document.tags),
        "chunks": chunks,
    }
    if document.source:
        result["source"] = document.source
    return result


def _check_page(offset: int, limit: int) -> None:
    if offset < 0:
        raise InputError(f"offset must not be negative, got {offset}")
    if limit < 1:
        raise InputError(f"limit must be at least 1, got {limit}")
