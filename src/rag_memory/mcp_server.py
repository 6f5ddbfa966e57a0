"""
MCP (Model Context Protocol) server for rag-memory.

Exposes the MemoryManager as a set of tools so that an assistant can store
notes and documents and recall them semantically across sessions.

Run as a stdio server:
    python -m rag_memory.mcp_server

Or via the installed entry-point:
    rag-memory-mcp

Configuration is read from environment variables, see :mod:`rag_memory.config`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import Settings
from .errors import BackendError
from .logging_config import configure_logging
from .memory import DEFAULT_RECALL_LIMIT, DEFAULT_THRESHOLD, MemoryManager

logger = logging.getLogger(__name__)

# Lazily initialised singleton so the index and registry are opened once.
_manager: MemoryManager | None = None
_manager_lock = asyncio.Lock()


async def _get_manager() -> MemoryManager:
    global _manager
    async with _manager_lock:
        if _manager is None:
            manager = MemoryManager(Settings.from_env())
            await manager.init()
            _manager = manager
    return _manager


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _manager
    manager = await _get_manager()
    try:
        await manager.ping()
    except BackendError as exc:
        logger.warning("Embedding backend not available yet: %s", exc)
    else:
        logger.info("Embedding backend reachable")
    try:
        yield
    finally:
        await manager.close()
        _manager = None


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "rag-memory",
    lifespan=_lifespan,
    instructions=(
        "Local semantic memory with document chunking. "
        "Use `remember` for short facts, preferences and decisions. "
        "Use `ingest` for long texts or files; they are split into chunks. "
        "Use `recall` to find relevant stored content (set `hyde` for "
        "question-style queries). "
        "Use `research` to get a synthesis of what the memory knows about a topic. "
        "Use `list`, `forget` and `update` to manage entries, and "
        "`download` / `upload` to export or import JSON lines."
    ),
)


@mcp.tool()
async def remember(content: str, tags: str | list[str] | None = None) -> str:
    """
    Store a short piece of knowledge (a fact, preference or decision).

    Args:
        content: Text to store in semantic memory.
        tags:    Tags for categorisation, as a list or a comma/space separated string.

    Returns:
        JSON with the new document_id and chunk_id.
    """
    manager = await _get_manager()
    return _dump(await manager.remember(content, tags=tags))


@mcp.tool()
async def ingest(
    content: str | None = None,
    filename: str | None = None,
    tags: str | list[str] | None = None,
) -> str:
    """
    Store a long text, split into overlapping chunks.

    Args:
        content:  Long text to process.  Mutually exclusive with filename.
        filename: Absolute path of a text file to ingest.
        tags:     Tags for categorisation.

    Returns:
        JSON with document_id, chunk_count and preview.
    """
    manager = await _get_manager()
    return _dump(await manager.ingest(content=content, filename=filename, tags=tags))


@mcp.tool()
async def recall(
    query: str,
    limit: int = DEFAULT_RECALL_LIMIT,
    threshold: float = DEFAULT_THRESHOLD,
    tags: str | list[str] | None = None,
    hyde: bool = False,
) -> str:
    """
    Semantic search over stored memories and documents.

    Args:
        query:     Semantic search query.
        limit:     Max results to return (1-20, default 5).
        threshold: Minimum relevance score (0-1, default 0.3).
        tags:      Only return entries sharing at least one of these tags.
        hyde:      Embed a hypothetical answer instead of the query; helps
                   with question-style queries.

    Returns:
        JSON array of results, best first, each with id, content, score,
        type, tags and chunks.
    """
    manager = await _get_manager()
    results = await manager.recall(query, limit=limit, threshold=threshold, tags=tags, hyde=hyde)
    if not results:
        return "No memories found."
    for r in results:
        r["score"] = round(r["score"], 4)
    return _dump(results)


@mcp.tool()
async def research(
    query: str,
    limit: int = DEFAULT_RECALL_LIMIT,
    threshold: float = DEFAULT_THRESHOLD,
    tags: str | list[str] | None = None,
) -> str:
    """
    Recall relevant entries and return a synthesis written by the local LLM.

    Args:
        query:     What to research.
        limit:     Max entries to feed to the model (default 5).
        threshold: Minimum relevance score (default 0.3).
        tags:      Restrict to entries sharing at least one of these tags.

    Returns:
        The synthesis text.
    """
    manager = await _get_manager()
    return await manager.research(query, limit=limit, threshold=threshold, tags=tags)


@mcp.tool(name="list")
async def list_entries(
    offset: int = 0,
    limit: int = 10,
    tags: str | list[str] | None = None,
) -> str:
    """
    List stored entries, most recent first (no ranking applied).

    Args:
        offset: Entries to skip.
        limit:  Max entries to return (1-100, default 10).
        tags:   Filter by tags.

    Returns:
        JSON with documents, count, total, offset and limit.
    """
    manager = await _get_manager()
    return _dump(manager.list_documents(offset=offset, limit=limit, tags=tags))


@mcp.tool()
async def forget(ids: str | list[str]) -> str:
    """
    Permanently delete entries and all of their chunks.

    Args:
        ids: ID or list of IDs to delete.

    Returns:
        JSON with deleted, not_found and chunks_removed.
    """
    manager = await _get_manager()
    return _dump(await manager.forget(ids))


@mcp.tool()
async def update(id: str, content: str) -> str:  # noqa: A002
    """
    Replace the content of an entry.  Tags and creation date are kept; the
    entry gets a new ID.

    Args:
        id:      ID of the entry to replace.
        content: New text.

    Returns:
        JSON with the new document_id, previous_id and chunk_count.
    """
    manager = await _get_manager()
    return _dump(await manager.update(id, content))


@mcp.tool()
async def download(
    offset: int = 0,
    limit: int = 50,
    tags: str | list[str] | None = None,
) -> str:
    """
    Export entries as JSON lines ({type, content, tags, source?} per line).

    Args:
        offset: Entries to skip.
        limit:  Max entries per page (1-200, default 50).
        tags:   Filter by tags.

    Returns:
        JSON with jsonl, count, total, offset and limit.
    """
    manager = await _get_manager()
    return _dump(await manager.download(offset=offset, limit=limit, tags=tags))


@mcp.tool()
async def upload(jsonl: str) -> str:
    """
    Import JSON lines.  Each line: {"type": "memory"|"document", "content": str,
    "tags"?: [str]}.  Everything is re-embedded; IDs are not preserved.

    Args:
        jsonl: JSON lines content to import.

    Returns:
        JSON with imported, failed and per-line errors.
    """
    manager = await _get_manager()
    return _dump(await manager.upload(jsonl))


@mcp.tool()
async def stats() -> str:
    """
    Return the number of stored documents, memories and chunks.
    """
    manager = await _get_manager()
    return _dump(manager.stats())


@mcp.tool()
async def reconcile() -> str:
    """
    Remove index chunks without a registered document and registry entries
    without chunks.

    Returns:
        JSON with orphan_chunks_removed and empty_documents_removed.
    """
    manager = await _get_manager()
    return _dump(await manager.reconcile())


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info(
        "Starting rag-memory (data_dir=%s, provider=%s)",
        settings.data_dir,
        settings.embed_provider,
    )
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
