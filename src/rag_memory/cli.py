"""
Command-line interface for rag-memory.

Sub-commands
------------
remember  – Store a short note.
ingest    – Chunk and store a long text or a file.
recall    – Retrieve the most relevant entries for a query.
research  – Recall and summarise with the generation model.
list      – List stored entries, most recent first.
forget    – Delete entries by ID.
update    – Replace the content of an entry.
download  – Export entries as JSON lines.
upload    – Import JSON lines.
stats     – Print document and chunk counts.
reconcile – Repair drift between the index and the registry.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

from .config import Settings
from .errors import RagMemoryError
from .logging_config import configure_logging
from .memory import DEFAULT_RECALL_LIMIT, DEFAULT_THRESHOLD, MemoryManager


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rag-memory",
        description="Local retrieval-augmented memory with document chunking.",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="PATH",
        help="Directory holding the registry and the ChromaDB index "
        "(default: $RAG_MEMORY_DATA_DIR or ~/.cache/rag-memory).",
    )
    parser.add_argument(
        "--collection",
        default=None,
        metavar="NAME",
        help="ChromaDB collection name (default: $RAG_MEMORY_COLLECTION or rag_memory).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    sub = parser.add_subparsers(dest="command", required=True)

    # remember
    p_remember = sub.add_parser("remember", help="Store a short note.")
    p_remember.add_argument("text", nargs="?", help="Text to store (reads stdin if omitted).")
    p_remember.add_argument("--tags", default=None, help="Comma or space separated tags.")

    # ingest
    p_ingest = sub.add_parser("ingest", help="Chunk and store a long text or a file.")
    p_ingest.add_argument("file", nargs="?", help="File to ingest (reads stdin if omitted).")
    p_ingest.add_argument("--tags", default=None, help="Comma or space separated tags.")

    # recall / research
    for name, help_text in (
        ("recall", "Retrieve relevant entries."),
        ("research", "Recall and summarise with the generation model."),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("query", help="Natural-language query.")
        p.add_argument(
            "-n",
            type=int,
            default=DEFAULT_RECALL_LIMIT,
            metavar="N",
            help=f"Number of results to use (default: {DEFAULT_RECALL_LIMIT}).",
        )
        p.add_argument(
            "--threshold",
            type=float,
            default=DEFAULT_THRESHOLD,
            metavar="SCORE",
            help=f"Minimum similarity score (default: {DEFAULT_THRESHOLD}).",
        )
        p.add_argument("--tags", default=None, help="Only entries sharing one of these tags.")
        if name == "recall":
            p.add_argument("--hyde", action="store_true", help="Embed a hypothetical answer.")
            p.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # list
    p_list = sub.add_parser("list", help="List stored entries.")
    p_list.add_argument("--offset", type=int, default=0, metavar="N")
    p_list.add_argument("--limit", type=int, default=10, metavar="N")
    p_list.add_argument("--tags", default=None, help="Filter by tags.")
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # forget
    p_forget = sub.add_parser("forget", help="Delete entries by ID.")
    p_forget.add_argument("ids", nargs="+", help="IDs to delete.")

    # update
    p_update = sub.add_parser("update", help="Replace the content of an entry.")
    p_update.add_argument("id", help="ID of the entry to replace.")
    p_update.add_argument("text", nargs="?", help="New text (reads stdin if omitted).")

    # download
    p_download = sub.add_parser("download", help="Export entries as JSON lines.")
    p_download.add_argument("--offset", type=int, default=0, metavar="N")
    p_download.add_argument("--limit", type=int, default=50, metavar="N")
    p_download.add_argument("--tags", default=None, help="Filter by tags.")
    p_download.add_argument("-o", "--output", default=None, metavar="FILE", help="Write to FILE instead of stdout.")

    # upload
    p_upload = sub.add_parser("upload", help="Import JSON lines.")
    p_upload.add_argument("file", nargs="?", help="JSONL file (reads stdin if omitted).")

    sub.add_parser("stats", help="Print document and chunk counts.")
    sub.add_parser("reconcile", help="Repair drift between the index and the registry.")

    return parser


def _build_manager(args: argparse.Namespace) -> MemoryManager:
    settings = Settings.from_env()
    if args.data_dir:
        settings = replace(settings, data_dir=Path(args.data_dir))
    if args.collection:
        settings = replace(settings, collection=args.collection)
    return MemoryManager(settings)


def _read_text(value: str | None) -> str:
    return value if value is not None else sys.stdin.read()


async def _run(manager: MemoryManager, args: argparse.Namespace) -> int:
    await manager.init()
    try:
        return await _dispatch(manager, args)
    finally:
        await manager.close()


async def _dispatch(manager: MemoryManager, args: argparse.Namespace) -> int:
    if args.command == "remember":
        text = _read_text(args.text)
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        result = await manager.remember(text, tags=args.tags)
        print(f"Remembered {result['document_id']}")

    elif args.command == "ingest":
        if args.file:
            result = await manager.ingest(filename=args.file, tags=args.tags)
        else:
            result = await manager.ingest(content=sys.stdin.read(), tags=args.tags)
        print(f"Ingested {result['document_id']} ({result['chunk_count']} chunks)")

    elif args.command == "recall":
        results = await manager.recall(
            args.query,
            limit=args.n,
            threshold=args.threshold,
            tags=args.tags,
            hyde=args.hyde,
        )
        if not results:
            print("No memories found.")
            return 0
        if args.as_json:
            print(json.dumps(results, indent=2, ensure_ascii=False))
        else:
            for i, r in enumerate(results, 1):
                tags = ",".join(r["tags"]) or "-"
                print(f"[{i}] (score={r['score']:.3f}, type={r['type']}, tags={tags})")
                print(f"    {r['content'][:200]}")
                print(f"    id={r['id']}")
                print()

    elif args.command == "research":
        print(await manager.research(args.query, limit=args.n, threshold=args.threshold, tags=args.tags))

    elif args.command == "list":
        page = manager.list_documents(offset=args.offset, limit=args.limit, tags=args.tags)
        if args.as_json:
            print(json.dumps(page["documents"], indent=2, ensure_ascii=False))
            return 0
        if not page["documents"]:
            print("No memories stored.")
            return 0
        for d in page["documents"]:
            tags = ",".join(d["tags"]) or "-"
            print(f"id={d['id']} type={d['type']} chunks={d['chunk_count']} tags={tags} created={d['created_at']}")
            print(f"    {d['preview'][:120]}")
            print()
        print(f"{page['count']} of {page['total']} shown (offset {page['offset']})")

    elif args.command == "forget":
        result = await manager.forget(args.ids)
        for doc_id in result["deleted"]:
            print(f"Deleted {doc_id}.")
        for doc_id in result["not_found"]:
            print(f"Not found: {doc_id}", file=sys.stderr)
        print(f"{result['chunks_removed']} chunk(s) removed.")
        return 0 if result["deleted"] or not result["not_found"] else 1

    elif args.command == "update":
        text = _read_text(args.text)
        result = await manager.update(args.id, text)
        print(f"Updated {result['previous_id']} -> {result['document_id']}")

    elif args.command == "download":
        result = await manager.download(offset=args.offset, limit=args.limit, tags=args.tags)
        if args.output:
            Path(args.output).write_text(result["jsonl"], encoding="utf-8")
            print(f"Exported {result['count']} of {result['total']} entries to {args.output}")
        else:
            sys.stdout.write(result["jsonl"])

    elif args.command == "upload":
        if args.file:
            jsonl = Path(args.file).read_text(encoding="utf-8")
        else:
            jsonl = sys.stdin.read()
        result = await manager.upload(jsonl)
        print(f"Imported {result['imported']} entries, {result['failed']} failed.")
        for err in result["errors"]:
            print(f"  line {err['line']}: {err['error']}", file=sys.stderr)
        return 0 if not result["failed"] else 1

    elif args.command == "stats":
        print(json.dumps(manager.stats(), indent=2))

    elif args.command == "reconcile":
        print(json.dumps(await manager.reconcile(), indent=2))

    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "WARNING")

    try:
        manager = _build_manager(args)
        return asyncio.run(_run(manager, args))
    except (RagMemoryError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
