"""
Runtime configuration resolved from environment variables.

    RAG_MEMORY_DATA_DIR            - registry + ChromaDB location (default: ~/.cache/rag-memory)
    RAG_MEMORY_COLLECTION          - ChromaDB collection name (default: rag_memory)
    RAG_MEMORY_EMBED_PROVIDER      - "ollama" or "local" (default: ollama)
    OLLAMA_BASE_URL                - Ollama server (default: http://localhost:11434)
    OLLAMA_EMBEDDING_MODEL         - embedding model (default: nomic-embed-text)
    OLLAMA_GENERATION_MODEL        - chat model used for HyDE/research (default: llama3.2)
    RAG_MEMORY_LOCAL_MODEL         - sentence-transformers model (default: all-MiniLM-L6-v2)
    RAG_MEMORY_TIMEOUT             - backend request timeout in seconds (default: 30)
    RAG_MEMORY_CHUNK_SIZE          - characters per chunk (default: 1600)
    RAG_MEMORY_CHUNK_OVERLAP       - characters shared by neighbouring chunks (default: 200)
    RAG_MEMORY_RECONCILE_ON_START  - repair index/registry drift at start-up (default: false)
    RAG_MEMORY_LOG_LEVEL           - logging level (default: INFO)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .chunking import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE
from .errors import InputError

PROVIDERS = ("ollama", "local")

_DEFAULT_DATA_DIR = str(Path.home() / ".cache" / "rag-memory")
_TRUE = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    data_dir: Path = field(default_factory=lambda: Path(_DEFAULT_DATA_DIR))
    collection: str = "rag_memory"
    embed_provider: str = "ollama"
    ollama_base_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    generation_model: str = "llama3.2"
    local_model: str = "all-MiniLM-L6-v2"
    timeout: float = 30.0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    reconcile_on_start: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        validate_chunking(self.chunk_size, self.chunk_overlap)
        if self.embed_provider not in PROVIDERS:
            raise InputError(
                f"Unknown embedding provider {self.embed_provider!r}; "
                f"expected one of {', '.join(PROVIDERS)}"
            )

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "registry.json"

    @property
    def chroma_path(self) -> Path:
        return self.data_dir / "chroma"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            data_dir=Path(env.get("RAG_MEMORY_DATA_DIR", _DEFAULT_DATA_DIR)),
            collection=env.get("RAG_MEMORY_COLLECTION", "rag_memory"),
            embed_provider=env.get("RAG_MEMORY_EMBED_PROVIDER", "ollama").lower(),
            ollama_base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434"),
            embedding_model=env.get("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text"),
            generation_model=env.get("OLLAMA_GENERATION_MODEL", "llama3.2"),
            local_model=env.get("RAG_MEMORY_LOCAL_MODEL", "all-MiniLM-L6-v2"),
            timeout=_number(env, "RAG_MEMORY_TIMEOUT", 30.0, float),
            chunk_size=_number(env, "RAG_MEMORY_CHUNK_SIZE", DEFAULT_CHUNK_SIZE, int),
            chunk_overlap=_number(env, "RAG_MEMORY_CHUNK_OVERLAP", DEFAULT_CHUNK_OVERLAP, int),
            reconcile_on_start=env.get("RAG_MEMORY_RECONCILE_ON_START", "").lower() in _TRUE,
            log_level=env.get("RAG_MEMORY_LOG_LEVEL", "INFO").upper(),
        )


def validate_chunking(size: int, overlap: int) -> None:
    """Reject chunk parameters the chunker cannot work with."""
    if size <= 0:
        raise InputError(f"Chunk size must be positive, got {size}")
    if overlap < 0:
        raise InputError(f"Chunk overlap must not be negative, got {overlap}")
    if overlap >= size:
        raise InputError(
            f"Chunk overlap ({overlap}) must be smaller than chunk size ({size})"
        )


def _number(env: Mapping[str, str], key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise InputError(f"{key} must be a number, got {raw!r}") from exc
