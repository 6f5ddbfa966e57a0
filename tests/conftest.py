"""
Shared pytest fixtures for rag-memory tests.

Uses ChromaDB in ephemeral (in-memory) mode and a deterministic fake
backend so that tests run fast without any model server or download.
"""

from __future__ import annotations

import math
import re
import uuid

import chromadb
import pytest
import pytest_asyncio

from rag_memory.config import Settings
from rag_memory.errors import BackendUnavailable
from rag_memory.memory import MemoryManager
from rag_memory.registry import DocumentRegistry
from rag_memory.store import VectorStore

_WORD_RE = re.compile(r"\w+")


class FakeBackend:
    """
    Deterministic bag-of-words backend.

    Every distinct lower-cased word gets its own dimension (in order of first
    sight), plus a small constant bias dimension so that no vector is zero
    and every cosine similarity is non-negative.  Texts sharing words are
    similar; texts sharing none are nearly orthogonal.
    """

    def __init__(self, dims: int = 512, answer: str = "hypothetical answer") -> None:
        self.dims = dims
        self.answer = answer
        self.fail_embed = False
        self.closed = False
        self.embed_calls: list[list[str]] = []
        self.generate_calls: list[list[dict]] = []
        self._vocab: dict[str, int] = {}

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dims
        vec[0] = 0.1
        for word in _WORD_RE.findall(text.lower()):
            idx = self._vocab.setdefault(word, len(self._vocab) % (self.dims - 1) + 1)
            vec[idx] += 1.0
        norm = math.sqrt(sum(x * x for x in vec))
        return [x / norm for x in vec]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if self.fail_embed:
            raise BackendUnavailable("fake backend is down")
        self.embed_calls.append(list(texts))
        return [self.vector(t) for t in texts]

    async def generate(self, messages: list[dict]) -> str:
        self.generate_calls.append(messages)
        return self.answer

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


# A single shared EphemeralClient instance for the test session.
# Each fixture call creates a uniquely named collection so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def make_store() -> VectorStore:
    return VectorStore(_client=_EPHEMERAL_CLIENT, collection_name=f"test_{uuid.uuid4().hex}")


@pytest.fixture()
def ephemeral_store() -> VectorStore:
    """In-memory VectorStore on a fresh, uniquely named collection."""
    return make_store()


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    """Small chunks so that multi-chunk documents stay short in tests."""
    return Settings(data_dir=tmp_path, chunk_size=300, chunk_overlap=60)


@pytest.fixture()
def registry(settings: Settings) -> DocumentRegistry:
    return DocumentRegistry(settings.registry_path)


@pytest_asyncio.fixture()
async def memory_manager(settings, ephemeral_store, registry, fake_backend) -> MemoryManager:
    """Initialised MemoryManager wired to the ephemeral store and fake backend."""
    manager = MemoryManager(
        settings,
        _store=ephemeral_store,
        _registry=registry,
        _backend=fake_backend,
    )
    await manager.init()
    return manager


def paragraphs(*words: str, repeat: int = 40) -> str:
    """One paragraph per word, each made of that word only."""
    return "\n\n".join(" ".join([w] * repeat) + "." for w in words)
