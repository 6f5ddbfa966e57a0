"""
Embedding and generation backends.

The core only relies on two coroutines:

    await backend.embed(["text", ...])  ->  [[float, ...], ...]
    await backend.generate([{"role": ..., "content": ...}, ...])  ->  str

:class:`OllamaBackend` talks to a local or remote Ollama server over HTTP.
:class:`SentenceTransformerBackend` embeds in-process with a
sentence-transformers model and has no generation capability.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

from .errors import BackendError, BackendUnavailable

logger = logging.getLogger(__name__)


class Backend(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...

    async def generate(self, messages: list[dict[str, str]]) -> str: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class OllamaBackend:
    """
    Async HTTP client for the Ollama API.

    Endpoints used:
        GET  /api/tags   health check
        POST /api/embed  batched embeddings  {"model", "input": [...]}
        POST /api/chat   non-streaming chat  {"model", "messages", "stream": false}

    Parameters
    ----------
    base_url:
        Server root, e.g. ``http://localhost:11434``.
    embedding_model:
        Model used for ``/api/embed``.
    generation_model:
        Model used for ``/api/chat``.  ``None`` disables generation.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        embedding_model: str = "nomic-embed-text",
        generation_model: str | None = "llama3.2",
        timeout: float = 30.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.generation_model = generation_model
        self.timeout = timeout
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _request(self, method: str, endpoint: str, json: dict | None = None) -> dict[str, Any]:
        try:
            response = await self._get_client().request(method, endpoint, json=json)
            response.raise_for_status()
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise BackendUnavailable(
                f"Ollama is not reachable at {self.base_url}: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"Ollama {endpoint} returned {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"Ollama {endpoint} request failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"Ollama {endpoint} returned invalid JSON") from exc

    async def ping(self) -> None:
        """Raise :class:`BackendUnavailable` if the server does not answer."""
        await self._request("GET", "/api/tags")

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in one request; vectors come back in input order."""
        if not texts:
            return []
        logger.debug("Embedding %d text(s) with %s", len(texts), self.embedding_model)
        data = await self._request(
            "POST",
            "/api/embed",
            json={"model": self.embedding_model, "input": list(texts)},
        )
        embeddings = data.get("embeddings")
        if not embeddings or len(embeddings) != len(texts) or not embeddings[0]:
            raise BackendError(
                "Ollama response does not contain valid embeddings. "
                f"Response keys: {list(data.keys())}"
            )
        return embeddings

    async def generate(self, messages: list[dict[str, str]]) -> str:
        """Run a non-streaming chat completion and return the reply text."""
        if not self.generation_model:
            raise BackendUnavailable("No generation model configured")
        data = await self._request(
            "POST",
            "/api/chat",
            json={
                "model": self.generation_model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": 0.2},
            },
        )
        content = (data.get("message") or {}).get("content")
        if content is None:
            raise BackendError(
                "Ollama chat response does not contain a valid message. "
                f"Response keys: {list(data.keys())}"
            )
        return content.strip()


# ---------------------------------------------------------------------------
# Local sentence-transformers
# ---------------------------------------------------------------------------


class SentenceTransformerBackend:
    """
    In-process embeddings via ChromaDB's sentence-transformer function.

    Requires the ``sentence-transformers`` package (``pip install
    rag-memory[local]``).  The model is loaded lazily on first use and the
    blocking encode call runs in a worker thread.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", _embedding_function: Any | None = None) -> None:
        self.model_name = model_name
        self._ef = _embedding_function

    def _get_function(self) -> Any:
        if self._ef is None:
            from chromadb.utils import embedding_functions

            self._ef = embedding_functions.SentenceTransformerEmbeddingFunction(
                model_name=self.model_name
            )
        return self._ef

    async def ping(self) -> None:
        await asyncio.to_thread(self._get_function)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = await asyncio.to_thread(self._get_function(), list(texts))
        except Exception as exc:
            raise BackendError(f"Local embedding failed: {exc}") from exc
        return [[float(x) for x in v] for v in vectors]

    async def generate(self, messages: list[dict[str, str]]) -> str:
        raise BackendUnavailable(
            "The local embedding backend cannot generate text; use the ollama provider"
        )

    async def close(self) -> None:
        return None


def create_backend(settings) -> Backend:
    """Build the backend selected by ``settings.embed_provider``."""
    if settings.embed_provider == "local":
        return SentenceTransformerBackend(model_name=settings.local_model)
    return OllamaBackend(
        base_url=settings.ollama_base_url,
        embedding_model=settings.embedding_model,
        generation_model=settings.generation_model or None,
        timeout=settings.timeout,
    )
