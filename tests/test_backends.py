"""Tests for the Ollama and sentence-transformers backends."""

from __future__ import annotations

import json

import httpx
import pytest

from rag_memory.backends import OllamaBackend, SentenceTransformerBackend, create_backend
from rag_memory.config import Settings
from rag_memory.errors import BackendError, BackendUnavailable


class _Recorder:
    """httpx.MockTransport handler that answers like a small Ollama server."""

    def __init__(self, status: int = 200, chat_content: str = "  an answer \n") -> None:
        self.status = status
        self.chat_content = chat_content
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, text="model not found")
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        body = json.loads(request.content)
        if request.url.path == "/api/embed":
            return httpx.Response(
                200,
                json={"embeddings": [[float(len(t)), 1.0] for t in body["input"]]},
            )
        if request.url.path == "/api/chat":
            return httpx.Response(
                200,
                json={"message": {"role": "assistant", "content": self.chat_content}},
            )
        return httpx.Response(404)


def _backend(handler, **kwargs) -> OllamaBackend:
    return OllamaBackend(
        base_url="http://ollama.test:11434/",
        _transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestOllamaBackend:
    @pytest.mark.asyncio
    async def test_embed_batches_in_one_request(self):
        recorder = _Recorder()
        backend = _backend(recorder, embedding_model="embedder")

        vectors = await backend.embed(["a", "bbb"])

        assert vectors == [[1.0, 1.0], [3.0, 1.0]]
        assert len(recorder.requests) == 1
        payload = json.loads(recorder.requests[0].content)
        assert payload == {"model": "embedder", "input": ["a", "bbb"]}
        await backend.close()

    @pytest.mark.asyncio
    async def test_embed_nothing_skips_request(self):
        recorder = _Recorder()
        backend = _backend(recorder)
        assert await backend.embed([]) == []
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_embed_with_wrong_vector_count_raises(self):
        def handler(request):
            return httpx.Response(200, json={"embeddings": [[1.0]]})

        backend = _backend(handler)
        with pytest.raises(BackendError):
            await backend.embed(["one", "two"])

    @pytest.mark.asyncio
    async def test_generate_posts_non_streaming_chat(self):
        recorder = _Recorder()
        backend = _backend(recorder, generation_model="chatter")
        messages = [{"role": "user", "content": "hi"}]

        answer = await backend.generate(messages)

        assert answer == "an answer"
        payload = json.loads(recorder.requests[0].content)
        assert recorder.requests[0].url.path == "/api/chat"
        assert payload["model"] == "chatter"
        assert payload["stream"] is False
        assert payload["messages"] == messages

    @pytest.mark.asyncio
    async def test_generate_without_model_is_unavailable(self):
        backend = _backend(_Recorder(), generation_model=None)
        with pytest.raises(BackendUnavailable):
            await backend.generate([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_http_error_status_is_backend_error(self):
        backend = _backend(_Recorder(status=500))
        with pytest.raises(BackendError) as excinfo:
            await backend.embed(["x"])
        assert not isinstance(excinfo.value, BackendUnavailable)
        assert "500" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_connection_refused_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = _backend(handler)
        with pytest.raises(BackendUnavailable):
            await backend.ping()

    @pytest.mark.asyncio
    async def test_invalid_json_is_backend_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        backend = _backend(handler)
        with pytest.raises(BackendError):
            await backend.embed(["x"])

    @pytest.mark.asyncio
    async def test_ping_hits_tags(self):
        recorder = _Recorder()
        backend = _backend(recorder)
        await backend.ping()
        assert recorder.requests[0].method == "GET"
        assert recorder.requests[0].url.path == "/api/tags"

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        backend = _backend(_Recorder())
        await backend.ping()
        await backend.close()
        await backend.close()


class TestSentenceTransformerBackend:
    @pytest.mark.asyncio
    async def test_embed_uses_embedding_function(self):
        calls = []

        def fake_ef(texts):
            calls.append(texts)
            return [[0.5, 0.25] for _ in texts]

        backend = SentenceTransformerBackend(_embedding_function=fake_ef)
        assert await backend.embed(["a", "b"]) == [[0.5, 0.25], [0.5, 0.25]]
        assert calls == [["a", "b"]]

    @pytest.mark.asyncio
    async def test_embedding_failure_is_backend_error(self):
        def broken_ef(texts):
            raise RuntimeError("model exploded")

        backend = SentenceTransformerBackend(_embedding_function=broken_ef)
        with pytest.raises(BackendError):
            await backend.embed(["a"])

    @pytest.mark.asyncio
    async def test_cannot_generate(self):
        backend = SentenceTransformerBackend(_embedding_function=lambda texts: [])
        with pytest.raises(BackendUnavailable):
            await backend.generate([{"role": "user", "content": "hi"}])


class TestCreateBackend:
    def test_ollama_by_default(self, tmp_path):
        backend = create_backend(Settings(data_dir=tmp_path, generation_model=""))
        assert isinstance(backend, OllamaBackend)
        assert backend.generation_model is None

    def test_local_provider(self, tmp_path):
        backend = create_backend(Settings(data_dir=tmp_path, embed_provider="local", local_model="tiny"))
        assert isinstance(backend, SentenceTransformerBackend)
        assert backend.model_name == "tiny"
