"""Tests for the CLI entry point."""

from __future__ import annotations

import io
import json

import pytest

from conftest import paragraphs
from rag_memory import cli
from rag_memory.cli import main
from rag_memory.memory import MemoryManager


@pytest.fixture()
def patched_manager(settings, ephemeral_store, fake_backend, monkeypatch):
    """
    Make every CLI invocation build a MemoryManager on the ephemeral store,
    the fake backend and a registry under tmp_path.
    """

    def _build(args):  # noqa: ARG001
        return MemoryManager(settings, _store=ephemeral_store, _backend=fake_backend)

    monkeypatch.setattr(cli, "_build_manager", _build)
    return ephemeral_store


def _stdin(monkeypatch, text: str) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(text))


def _remember(capsys, text: str, *extra: str) -> str:
    assert main(["remember", text, *extra]) == 0
    return capsys.readouterr().out.strip().split()[-1]


class TestCLI:
    def test_list_empty(self, patched_manager, capsys):
        rc = main(["list"])
        assert rc == 0
        assert capsys.readouterr().out.strip() == "No memories stored."

    def test_remember_and_list(self, patched_manager, capsys):
        doc_id = _remember(capsys, "Hello from the CLI test.", "--tags", "cli,test")

        rc = main(["list"])
        assert rc == 0
        out = capsys.readouterr().out
        assert f"id={doc_id}" in out
        assert "tags=cli,test" in out
        assert "1 of 1 shown" in out

    def test_list_json(self, patched_manager, capsys):
        doc_id = _remember(capsys, "json listing")
        assert main(["list", "--json"]) == 0
        docs = json.loads(capsys.readouterr().out)
        assert [d["id"] for d in docs] == [doc_id]

    def test_remember_from_stdin(self, patched_manager, capsys, monkeypatch):
        _stdin(monkeypatch, "piped note\n")
        assert main(["remember"]) == 0
        assert capsys.readouterr().out.startswith("Remembered ")

    def test_remember_missing_text_returns_error(self, patched_manager, capsys, monkeypatch):
        _stdin(monkeypatch, "")
        rc = main(["remember"])
        assert rc == 1
        assert "no text provided" in capsys.readouterr().err

    def test_ingest_file(self, patched_manager, capsys, tmp_path):
        path = tmp_path / "doc.md"
        path.write_text(paragraphs("alpha", "beta"), encoding="utf-8")
        rc = main(["ingest", str(path), "--tags", "docs"])
        assert rc == 0
        assert "(2 chunks)" in capsys.readouterr().out

    def test_ingest_missing_file(self, patched_manager, capsys, tmp_path):
        rc = main(["ingest", str(tmp_path / "nope.md")])
        assert rc == 1
        assert capsys.readouterr().err.startswith("Error:")

    def test_recall_empty_store(self, patched_manager, capsys):
        rc = main(["recall", "anything"])
        assert rc == 0
        assert "No memories found" in capsys.readouterr().out

    def test_remember_and_recall(self, patched_manager, capsys):
        _remember(capsys, "The user's favourite colour is green.")
        rc = main(["recall", "favourite colour"])
        assert rc == 0
        out = capsys.readouterr().out
        assert "green" in out
        assert "score=" in out

    def test_recall_json(self, patched_manager, capsys):
        doc_id = _remember(capsys, "the sky is blue")
        rc = main(["recall", "sky", "--json", "-n", "1"])
        assert rc == 0
        results = json.loads(capsys.readouterr().out)
        assert results[0]["id"] == doc_id

    def test_research_prints_synthesis(self, patched_manager, capsys, fake_backend):
        fake_backend.answer = "summary text"
        _remember(capsys, "the sky is blue")
        assert main(["research", "sky"]) == 0
        assert capsys.readouterr().out.strip() == "summary text"

    def test_forget(self, patched_manager, capsys):
        doc_id = _remember(capsys, "to be forgotten")
        rc = main(["forget", doc_id])
        assert rc == 0
        assert f"Deleted {doc_id}." in capsys.readouterr().out
        assert patched_manager.count() == 0

    def test_forget_unknown_returns_error(self, patched_manager, capsys):
        rc = main(["forget", "no-such-id"])
        assert rc == 1
        assert "Not found: no-such-id" in capsys.readouterr().err

    def test_update_from_stdin(self, patched_manager, capsys, monkeypatch):
        doc_id = _remember(capsys, "old text")
        _stdin(monkeypatch, "new text")
        rc = main(["update", doc_id])
        assert rc == 0
        assert f"Updated {doc_id} -> " in capsys.readouterr().out

    def test_update_unknown_reports_error(self, patched_manager, capsys):
        rc = main(["update", "missing", "text"])
        assert rc == 1
        assert "Error: Document missing not found" in capsys.readouterr().err

    def test_download_and_upload(self, patched_manager, capsys, tmp_path):
        _remember(capsys, "exported", "--tags", "x")
        out_file = tmp_path / "export.jsonl"

        assert main(["download", "-o", str(out_file)]) == 0
        assert "Exported 1 of 1" in capsys.readouterr().out
        assert json.loads(out_file.read_text(encoding="utf-8"))["tags"] == ["x"]

        assert main(["upload", str(out_file)]) == 0
        assert "Imported 1 entries, 0 failed." in capsys.readouterr().out
        assert patched_manager.count() == 2

    def test_upload_with_bad_line_returns_error(self, patched_manager, capsys, monkeypatch):
        _stdin(monkeypatch, '{"content": "fine"}\nnot json\n')
        rc = main(["upload"])
        assert rc == 1
        captured = capsys.readouterr()
        assert "Imported 1 entries, 1 failed." in captured.out
        assert "line 2:" in captured.err

    def test_stats_and_reconcile(self, patched_manager, capsys):
        _remember(capsys, "counted")
        assert main(["stats"]) == 0
        assert json.loads(capsys.readouterr().out) == {"documents": 1, "memories": 1, "chunks": 1}

        assert main(["reconcile"]) == 0
        assert json.loads(capsys.readouterr().out)["orphan_chunks_removed"] == 0
