"""Tests for the command line entry point."""

import logging
import sys
from types import SimpleNamespace

import pytest

from memex import cli
from memex.core.config import Settings


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("MEMEX_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    yield tmp_path / "data"
    # main() installs handlers on the package logger
    logger = logging.getLogger("memex")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


def run(monkeypatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["memex", *args])
    return cli.main()


def test_usage_without_command(data_dir, monkeypatch, capsys):
    assert run(monkeypatch) == 1
    assert "Usage: memex" in capsys.readouterr().out


def test_unknown_command(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "--debug", "frobnicate") == 1
    assert "Unknown command: frobnicate" in capsys.readouterr().out


def test_init_creates_database(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "init") == 0
    assert (data_dir / "memex.db").exists()
    assert "Created:" in capsys.readouterr().out


def test_query_requires_text(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "query") == 1
    assert "Usage: memex query" in capsys.readouterr().out


def test_ingest_unknown_kind(data_dir, monkeypatch, capsys):
    assert run(monkeypatch, "ingest", "diary", "dear diary") == 1
    assert "Unknown ingest kind: diary" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_runtime_debounces_chat_queries(data_dir, monkeypatch, capsys):
    """Queries go through the debouncer; a superseded line never prints an answer."""
    monkeypatch.setenv("MEMEX_DEBOUNCE_SECONDS", "0")
    settings = Settings(_env_file=None)

    async with cli.open_runtime(settings) as runtime:
        assert runtime.debouncer.debounce_seconds == 0

        async def process_query(query):
            return SimpleNamespace(content=f"answer to {query}")

        monkeypatch.setattr(runtime.orchestrator, "process_query", process_query)
        runtime.debouncer.submit(cli.CHAT_SESSION, "first")
        await runtime.debouncer.submit(cli.CHAT_SESSION, "second")

    out = capsys.readouterr().out
    assert "answer to second" in out
    assert "answer to first" not in out
