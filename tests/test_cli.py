"""End-to-end tests for the devchronicle command line."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import git_commit
from devchronicle import cli
from devchronicle.cli import app
from devchronicle.diary.manifest import parse_document
from devchronicle.storage.db import get_connection

runner = CliRunner()
UTC = timezone.utc


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    monkeypatch.delenv("DEVCHRONICLE_DB_PATH", raising=False)
    monkeypatch.delenv("DEVCHRONICLE_LOG_PATH", raising=False)
    monkeypatch.delenv("DEVCHRONICLE_MAX_BULLETS", raising=False)
    return work


def _invoke(*args: str):
    result = runner.invoke(app, list(args))
    assert result.exit_code == 0, result.output
    return result


class TestInit:
    def test_creates_database_and_settings(self, workspace: Path):
        _invoke("init")
        assert (workspace / "devchronicle.db").exists()
        assert "DEVCHRONICLE_DB_PATH=devchronicle.db" in (workspace / ".env").read_text()
        gitignore = (workspace / ".gitignore").read_text()
        assert ".env" in gitignore and "devchronicle.db" in gitignore

    def test_missing_database_reported(self, workspace: Path):
        result = runner.invoke(app, ["stats", "--db-path", "nowhere.db"])
        assert result.exit_code == 1
        assert "devchronicle init" in result.output


class TestWorkflow:
    def test_mine_summarize_and_write_diary(self, workspace: Path, git_repo: Path):
        git_commit(git_repo, "Add parser", {"src/parser.py": "a\nb\n"}, datetime(2026, 2, 1, 9, tzinfo=UTC))
        git_commit(git_repo, "Fix parser crash", {"src/parser.py": "a\n"}, datetime(2026, 2, 2, 9, tzinfo=UTC))
        db = str(workspace / "devchronicle.db")

        _invoke("init")
        _invoke("session", "create", "parser", str(git_repo), "--timezone", "UTC", "--db-path", db)
        _invoke("mine", "1", "--db-path", db)
        result = _invoke("days", "1", "--db-path", db)
        assert "2026-02-01" in result.output and "(mined)" in result.output

        diary = workspace / "diary.md"
        _invoke("diary", "create", str(diary), "--session", "1", "--db-path", db)
        doc = parse_document(diary.read_text())
        assert len(doc.entries) == 2
        assert "_No summary yet._" in diary.read_text()

        _invoke("summarize", "1", "--offline", "--db-path", db)
        status = _invoke("diary", "status", str(diary), "--db-path", db)
        assert "2 updated" in status.output

        result = _invoke("diary", "sync", str(diary), "--db-path", db)
        assert "2 updated" in result.output
        text = diary.read_text()
        assert "Worked on src" in text
        assert "_No summary yet._" not in text

        _invoke("approve", "1", "2026-02-01", "--db-path", db)
        result = _invoke("activity", "--db-path", db)
        assert "diary:sync" in result.output

    def test_sync_rejects_unmanaged_file(self, workspace: Path):
        _invoke("init")
        notes = workspace / "notes.md"
        notes.write_text("# Notes\n")
        result = runner.invoke(app, ["diary", "sync", str(notes), "--db-path", "devchronicle.db"])
        assert result.exit_code == 1
        assert notes.read_text() == "# Notes\n"


class TestDatabaseConnections:
    def test_commands_close_their_connection(self, workspace: Path, monkeypatch: pytest.MonkeyPatch):
        _invoke("init")
        opened: list[sqlite3.Connection] = []

        def tracking_connection(path):
            conn = get_connection(path)
            opened.append(conn)
            return conn

        monkeypatch.setattr(cli, "get_connection", tracking_connection)
        notes = workspace / "notes.md"
        notes.write_text("# Notes\n")

        _invoke("stats", "--db-path", "devchronicle.db")
        _invoke("session", "list", "--db-path", "devchronicle.db")
        failed = runner.invoke(app, ["diary", "sync", str(notes), "--db-path", "devchronicle.db"])
        assert failed.exit_code == 1

        assert len(opened) == 3
        for conn in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute("SELECT 1")
