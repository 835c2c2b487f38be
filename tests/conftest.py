"""Shared test fixtures for devchronicle."""

from __future__ import annotations

import os
import shutil
import sqlite3
import subprocess
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from devchronicle.git.history import RawCommit
from devchronicle.locks import SessionGuard
from devchronicle.models import Commit, CommitFile, DaySummary, Session
from devchronicle.storage.db import get_connection
from devchronicle.storage.repository import Repository

UTC = timezone.utc


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def db_conn(db_path: Path) -> sqlite3.Connection:
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def repo(db_conn: sqlite3.Connection) -> Repository:
    return Repository(db_conn)


@pytest.fixture
def guard() -> SessionGuard:
    return SessionGuard()


@pytest.fixture
def sample_session(repo: Repository) -> Session:
    session = Session(
        id=None,
        name="diary",
        repo_path="/home/dev/src/webapp",
        timezone="UTC",
        created_at=datetime(2026, 1, 15, 9, 0, 0),
    )
    repo.create_session(session)
    return session


def make_commit(
    session_id: int,
    sha: str,
    day: date,
    additions: int = 1,
    deletions: int = 0,
    subject: str = "Update code",
    path: str = "src/app.py",
    hour: int = 10,
) -> Commit:
    return Commit(
        session_id=session_id,
        sha=sha,
        author_date=datetime(day.year, day.month, day.day, hour, 0, tzinfo=UTC),
        author_name="Dev",
        author_email="dev@example.com",
        subject=subject,
        day=day,
        additions=additions,
        deletions=deletions,
        files=[CommitFile(path=path, additions=additions, deletions=deletions)],
    )


def make_raw(
    sha: str,
    when: datetime,
    additions: int = 1,
    deletions: int = 0,
    subject: str = "Update code",
    path: str = "src/app.py",
    parents: list[str] | None = None,
) -> RawCommit:
    return RawCommit(
        sha=sha,
        author_date=when,
        author_name="Dev",
        author_email="dev@example.com",
        subject=subject,
        parents=parents if parents is not None else ["p" + sha],
        files=[CommitFile(path=path, additions=additions, deletions=deletions)],
    )


def store_day(repo: Repository, session_id: int, day: date, *commits: Commit) -> None:
    repo.insert_commits(list(commits) or [make_commit(session_id, f"sha-{day}", day)])
    repo.recompute_days(session_id, [day])


def store_summary(
    repo: Repository,
    session_id: int,
    day: date,
    bullets: str,
    created_at: datetime,
    prompt_version: str = "v1",
) -> DaySummary:
    summary = DaySummary(
        session_id=session_id,
        day=day,
        bullets_text=bullets,
        model="offline",
        prompt_version=prompt_version,
        input_hash="hash",
        created_at=created_at.isoformat(timespec="microseconds"),
    )
    repo.save_day_summary(summary)
    return summary


class FakeEnumerator:
    """Stands in for HistoryEnumerator with a fixed list of records."""

    def __init__(self, records: list[RawCommit]) -> None:
        self.records = records
        self.known_seen: frozenset[str] | None = None

    def enumerate(self, plan, known_shas=frozenset(), cancel=None):
        self.known_seen = frozenset(known_shas)
        for record in sorted(self.records, key=lambda r: (r.author_date, r.sha)):
            if cancel is not None and cancel.is_set():
                from devchronicle.errors import Canceled

                raise Canceled("Operation canceled")
            yield record


# Real git repositories


def git_available() -> bool:
    return shutil.which("git") is not None


def git_commit(
    repo_dir: Path,
    message: str,
    files: dict[str, str],
    when: datetime,
    author: str = "Dev",
    email: str = "dev@example.com",
    committed: datetime | None = None,
) -> str:
    for name, content in files.items():
        target = repo_dir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    stamp = when.isoformat()
    env = {
        **os.environ,
        "GIT_AUTHOR_NAME": author,
        "GIT_AUTHOR_EMAIL": email,
        "GIT_AUTHOR_DATE": stamp,
        "GIT_COMMITTER_NAME": author,
        "GIT_COMMITTER_EMAIL": email,
        "GIT_COMMITTER_DATE": (committed or when).isoformat(),
    }
    subprocess.run(["git", "add", "-A"], cwd=repo_dir, check=True, env=env)
    subprocess.run(["git", "commit", "-q", "-m", message], cwd=repo_dir, check=True, env=env)
    return subprocess.run(
        ["git", "rev-parse", "HEAD"], cwd=repo_dir, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    if not git_available():
        pytest.skip("git executable not available")
    repo_dir = tmp_path / "webapp"
    repo_dir.mkdir()
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=repo_dir, check=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=repo_dir, check=True)
    return repo_dir
