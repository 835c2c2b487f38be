"""SQLite database setup and schema management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    author_filters_json TEXT NOT NULL DEFAULT '[]',
    options_json TEXT NOT NULL DEFAULT '{}',
    range_start TEXT,
    range_end TEXT,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS commits (
    session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    sha TEXT NOT NULL,
    day TEXT NOT NULL,
    author_date TEXT NOT NULL,
    author_name TEXT NOT NULL,
    author_email TEXT NOT NULL,
    subject TEXT NOT NULL,
    additions INTEGER NOT NULL DEFAULT 0,
    deletions INTEGER NOT NULL DEFAULT 0,
    files_json TEXT NOT NULL DEFAULT '[]',
    is_merge INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (session_id, sha)
);

CREATE TABLE IF NOT EXISTS days (
    session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    day TEXT NOT NULL,
    commit_count INTEGER NOT NULL DEFAULT 0,
    additions INTEGER NOT NULL DEFAULT 0,
    deletions INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'mined',
    PRIMARY KEY (session_id, day)
);

CREATE TABLE IF NOT EXISTS day_summaries (
    session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    day TEXT NOT NULL,
    bullets_text TEXT NOT NULL,
    model TEXT NOT NULL,
    prompt_version TEXT NOT NULL,
    input_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (session_id, day, prompt_version)
);

CREATE INDEX IF NOT EXISTS idx_commits_day ON commits(session_id, day);
CREATE INDEX IF NOT EXISTS idx_summaries_created ON day_summaries(session_id, created_at);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create or open a SQLite database with the devchronicle schema."""
    # Transactions are opened explicitly by Repository.transaction()
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

    return conn
