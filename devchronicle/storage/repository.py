"""Data access layer for the evidence store.

The store is the single source of truth for mined evidence: sessions,
commits, per-day aggregates and the day summaries generated from them.
Batch readers take many session ids at once so diary synchronization never
issues one query per day.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime

from devchronicle.errors import InvalidStatusTransition, SessionNotFound
from devchronicle.models import (
    AuthorFilter,
    Commit,
    CommitFile,
    Day,
    DayStatus,
    DaySummary,
    RefScope,
    Session,
)


def _range_clause(
    column: str, start: date | None, end: date | None, params: list
) -> str:
    clause = ""
    if start is not None:
        clause += f" AND {column} >= ?"
        params.append(start.isoformat())
    if end is not None:
        clause += f" AND {column} <= ?"
        params.append(end.isoformat())
    return clause


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


class Repository:
    """Data access layer for the devchronicle SQLite database."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block inside one SQLite transaction. Nested calls join the outer one."""
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._depth = 0

    # Sessions

    def create_session(self, session: Session) -> int:
        options = {
            "include_merges": session.include_merges,
            "ref_scope": session.ref_scope.value,
            "timezone": session.timezone,
            "max_bullets": session.max_bullets,
        }
        cursor = self._conn.execute(
            """INSERT INTO sessions
            (name, repo_path, author_filters_json, options_json, range_start, range_end, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                session.name,
                session.repo_path,
                json.dumps([f.to_dict() for f in session.author_filters]),
                json.dumps(options),
                session.range_start.isoformat() if session.range_start else None,
                session.range_end.isoformat() if session.range_end else None,
                session.created_at.isoformat(),
            ),
        )
        session.id = cursor.lastrowid
        return session.id

    def get_session(self, session_id: int) -> Session | None:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    def require_session(self, session_id: int) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} does not exist")
        return session

    def get_sessions(self, session_ids: Iterable[int]) -> dict[int, Session]:
        ids = list(session_ids)
        if not ids:
            return {}
        rows = self._conn.execute(
            f"SELECT * FROM sessions WHERE id IN ({_placeholders(ids)})", ids
        ).fetchall()
        return {row["id"]: self._row_to_session(row) for row in rows}

    def list_sessions(self) -> list[Session]:
        rows = self._conn.execute(
            "SELECT * FROM sessions ORDER BY created_at DESC, id DESC"
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_session(self, session_id: int) -> None:
        self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    # Commits

    def insert_commits(self, commits: Iterable[Commit]) -> int:
        """Insert commits, ignoring identities already stored. Returns rows inserted."""
        inserted = 0
        with self.transaction():
            for commit in commits:
                cursor = self._conn.execute(
                    """INSERT OR IGNORE INTO commits
                    (session_id, sha, day, author_date, author_name, author_email, subject,
                     additions, deletions, files_json, is_merge)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        commit.session_id,
                        commit.sha,
                        commit.day.isoformat(),
                        commit.author_date.isoformat(),
                        commit.author_name,
                        commit.author_email,
                        commit.subject,
                        commit.additions,
                        commit.deletions,
                        json.dumps(
                            [
                                {"path": f.path, "additions": f.additions, "deletions": f.deletions}
                                for f in commit.files
                            ]
                        ),
                        int(commit.is_merge),
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    def get_commit_shas(
        self, session_id: int, start: date | None = None, end: date | None = None
    ) -> set[str]:
        params: list = [session_id]
        query = "SELECT sha FROM commits WHERE session_id = ?" + _range_clause(
            "day", start, end, params
        )
        return {row["sha"] for row in self._conn.execute(query, params).fetchall()}

    def get_commits_for_day(self, session_id: int, day: date) -> list[Commit]:
        rows = self._conn.execute(
            """SELECT * FROM commits WHERE session_id = ? AND day = ?
            ORDER BY author_date, sha""",
            (session_id, day.isoformat()),
        ).fetchall()
        return [self._row_to_commit(row) for row in rows]

    def get_commits_for_sessions(
        self,
        session_ids: Iterable[int],
        start: date | None = None,
        end: date | None = None,
    ) -> list[Commit]:
        ids = list(session_ids)
        if not ids:
            return []
        params: list = list(ids)
        query = f"SELECT * FROM commits WHERE session_id IN ({_placeholders(ids)})"
        query += _range_clause("day", start, end, params)
        query += " ORDER BY day, session_id, author_date, sha"
        return [self._row_to_commit(row) for row in self._conn.execute(query, params).fetchall()]

    # Days

    def recompute_days(self, session_id: int, days: Iterable[date]) -> list[Day]:
        """Recompute aggregates for the given dates as full sums over stored commits.

        Existing status is kept. A date with no stored commits loses its Day row.
        """
        result: list[Day] = []
        with self.transaction():
            for day in sorted(set(days)):
                row = self._conn.execute(
                    """SELECT COUNT(*) AS commit_count,
                              COALESCE(SUM(additions), 0) AS additions,
                              COALESCE(SUM(deletions), 0) AS deletions
                    FROM commits WHERE session_id = ? AND day = ?""",
                    (session_id, day.isoformat()),
                ).fetchone()
                if row["commit_count"] == 0:
                    self._conn.execute(
                        "DELETE FROM days WHERE session_id = ? AND day = ?",
                        (session_id, day.isoformat()),
                    )
                    continue
                self._conn.execute(
                    """INSERT INTO days (session_id, day, commit_count, additions, deletions, status)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(session_id, day) DO UPDATE SET
                        commit_count = excluded.commit_count,
                        additions = excluded.additions,
                        deletions = excluded.deletions""",
                    (
                        session_id,
                        day.isoformat(),
                        row["commit_count"],
                        row["additions"],
                        row["deletions"],
                        DayStatus.MINED.value,
                    ),
                )
                stored = self.get_day(session_id, day)
                if stored is not None:
                    result.append(stored)
        return result

    def get_day(self, session_id: int, day: date) -> Day | None:
        row = self._conn.execute(
            "SELECT * FROM days WHERE session_id = ? AND day = ?",
            (session_id, day.isoformat()),
        ).fetchone()
        return self._row_to_day(row) if row else None

    def get_days(
        self, session_id: int, start: date | None = None, end: date | None = None
    ) -> list[Day]:
        return self.get_days_for_sessions([session_id], start, end)

    def get_days_for_sessions(
        self,
        session_ids: Iterable[int],
        start: date | None = None,
        end: date | None = None,
    ) -> list[Day]:
        ids = list(session_ids)
        if not ids:
            return []
        params: list = list(ids)
        query = f"SELECT * FROM days WHERE session_id IN ({_placeholders(ids)})"
        query += _range_clause("day", start, end, params)
        query += " ORDER BY day, session_id"
        return [self._row_to_day(row) for row in self._conn.execute(query, params).fetchall()]

    def day_aggregates(
        self, session_id: int, start: date | None = None, end: date | None = None
    ) -> dict[date, tuple[int, int, int]]:
        """Snapshot of (commit_count, additions, deletions) per stored day."""
        return {d.day: d.aggregate for d in self.get_days(session_id, start, end)}

    def set_day_status(self, session_id: int, day: date, status: DayStatus) -> None:
        self._conn.execute(
            "UPDATE days SET status = ? WHERE session_id = ? AND day = ?",
            (status.value, session_id, day.isoformat()),
        )

    def mark_summarized(self, session_id: int, day: date) -> None:
        current = self._require_day(session_id, day)
        if current.status is DayStatus.APPROVED:
            raise InvalidStatusTransition(f"{day} is approved; it cannot be re-summarized")
        self.set_day_status(session_id, day, DayStatus.SUMMARIZED)

    def approve_day(self, session_id: int, day: date) -> None:
        current = self._require_day(session_id, day)
        if current.status is not DayStatus.SUMMARIZED:
            raise InvalidStatusTransition(
                f"{day} is {current.status.value}; only summarized days can be approved"
            )
        self.set_day_status(session_id, day, DayStatus.APPROVED)

    def _require_day(self, session_id: int, day: date) -> Day:
        current = self.get_day(session_id, day)
        if current is None:
            raise InvalidStatusTransition(f"No mined evidence for session {session_id} on {day}")
        return current

    # Scope deletion

    def delete_scope(
        self, session_id: int, start: date | None = None, end: date | None = None
    ) -> dict[str, int]:
        """Delete summaries, then days, then commits for a session's date scope."""
        deleted: dict[str, int] = {}
        with self.transaction():
            for table in ("day_summaries", "days", "commits"):
                params: list = [session_id]
                query = f"DELETE FROM {table} WHERE session_id = ?" + _range_clause(
                    "day", start, end, params
                )
                deleted[table] = self._conn.execute(query, params).rowcount
        return deleted

    # Summaries

    def save_day_summary(self, summary: DaySummary) -> None:
        self._conn.execute(
            """INSERT OR REPLACE INTO day_summaries
            (session_id, day, bullets_text, model, prompt_version, input_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                summary.session_id,
                summary.day.isoformat(),
                summary.bullets_text,
                summary.model,
                summary.prompt_version,
                summary.input_hash,
                summary.created_at,
            ),
        )

    def latest_summary(self, session_id: int, day: date) -> DaySummary | None:
        return self.get_latest_summaries([session_id], day, day).get((session_id, day))

    def get_latest_summaries(
        self,
        session_ids: Iterable[int],
        start: date | None = None,
        end: date | None = None,
    ) -> dict[tuple[int, date], DaySummary]:
        """Latest summary by creation time per (session, day), across prompt versions."""
        ids = list(session_ids)
        if not ids:
            return {}
        params: list = list(ids)
        query = f"SELECT * FROM day_summaries WHERE session_id IN ({_placeholders(ids)})"
        query += _range_clause("day", start, end, params)
        query += " ORDER BY created_at, prompt_version"

        latest: dict[tuple[int, date], DaySummary] = {}
        for row in self._conn.execute(query, params).fetchall():
            summary = self._row_to_summary(row)
            latest[(summary.session_id, summary.day)] = summary
        return latest

    def max_summary_created_at(self, session_ids: Iterable[int]) -> datetime | None:
        ids = list(session_ids)
        if not ids:
            return None
        row = self._conn.execute(
            f"SELECT MAX(created_at) AS latest FROM day_summaries WHERE session_id IN ({_placeholders(ids)})",
            ids,
        ).fetchone()
        if not row or row["latest"] is None:
            return None
        return datetime.fromisoformat(row["latest"])

    def get_stats(self) -> dict:
        """Get summary statistics about the stored evidence."""
        def count(sql: str) -> int:
            return self._conn.execute(sql).fetchone()[0]

        status_rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM days GROUP BY status"
        ).fetchall()
        by_status = {row["status"]: row["n"] for row in status_rows}
        return {
            "total_sessions": count("SELECT COUNT(*) FROM sessions"),
            "total_commits": count("SELECT COUNT(*) FROM commits"),
            "total_days": count("SELECT COUNT(*) FROM days"),
            "total_summaries": count("SELECT COUNT(*) FROM day_summaries"),
            "mined_days": by_status.get(DayStatus.MINED.value, 0),
            "summarized_days": by_status.get(DayStatus.SUMMARIZED.value, 0),
            "approved_days": by_status.get(DayStatus.APPROVED.value, 0),
        }

    # Row conversion

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        options = json.loads(row["options_json"] or "{}")
        filters = json.loads(row["author_filters_json"] or "[]")
        return Session(
            id=row["id"],
            name=row["name"],
            repo_path=row["repo_path"],
            author_filters=[
                AuthorFilter(name=f.get("name") or "", email=f.get("email") or "")
                for f in filters
            ],
            include_merges=bool(options.get("include_merges", False)),
            ref_scope=RefScope(options.get("ref_scope", RefScope.LOCAL.value)),
            range_start=date.fromisoformat(row["range_start"]) if row["range_start"] else None,
            range_end=date.fromisoformat(row["range_end"]) if row["range_end"] else None,
            timezone=options.get("timezone", ""),
            max_bullets=int(options.get("max_bullets", 6)),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_commit(self, row: sqlite3.Row) -> Commit:
        files = [
            CommitFile(path=f["path"], additions=f["additions"], deletions=f["deletions"])
            for f in json.loads(row["files_json"] or "[]")
        ]
        return Commit(
            session_id=row["session_id"],
            sha=row["sha"],
            author_date=datetime.fromisoformat(row["author_date"]),
            author_name=row["author_name"],
            author_email=row["author_email"],
            subject=row["subject"],
            day=date.fromisoformat(row["day"]),
            additions=row["additions"],
            deletions=row["deletions"],
            files=files,
            is_merge=bool(row["is_merge"]),
        )

    def _row_to_day(self, row: sqlite3.Row) -> Day:
        return Day(
            session_id=row["session_id"],
            day=date.fromisoformat(row["day"]),
            commit_count=row["commit_count"],
            additions=row["additions"],
            deletions=row["deletions"],
            status=DayStatus(row["status"]),
        )

    def _row_to_summary(self, row: sqlite3.Row) -> DaySummary:
        return DaySummary(
            session_id=row["session_id"],
            day=date.fromisoformat(row["day"]),
            bullets_text=row["bullets_text"],
            model=row["model"],
            prompt_version=row["prompt_version"],
            input_hash=row["input_hash"],
            created_at=row["created_at"],
        )
