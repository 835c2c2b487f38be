"""Deduplicates enumerated commits and groups them by calendar day."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from devchronicle.git.history import RawCommit
from devchronicle.mining.scope import EnumerationPlan
from devchronicle.models import Commit, Day


@dataclass
class DayEvidence:
    day: date
    commits: list[Commit] = field(default_factory=list)

    @property
    def commit_count(self) -> int:
        return len(self.commits)

    @property
    def additions(self) -> int:
        return sum(c.additions for c in self.commits)

    @property
    def deletions(self) -> int:
        return sum(c.deletions for c in self.commits)

    def to_day(self, session_id: int) -> Day:
        return Day(
            session_id=session_id,
            day=self.day,
            commit_count=self.commit_count,
            additions=self.additions,
            deletions=self.deletions,
        )


def to_commit(session_id: int, raw: RawCommit, plan: EnumerationPlan) -> Commit:
    files = raw.files or []
    return Commit(
        session_id=session_id,
        sha=raw.sha,
        author_date=raw.author_date,
        author_name=raw.author_name,
        author_email=raw.author_email,
        subject=raw.subject,
        day=plan.day_of(raw.author_date),
        additions=sum(f.additions for f in files),
        deletions=sum(f.deletions for f in files),
        files=list(files),
        is_merge=raw.is_merge,
    )


def aggregate_commits(
    session_id: int, records: Iterable[RawCommit], plan: EnumerationPlan
) -> dict[date, DayEvidence]:
    """Group commits by author-date calendar day, storing each identity once.

    The mapping is keyed by date; callers impose their own ordering.
    """
    by_sha: dict[str, Commit] = {}
    for raw in records:
        if raw.sha in by_sha:
            continue
        by_sha[raw.sha] = to_commit(session_id, raw, plan)

    groups: dict[date, DayEvidence] = {}
    for commit in by_sha.values():
        groups.setdefault(commit.day, DayEvidence(day=commit.day)).commits.append(commit)
    return groups
