"""Core data models for devchronicle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class RefScope(str, Enum):
    """Which refs a history enumeration walks."""

    LOCAL = "local"  # local branches only
    LOCAL_AND_REMOTES = "remotes"  # local + remote-tracking branches
    ALL = "all"  # every ref, tags included


class DayStatus(str, Enum):
    MINED = "mined"
    SUMMARIZED = "summarized"
    APPROVED = "approved"


@dataclass
class AuthorFilter:
    name: str = ""
    email: str = ""

    @classmethod
    def parse(cls, text: str) -> AuthorFilter:
        """Parse "Name <email>", a bare email, or a bare name."""
        text = text.strip()
        if "<" in text and text.endswith(">"):
            name, _, email = text[:-1].partition("<")
            return cls(name=name.strip(), email=email.strip())
        if "@" in text:
            return cls(email=text)
        return cls(name=text)

    def matches(self, author_name: str, author_email: str) -> bool:
        if self.email and self.email.lower() in author_email.lower():
            return True
        if self.name and self.name.lower() in author_name.lower():
            return True
        return False

    def to_dict(self) -> dict:
        return {"name": self.name, "email": self.email}


@dataclass
class Session:
    """Immutable mining contract for one repository."""

    id: int | None
    name: str
    repo_path: str
    author_filters: list[AuthorFilter] = field(default_factory=list)
    include_merges: bool = False
    ref_scope: RefScope = RefScope.LOCAL
    range_start: date | None = None  # inclusive
    range_end: date | None = None  # inclusive
    timezone: str = ""  # IANA name, "" = system local
    max_bullets: int = 6
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def repo_name(self) -> str:
        path = self.repo_path.rstrip("/\\")
        return path.replace("\\", "/").rsplit("/", 1)[-1] or path


@dataclass
class CommitFile:
    path: str
    additions: int
    deletions: int


@dataclass
class Commit:
    session_id: int
    sha: str
    author_date: datetime  # timezone-aware
    author_name: str
    author_email: str
    subject: str
    day: date  # author date in the session timezone
    additions: int = 0
    deletions: int = 0
    files: list[CommitFile] = field(default_factory=list)
    is_merge: bool = False


@dataclass
class Day:
    session_id: int
    day: date
    commit_count: int = 0
    additions: int = 0
    deletions: int = 0
    status: DayStatus = DayStatus.MINED

    @property
    def aggregate(self) -> tuple[int, int, int]:
        return (self.commit_count, self.additions, self.deletions)


@dataclass
class DaySummary:
    session_id: int
    day: date
    bullets_text: str
    model: str
    prompt_version: str
    input_hash: str
    created_at: str  # UTC ISO-8601 with microseconds


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass
class OperationOutcome:
    """Terminal state of a long-running operation."""

    status: OutcomeStatus
    reason: str = ""
    detail: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    @classmethod
    def ok(cls, **detail) -> OperationOutcome:
        return cls(OutcomeStatus.SUCCEEDED, detail=detail)

    @classmethod
    def canceled(cls, reason: str = "Operation canceled") -> OperationOutcome:
        return cls(OutcomeStatus.CANCELED, reason=reason)

    @classmethod
    def failed(cls, reason: str, **detail) -> OperationOutcome:
        return cls(OutcomeStatus.FAILED, reason=reason, detail=detail)
