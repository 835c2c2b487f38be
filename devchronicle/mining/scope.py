"""Turns a session's configuration into a concrete enumeration plan.

Date ranges are inclusive at day granularity, but git limits history by
timestamp. The plan therefore normalizes a range to the half-open window
[start midnight, midnight after end) in the session timezone, and every
commit is assigned to a calendar day in that same timezone.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from devchronicle.errors import InvalidScope
from devchronicle.git.client import GitClient
from devchronicle.models import AuthorFilter, RefScope, Session

REF_SELECTORS: dict[RefScope, list[str]] = {
    RefScope.LOCAL: ["--branches"],
    RefScope.LOCAL_AND_REMOTES: ["--branches", "--remotes"],
    RefScope.ALL: ["--all"],
}


def resolve_timezone(name: str) -> tzinfo | None:
    """Return the named zone, or None for the system local zone."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScope(f"Unknown timezone {name!r}") from e


def _localize(naive: datetime, tz: tzinfo | None) -> datetime:
    if tz is None:
        return naive.astimezone()
    return naive.replace(tzinfo=tz)


@dataclass
class EnumerationPlan:
    repo_path: Path
    ref_scope: RefScope = RefScope.LOCAL
    include_merges: bool = False
    author_filters: list[AuthorFilter] = field(default_factory=list)
    range_start: date | None = None
    range_end: date | None = None
    start: datetime | None = None
    end_exclusive: datetime | None = None
    tz: tzinfo | None = None

    @property
    def ref_args(self) -> list[str]:
        return list(REF_SELECTORS[self.ref_scope])

    def in_window(self, timestamp: datetime) -> bool:
        if self.start is not None and timestamp < self.start:
            return False
        if self.end_exclusive is not None and timestamp >= self.end_exclusive:
            return False
        return True

    def author_matches(self, name: str, email: str) -> bool:
        """OR across filters; no filters matches everyone."""
        if not self.author_filters:
            return True
        return any(f.matches(name, email) for f in self.author_filters)

    def day_of(self, timestamp: datetime) -> date:
        return timestamp.astimezone(self.tz).date()


class ScopeResolver:
    def __init__(self, validate_repo: Callable[[Path], bool] | None = None) -> None:
        self._validate_repo = validate_repo or (lambda path: GitClient(path).is_work_tree())

    def resolve(self, session: Session) -> EnumerationPlan:
        """Build the plan, raising InvalidScope before any history is read."""
        if (
            session.range_start is not None
            and session.range_end is not None
            and session.range_end < session.range_start
        ):
            raise InvalidScope(
                f"Range end {session.range_end} is before range start {session.range_start}"
            )

        tz = resolve_timezone(session.timezone)
        repo_path = Path(session.repo_path).expanduser()
        if not self._validate_repo(repo_path):
            raise InvalidScope(f"{repo_path} is not a git working copy")

        start = None
        if session.range_start is not None:
            start = _localize(datetime.combine(session.range_start, time.min), tz)
        end_exclusive = None
        if session.range_end is not None:
            next_day = session.range_end + timedelta(days=1)
            end_exclusive = _localize(datetime.combine(next_day, time.min), tz)

        return EnumerationPlan(
            repo_path=repo_path,
            ref_scope=session.ref_scope,
            include_merges=session.include_merges,
            author_filters=list(session.author_filters),
            range_start=session.range_start,
            range_end=session.range_end,
            start=start,
            end_exclusive=end_exclusive,
            tz=tz,
        )
