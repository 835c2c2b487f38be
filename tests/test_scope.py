"""Tests for devchronicle.mining.scope."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from devchronicle.errors import InvalidScope
from devchronicle.mining.scope import ScopeResolver, resolve_timezone
from devchronicle.models import AuthorFilter, RefScope, Session

UTC = timezone.utc


def _session(**kwargs) -> Session:
    defaults = dict(id=1, name="s", repo_path="/src/webapp", timezone="UTC")
    defaults.update(kwargs)
    return Session(**defaults)


@pytest.fixture
def resolver() -> ScopeResolver:
    return ScopeResolver(validate_repo=lambda path: True)


class TestResolve:
    def test_end_before_start_rejected(self, resolver: ScopeResolver):
        session = _session(range_start=date(2026, 2, 5), range_end=date(2026, 2, 1))
        with pytest.raises(InvalidScope):
            resolver.resolve(session)

    def test_not_a_working_copy(self):
        resolver = ScopeResolver(validate_repo=lambda path: False)
        with pytest.raises(InvalidScope, match="not a git working copy"):
            resolver.resolve(_session())

    def test_missing_directory_with_real_validation(self, tmp_path: Path):
        with pytest.raises(InvalidScope):
            ScopeResolver().resolve(_session(repo_path=str(tmp_path / "nope")))

    def test_window_is_half_open_at_day_granularity(self, resolver: ScopeResolver):
        plan = resolver.resolve(
            _session(range_start=date(2026, 2, 1), range_end=date(2026, 2, 2))
        )
        assert plan.start == datetime(2026, 2, 1, tzinfo=ZoneInfo("UTC"))
        assert plan.end_exclusive == datetime(2026, 2, 3, tzinfo=ZoneInfo("UTC"))
        last_moment = datetime(2026, 2, 2, 23, 59, 59, tzinfo=UTC)
        assert plan.in_window(last_moment)
        assert not plan.in_window(last_moment + timedelta(seconds=1))
        assert not plan.in_window(datetime(2026, 1, 31, 23, 59, tzinfo=UTC))

    def test_single_day_range(self, resolver: ScopeResolver):
        plan = resolver.resolve(
            _session(range_start=date(2026, 2, 1), range_end=date(2026, 2, 1))
        )
        assert plan.end_exclusive - plan.start == timedelta(days=1)

    def test_open_range(self, resolver: ScopeResolver):
        plan = resolver.resolve(_session())
        assert plan.start is None and plan.end_exclusive is None
        assert plan.in_window(datetime(1999, 1, 1, tzinfo=UTC))

    def test_carries_session_options(self, resolver: ScopeResolver):
        plan = resolver.resolve(
            _session(ref_scope=RefScope.LOCAL_AND_REMOTES, include_merges=True)
        )
        assert plan.ref_args == ["--branches", "--remotes"]
        assert plan.include_merges is True

    def test_unknown_timezone(self, resolver: ScopeResolver):
        with pytest.raises(InvalidScope, match="timezone"):
            resolver.resolve(_session(timezone="Mars/Olympus"))


class TestPlanMatching:
    def test_day_follows_session_timezone(self, resolver: ScopeResolver):
        plan = resolver.resolve(_session(timezone="America/New_York"))
        # 03:00 UTC is still the previous evening in New York
        assert plan.day_of(datetime(2026, 2, 2, 3, 0, tzinfo=UTC)) == date(2026, 2, 1)

    def test_author_filters_or_together(self, resolver: ScopeResolver):
        plan = resolver.resolve(
            _session(
                author_filters=[
                    AuthorFilter(email="ada@example.com"),
                    AuthorFilter(name="Grace"),
                ]
            )
        )
        assert plan.author_matches("Someone", "ADA@example.com")
        assert plan.author_matches("grace hopper", "gh@navy.mil")
        assert not plan.author_matches("Linus", "linus@example.com")

    def test_no_filters_match_everyone(self, resolver: ScopeResolver):
        plan = resolver.resolve(_session())
        assert plan.author_matches("Anyone", "any@example.com")


class TestResolveTimezone:
    def test_empty_means_local(self):
        assert resolve_timezone("") is None

    def test_named_zone(self):
        assert resolve_timezone("Europe/Berlin") == ZoneInfo("Europe/Berlin")
