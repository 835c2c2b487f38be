"""Tests for devchronicle.summarize (bullets, clustering, summarizer)."""

from __future__ import annotations

import threading
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from conftest import make_commit, store_day
from devchronicle.models import DayStatus, OutcomeStatus, Session
from devchronicle.storage.repository import Repository
from devchronicle.summarize import summarizer as summarizer_module
from devchronicle.summarize.bullets import cap_bullets, normalize_bullets
from devchronicle.summarize.clustering import (
    SPLIT_THRESHOLD,
    categorize,
    cluster_commits,
    describe_work_unit,
    top_level_folder,
)
from devchronicle.summarize.summarizer import (
    OFFLINE_MODEL,
    PROMPT_VERSION,
    DaySummarizer,
    compute_input_hash,
    offline_summary,
)

FEB1 = date(2026, 2, 1)
FEB2 = date(2026, 2, 2)


def _mock_client(text: str, stop_reason: str = "end_turn") -> MagicMock:
    content_block = MagicMock()
    content_block.text = text
    response = MagicMock()
    response.content = [content_block]
    response.stop_reason = stop_reason
    client = MagicMock()
    client.messages.create.return_value = response
    return client


def _rate_limit_error() -> anthropic.RateLimitError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return anthropic.RateLimitError(
        "rate limited", response=httpx.Response(429, request=request), body=None
    )


class TestNormalizeBullets:
    def test_keeps_dash_bullets(self):
        assert normalize_bullets("- Added login\n- Fixed crash") == ["- Added login", "- Fixed crash"]

    def test_converts_other_markers(self):
        assert normalize_bullets("• One\n* Two\n+ Three") == ["- One", "- Two", "- Three"]

    def test_prefixes_plain_lines_and_skips_blanks(self):
        assert normalize_bullets("Refactored parser\n\n  ") == ["- Refactored parser"]

    def test_cap_drops_empty_bullets(self):
        assert cap_bullets(["- a", "-", "- b", "- c"], 2) == ["- a", "- b"]


class TestClustering:
    def test_top_level_folder(self):
        assert top_level_folder("src/app/main.py") == "src"
        assert top_level_folder("README.md") == "root"
        assert top_level_folder("docs\\guide.md") == "docs"

    def test_categorize(self):
        assert categorize("Fix crash on startup") == "bugfix"
        assert categorize("Add tests for parser") == "testing"
        assert categorize("Ship it") == "general"

    def test_groups_by_folder(self):
        commits = [
            make_commit(1, "a", FEB1, 10, 0, path="src/a.py"),
            make_commit(1, "b", FEB1, 1, 0, path="docs/b.md"),
            make_commit(1, "c", FEB1, 5, 0, path="src/c.py"),
        ]
        units = cluster_commits(commits)
        assert [u.folder for u in units] == ["src", "docs"]
        assert [c.sha for c in units[0].commits] == ["a", "c"]

    def test_busy_folder_split_by_category(self):
        commits = [
            make_commit(1, f"f{i}", FEB1, path="src/x.py", subject="Fix bug")
            for i in range(SPLIT_THRESHOLD)
        ] + [make_commit(1, "t0", FEB1, path="src/y.py", subject="Add tests")]
        units = cluster_commits(commits)
        assert {u.category for u in units} == {"bugfix", "testing"}

    def test_describe_truncates(self):
        commits = [make_commit(1, f"sha{i:04d}", FEB1) for i in range(7)]
        (unit,) = cluster_commits(commits)
        text = describe_work_unit(unit, max_commits=5)
        assert "... and 2 more commits" in text


class TestInputHash:
    def test_stable_across_order(self):
        a = make_commit(1, "a", FEB1)
        b = make_commit(1, "b", FEB1)
        assert compute_input_hash([a, b], FEB1, "m") == compute_input_hash([b, a], FEB1, "m")

    def test_depends_on_model(self):
        commits = [make_commit(1, "a", FEB1)]
        assert compute_input_hash(commits, FEB1, "m1") != compute_input_hash(commits, FEB1, "m2")


class TestDaySummarizer:
    def test_model_summary_saved(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1, make_commit(sid, "a1", FEB1, 10, 2, subject="Add login"))
        client = _mock_client("- Added login form\n- Wired session handling")

        result = DaySummarizer(repo, client=client, model="claude-test").summarize_day(sid, FEB1)
        assert result.used_ai
        assert result.bullets == ["- Added login form", "- Wired session handling"]

        summary = repo.latest_summary(sid, FEB1)
        assert summary.model == "claude-test"
        assert summary.prompt_version == PROMPT_VERSION
        assert summary.created_at.endswith("+00:00")
        assert repo.get_day(sid, FEB1).status is DayStatus.SUMMARIZED

        prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "Add login" in prompt
        assert "2026-02-01" in prompt

    def test_caps_bullets(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        client = _mock_client("\n".join(f"- item {i}" for i in range(10)))
        result = DaySummarizer(repo, client=client, max_bullets=3).summarize_day(sid, FEB1)
        assert len(result.bullets) == 3

    def test_truncation_flagged(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        client = _mock_client("- partial", stop_reason="max_tokens")
        assert DaySummarizer(repo, client=client).summarize_day(sid, FEB1).truncated

    def test_offline_without_client(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1, make_commit(sid, "a1", FEB1, 4, 1, subject="Fix crash", path="src/a.py"))
        result = DaySummarizer(repo).summarize_day(sid, FEB1)
        assert not result.used_ai
        assert result.bullets[0].startswith("- Worked on src (bugfix): Fix crash")
        assert repo.latest_summary(sid, FEB1).model == OFFLINE_MODEL

    def test_empty_model_output_falls_back(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        result = DaySummarizer(repo, client=_mock_client("   ")).summarize_day(sid, FEB1)
        assert not result.used_ai
        assert result.bullets

    def test_approved_day_skipped(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        repo.mark_summarized(sid, FEB1)
        repo.approve_day(sid, FEB1)
        client = _mock_client("- anything")
        result = DaySummarizer(repo, client=client).summarize_day(sid, FEB1)
        assert result.skipped
        client.messages.create.assert_not_called()

    def test_retries_on_rate_limit(self, repo, sample_session, monkeypatch):
        monkeypatch.setattr(summarizer_module.time, "sleep", lambda s: None)
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        client = _mock_client("- done")
        ok_response = client.messages.create.return_value
        client.messages.create.side_effect = [_rate_limit_error(), ok_response]
        result = DaySummarizer(repo, client=client).summarize_day(sid, FEB1)
        assert result.bullets == ["- done"]
        assert client.messages.create.call_count == 2


class TestSummarizeSession:
    def test_summarizes_mined_days(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        store_day(repo, sid, FEB2)
        repo.mark_summarized(sid, FEB2)
        outcome = DaySummarizer(repo).summarize_session(sid)
        assert outcome.succeeded
        assert outcome.detail["summarized_days"] == ["2026-02-01"]

    def test_failures_reported_per_day(self, repo, sample_session, monkeypatch):
        monkeypatch.setattr(summarizer_module.time, "sleep", lambda s: None)
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        client = MagicMock()
        client.messages.create.side_effect = _rate_limit_error()
        outcome = DaySummarizer(repo, client=client).summarize_session(sid)
        assert outcome.detail["failed_days"] == ["2026-02-01"]
        assert repo.get_day(sid, FEB1).status is DayStatus.MINED

    def test_cancel(self, repo: Repository, sample_session: Session):
        sid = sample_session.id
        store_day(repo, sid, FEB1)
        cancel = threading.Event()
        cancel.set()
        outcome = DaySummarizer(repo).summarize_session(sid, cancel=cancel)
        assert outcome.status is OutcomeStatus.CANCELED
        assert repo.latest_summary(sid, FEB1) is None


class TestOfflineSummary:
    def test_one_bullet_per_unit(self):
        commits = [
            make_commit(1, "a", FEB1, path="src/a.py", subject="Add parser"),
            make_commit(1, "b", FEB1, path="docs/b.md", subject="Document parser"),
        ]
        text = offline_summary(cluster_commits(commits), max_bullets=5)
        assert len(text.splitlines()) == 2
        assert all(line.startswith("- Worked on ") for line in text.splitlines())
