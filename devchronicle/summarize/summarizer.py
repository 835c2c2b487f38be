"""Day summarization using Claude.

Turns one day's commit evidence into a short list of dash bullets and stores
it as a DaySummary. Commits are first clustered into work units so busy days
fit in a compact prompt. Without an API client the summarizer falls back to
an offline summary built directly from the work units.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

import anthropic

from devchronicle.activity import ActivityLog
from devchronicle.config import DEFAULT_MODEL
from devchronicle.errors import (
    Canceled,
    DevChronicleError,
    InvalidStatusTransition,
    SummarizationFailed,
    check_canceled,
)
from devchronicle.locks import SESSION_GUARD, SessionGuard
from devchronicle.models import Commit, DayStatus, DaySummary, OperationOutcome
from devchronicle.storage.repository import Repository
from devchronicle.summarize.bullets import cap_bullets, normalize_bullets
from devchronicle.summarize.clustering import WorkUnit, cluster_commits, describe_work_unit

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v1"
OFFLINE_MODEL = "offline"
MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0  # seconds
MAX_TOKENS = 1024
MAX_WORK_UNITS = 5

SUMMARY_PROMPT = """\
You are writing a developer's work diary. Summarize one day of commits.

Date: {day}
Commits: {commit_count}
Changes: +{additions}/-{deletions} lines

Work done:

{work_units}

Write at most {max_bullets} concise bullet points summarizing this day's development work.
Requirements:
- Each bullet must start with '- '
- Focus on WHAT was done, not HOW
- Be specific and evidence-based (reference actual commits/files)
- Use active voice and past tense
- DO NOT invent features or functionality not evident in commits
- If unclear, be conservative in descriptions

Output only the bullet points, no other text.
"""


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def compute_input_hash(commits: list[Commit], day: date, model: str) -> str:
    payload = f"{PROMPT_VERSION}|{model}|{day.isoformat()}|"
    payload += "|".join(f"{c.sha}:{c.subject}" for c in sorted(commits, key=lambda c: c.sha))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def build_prompt(day: date, commits: list[Commit], units: list[WorkUnit], max_bullets: int) -> str:
    return SUMMARY_PROMPT.format(
        day=day.isoformat(),
        commit_count=len(commits),
        additions=sum(c.additions for c in commits),
        deletions=sum(c.deletions for c in commits),
        work_units="\n".join(describe_work_unit(u) for u in units[:MAX_WORK_UNITS]),
        max_bullets=max_bullets,
    )


def offline_summary(units: list[WorkUnit], max_bullets: int) -> str:
    bullets = []
    for unit in units[:max_bullets]:
        top = unit.commits[0]
        bullets.append(
            f"- Worked on {unit.folder} ({unit.category}): {top.subject} "
            f"(+{unit.additions}/-{unit.deletions} lines, {len(unit.commits)} commits)"
        )
    return "\n".join(bullets)


@dataclass
class SummaryResult:
    day: date
    bullets: list[str] = field(default_factory=list)
    truncated: bool = False
    used_ai: bool = False
    skipped: bool = False


class DaySummarizer:
    def __init__(
        self,
        repo: Repository,
        client: anthropic.Anthropic | None = None,
        model: str = DEFAULT_MODEL,
        max_bullets: int | None = None,
        guard: SessionGuard | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        self._repo = repo
        self._client = client
        self._model = model
        self._max_bullets = max_bullets
        self._guard = guard or SESSION_GUARD
        self._activity = activity

    def summarize_day(self, session_id: int, day: date) -> SummaryResult:
        session = self._repo.require_session(session_id)
        day_row = self._repo.get_day(session_id, day)
        if day_row is None:
            raise InvalidStatusTransition(f"No mined evidence for session {session_id} on {day}")
        if day_row.status is DayStatus.APPROVED:
            logger.info(f"Skipping approved day {day} for session {session_id}")
            return SummaryResult(day=day, skipped=True)

        commits = self._repo.get_commits_for_day(session_id, day)
        max_bullets = self._max_bullets or session.max_bullets
        units = cluster_commits(commits)

        result = SummaryResult(day=day)
        model = OFFLINE_MODEL
        text = ""
        if self._client is not None:
            text, result.truncated = self._complete(build_prompt(day, commits, units, max_bullets))
            model = self._model
            result.used_ai = True
        bullets = cap_bullets(normalize_bullets(text), max_bullets)
        if not bullets:
            if result.used_ai:
                logger.warning(f"Empty model output for {day}, using offline summary")
            model = OFFLINE_MODEL
            result.used_ai = False
            bullets = cap_bullets(normalize_bullets(offline_summary(units, max_bullets)), max_bullets)
        result.bullets = bullets

        summary = DaySummary(
            session_id=session_id,
            day=day,
            bullets_text="\n".join(bullets),
            model=model,
            prompt_version=PROMPT_VERSION,
            input_hash=compute_input_hash(commits, day, model),
            created_at=utc_timestamp(),
        )
        with self._repo.transaction():
            self._repo.save_day_summary(summary)
            self._repo.mark_summarized(session_id, day)
        return result

    def summarize_session(
        self,
        session_id: int,
        days: list[date] | None = None,
        cancel: threading.Event | None = None,
    ) -> OperationOutcome:
        """Summarize the given days, or every mined day of the session."""
        started = time.monotonic()
        summarized: list[str] = []
        failed: list[str] = []
        truncated: list[str] = []
        try:
            with self._guard.hold(session_id):
                if days is None:
                    days = [
                        d.day
                        for d in self._repo.get_days(session_id)
                        if d.status is DayStatus.MINED
                    ]
                for day in days:
                    check_canceled(cancel)
                    try:
                        result = self.summarize_day(session_id, day)
                    except (SummarizationFailed, InvalidStatusTransition) as e:
                        logger.error(f"Could not summarize {day} for session {session_id}: {e}")
                        failed.append(day.isoformat())
                        continue
                    if result.skipped:
                        continue
                    summarized.append(day.isoformat())
                    if result.truncated:
                        truncated.append(day.isoformat())
            outcome = OperationOutcome.ok(
                summarized_days=summarized, failed_days=failed, truncated_days=truncated
            )
        except Canceled:
            outcome = OperationOutcome.canceled()
        except DevChronicleError as e:
            logger.error(f"Summarization failed for session {session_id}: {e}")
            outcome = OperationOutcome.failed(str(e), summarized_days=summarized)

        if self._activity is not None:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._activity.record("summarize", [session_id], outcome, duration_ms)
        return outcome

    def _complete(self, prompt: str) -> tuple[str, bool]:
        """Call Claude; returns (text, truncated)."""
        for attempt in range(MAX_RETRIES):
            try:
                response = self._client.messages.create(
                    model=self._model,
                    max_tokens=MAX_TOKENS,
                    messages=[{"role": "user", "content": prompt}],
                )
                break
            except anthropic.RateLimitError as e:
                if attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(f"Rate limited, retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    raise SummarizationFailed(f"Rate limited after {MAX_RETRIES} retries") from e
            except anthropic.APIError as e:
                raise SummarizationFailed(f"API error: {e}") from e

        return _response_text(response), getattr(response, "stop_reason", None) == "max_tokens"


def _response_text(response: anthropic.types.Message) -> str:
    if not response.content:
        return ""
    texts = [
        block.text
        for block in response.content
        if isinstance(getattr(block, "text", None), str)
    ]
    return "\n".join(texts).strip()
