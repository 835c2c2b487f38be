"""Mining orchestration: scope -> history -> aggregation -> evidence store.

The three mining procedures share one code path, parameterized by whether
evidence in scope is deleted first and whether changed days are downgraded:

- INCREMENTAL: insert new commits (known identities are ignored) and
  recompute every touched day as a full sum over stored commits.
- REBUILD: delete summaries, days and commits in scope, then mine. The scope
  afterwards holds exactly what the current history yields.
- KEEP_EVIDENCE: snapshot day aggregates, mine, and move any summarized or
  approved day whose aggregate changed back to mined. Nothing is deleted.

All git work finishes before the store is touched, and every write of a run
happens in one transaction, so a failed or canceled run leaves the store as
it found it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

from devchronicle.activity import ActivityLog
from devchronicle.errors import (
    Canceled,
    DevChronicleError,
    EnumerationFailed,
    check_canceled,
)
from devchronicle.git.history import HistoryEnumerator
from devchronicle.locks import SESSION_GUARD, SessionGuard
from devchronicle.mining.aggregator import aggregate_commits
from devchronicle.mining.scope import ScopeResolver
from devchronicle.models import DayStatus, OperationOutcome
from devchronicle.storage.repository import Repository

logger = logging.getLogger(__name__)


class MiningMode(str, Enum):
    INCREMENTAL = "incremental"
    REBUILD = "rebuild"
    KEEP_EVIDENCE = "keep-evidence"

    @property
    def deletes_evidence(self) -> bool:
        return self is MiningMode.REBUILD

    @property
    def downgrades_changed_days(self) -> bool:
        return self is MiningMode.KEEP_EVIDENCE


@dataclass
class MiningReport:
    session_id: int
    mode: MiningMode
    enumerated: int = 0
    stored: int = 0
    days: list[date] = field(default_factory=list)
    downgraded: list[date] = field(default_factory=list)
    deleted: dict[str, int] = field(default_factory=dict)

    def to_detail(self) -> dict:
        return {
            "mode": self.mode.value,
            "enumerated_commits": self.enumerated,
            "stored_commits": self.stored,
            "days": [d.isoformat() for d in self.days],
            "downgraded_days": [d.isoformat() for d in self.downgraded],
            "deleted": dict(self.deleted),
        }


class MiningOrchestrator:
    def __init__(
        self,
        repo: Repository,
        enumerator: HistoryEnumerator | None = None,
        resolver: ScopeResolver | None = None,
        guard: SessionGuard | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        self._repo = repo
        self._enumerator = enumerator or HistoryEnumerator()
        self._resolver = resolver or ScopeResolver()
        self._guard = guard or SESSION_GUARD
        self._activity = activity

    def mine(
        self,
        session_id: int,
        mode: MiningMode = MiningMode.INCREMENTAL,
        cancel: threading.Event | None = None,
    ) -> OperationOutcome:
        """Run one mining procedure and report how it ended."""
        started = time.monotonic()
        try:
            with self._guard.hold(session_id):
                report = self.run(session_id, mode, cancel)
            outcome = OperationOutcome.ok(**report.to_detail())
        except Canceled:
            logger.warning(f"Mining canceled for session {session_id}")
            outcome = OperationOutcome.canceled()
        except EnumerationFailed as e:
            logger.error(f"History enumeration failed for session {session_id}: {e}")
            outcome = OperationOutcome.failed(str(e), diagnostic=e.diagnostic, command=e.command)
        except DevChronicleError as e:
            logger.error(f"Mining failed for session {session_id}: {e}")
            outcome = OperationOutcome.failed(str(e))

        if self._activity is not None:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._activity.record(f"mine:{mode.value}", [session_id], outcome, duration_ms)
        return outcome

    def run(
        self,
        session_id: int,
        mode: MiningMode = MiningMode.INCREMENTAL,
        cancel: threading.Event | None = None,
    ) -> MiningReport:
        """Mine without the guard or outcome wrapping. Raises on failure."""
        session = self._repo.require_session(session_id)
        plan = self._resolver.resolve(session)
        range_label = (
            f"{plan.range_start or 'beginning'} to {plan.range_end or 'now'}"
        )
        logger.info(
            f"Mining session {session_id} ({mode.value}), repo: {plan.repo_path}, "
            f"range: {range_label}, refs: {plan.ref_scope.value}, merges: {plan.include_merges}"
        )

        if mode.deletes_evidence:
            known: frozenset[str] = frozenset()
        else:
            known = frozenset(
                self._repo.get_commit_shas(session_id, plan.range_start, plan.range_end)
            )

        records = list(self._enumerator.enumerate(plan, known, cancel))
        groups = aggregate_commits(session_id, records, plan)
        new_commits = [
            commit
            for evidence in groups.values()
            for commit in evidence.commits
            if commit.sha not in known
        ]
        check_canceled(cancel)

        report = MiningReport(session_id=session_id, mode=mode, enumerated=len(records))
        with self._repo.transaction():
            before = {}
            if mode.downgrades_changed_days:
                before = self._repo.day_aggregates(session_id, plan.range_start, plan.range_end)
            if mode.deletes_evidence:
                report.deleted = self._repo.delete_scope(
                    session_id, plan.range_start, plan.range_end
                )

            report.stored = self._repo.insert_commits(new_commits)
            days = self._repo.recompute_days(session_id, groups.keys())
            report.days = [d.day for d in days]

            if mode.downgrades_changed_days:
                for day in days:
                    if before.get(day.day) == day.aggregate or day.status is DayStatus.MINED:
                        continue
                    self._repo.set_day_status(session_id, day.day, DayStatus.MINED)
                    report.downgraded.append(day.day)

        logger.info(
            f"Mining complete for session {session_id}: {report.enumerated} commits enumerated, "
            f"{report.stored} stored, {len(report.days)} days, {len(report.downgraded)} downgraded"
        )
        return report
