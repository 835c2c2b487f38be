"""Enumerates commit history for an enumeration plan.

Two passes: one `git log` call lists identity and metadata for the whole
scope, then `git show --numstat` fetches per-file churn for each identity
the evidence store does not already hold. Records come out ordered by
(author timestamp, sha), independent of which refs reached them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Collection, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from devchronicle.errors import EnumerationFailed, check_canceled
from devchronicle.git.client import GitClient
from devchronicle.mining.scope import EnumerationPlan
from devchronicle.models import CommitFile

logger = logging.getLogger(__name__)

FIELD_SEP = "\x1f"
LOG_FORMAT = "%H%x1f%aI%x1f%an%x1f%ae%x1f%P%x1f%s"
LOG_FIELDS = 6
RECORD_SEP = "\0"


@dataclass
class RawCommit:
    """One log record, with churn once it has been fetched."""

    sha: str
    author_date: datetime
    author_name: str
    author_email: str
    subject: str
    parents: list[str] = field(default_factory=list)
    files: list[CommitFile] | None = None

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1


def build_log_args(plan: EnumerationPlan) -> list[str]:
    """Arguments for the first pass.

    The date window is not passed to git. `--since` stops walking a line of
    history at the first commit committed before the cutoff, which would hide
    earlier-committed commits whose author dates are in the window; the window
    is applied to author dates after listing instead.
    """
    args = ["log", *plan.ref_args, "-z", f"--pretty=format:{LOG_FORMAT}", "--no-color"]
    if not plan.include_merges:
        args.append("--no-merges")

    patterns: list[str] = []
    for f in plan.author_filters:
        patterns.extend(p for p in (f.email, f.name) if p)
    if patterns:
        args += ["--fixed-strings", "--regexp-ignore-case"]
        args += [f"--author={p}" for p in patterns]
    return args


def parse_log_output(output: str) -> list[RawCommit]:
    records: list[RawCommit] = []
    # Records are NUL-terminated; subjects may contain any other line separator
    for line in output.split(RECORD_SEP):
        if not line.strip():
            continue
        parts = line.strip("\n").split(FIELD_SEP, LOG_FIELDS - 1)
        if len(parts) != LOG_FIELDS:
            raise EnumerationFailed("Unparseable git log record", diagnostic=line)
        sha, date_text, name, email, parents, subject = parts
        try:
            author_date = datetime.fromisoformat(date_text.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise EnumerationFailed(
                f"Unparseable author date for {sha.strip()}", diagnostic=date_text
            ) from e
        records.append(
            RawCommit(
                sha=sha.strip(),
                author_date=author_date,
                author_name=name,
                author_email=email,
                subject=subject,
                parents=parents.split(),
            )
        )
    return records


def parse_numstat(output: str) -> list[CommitFile]:
    files: list[CommitFile] = []
    for line in output.split("\n"):
        if not line.strip():
            continue
        parts = line.split("\t", 2)
        if len(parts) != 3 or not parts[2].strip():
            raise EnumerationFailed("Unparseable numstat line", diagnostic=line)
        added, removed, path = parts
        if added == "-" and removed == "-":
            # Binary file, no line counts
            continue
        try:
            files.append(CommitFile(path=path.strip(), additions=int(added), deletions=int(removed)))
        except ValueError as e:
            raise EnumerationFailed("Unparseable numstat counts", diagnostic=line) from e
    return files


class HistoryEnumerator:
    """Lists commits for a plan, fetching churn lazily for unknown identities."""

    def __init__(self, client_factory: Callable[[Path], GitClient] = GitClient) -> None:
        self._client_factory = client_factory

    def list_commits(
        self, plan: EnumerationPlan, cancel: threading.Event | None = None
    ) -> list[RawCommit]:
        """First pass: identity and metadata for the whole scope."""
        check_canceled(cancel)
        client = self._client_factory(plan.repo_path)
        records = parse_log_output(client.run(*build_log_args(plan)))

        kept = [
            r
            for r in records
            if plan.in_window(r.author_date) and plan.author_matches(r.author_name, r.author_email)
        ]
        kept.sort(key=lambda r: (r.author_date, r.sha))
        logger.info(f"git log listed {len(records)} commits, {len(kept)} in scope")
        return kept

    def fetch_churn(self, plan: EnumerationPlan, sha: str) -> list[CommitFile]:
        client = self._client_factory(plan.repo_path)
        return parse_numstat(client.run("show", "--numstat", "--format=", "--no-color", sha))

    def enumerate(
        self,
        plan: EnumerationPlan,
        known_shas: Collection[str] = frozenset(),
        cancel: threading.Event | None = None,
    ) -> Iterator[RawCommit]:
        """Yield in-scope commits; churn is fetched only for identities not in known_shas."""
        records = self.list_commits(plan, cancel)
        fetched = 0
        for record in records:
            check_canceled(cancel)
            if record.sha not in known_shas:
                record.files = self.fetch_churn(plan, record.sha)
                fetched += 1
            yield record
        logger.info(f"Fetched churn for {fetched} new commits ({len(records) - fetched} already stored)")
