"""Diary synchronization: merge stored day summaries into a managed document.

The synchronizer computes the ideal entry set for the document's bound
sessions (one entry per mined day, carrying its latest summary), diffs it
against the entries already in the document, and rewrites only what
changed. User text outside the markers is never touched, and entries with
no counterpart in the store are reported but left in place.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable

from devchronicle.activity import ActivityLog
from devchronicle.diary.manifest import (
    MARKER_PREFIX,
    NO_SUMMARY,
    DaySection,
    EntryBlock,
    EntryKey,
    Manifest,
    ManifestOptions,
    ParsedDocument,
    TextBlock,
    as_utc,
    day_end_line,
    day_start_line,
    entry_end_line,
    entry_start_line,
    is_manifest_line,
    line_ending,
    parse_document,
    split_lines,
)
from devchronicle.diary.writer import atomic_write, read_document
from devchronicle.errors import (
    Canceled,
    DevChronicleError,
    MalformedManifest,
    MalformedMarker,
    SessionNotFound,
    UnmanagedDocumentRejected,
    WriteFailed,
    check_canceled,
)
from devchronicle.locks import SESSION_GUARD, SessionGuard
from devchronicle.models import DaySummary, OperationOutcome, Session
from devchronicle.storage.repository import Repository

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "_No summary yet._"
DEFAULT_TITLE = "# Developer Diary"
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

SortKey = tuple[str, str, int]


def day_heading(day: date) -> str:
    return f"## {day.isoformat()} ({WEEKDAYS[day.weekday()]})"


def repo_label(session: Session, options: ManifestOptions) -> str:
    return session.repo_name if options.hide_local_paths else session.repo_path


def entry_sort_key(session: Session, options: ManifestOptions) -> SortKey:
    return (repo_label(session, options), session.name, session.id or 0)


def _escape_marker(line: str) -> str:
    # Summary text must never be read back as a marker
    if line.lstrip().startswith(MARKER_PREFIX):
        return line.replace("<!--", "&lt;!--", 1)
    return line


def entry_body(
    session: Session, summary: DaySummary | None, options: ManifestOptions
) -> list[str]:
    """Body lines (without line endings) of one generated entry."""
    lines = [f"### {repo_label(session, options)} / {session.name}"]
    bullets = []
    if summary is not None:
        bullets = [_escape_marker(b) for b in summary.bullets_text.splitlines() if b.strip()]
    if bullets:
        lines += [""] + bullets
    elif options.include_placeholders:
        lines += ["", PLACEHOLDER_TEXT]
    lines.append("")
    return lines


@dataclass
class IdealEntry:
    key: EntryKey
    summary_stamp: str
    body: list[str]
    sort_key: SortKey

    def to_block(self, newline: str) -> EntryBlock:
        return EntryBlock(
            day=self.key.day,
            session_id=self.key.session_id,
            summary_stamp=self.summary_stamp,
            open_line=entry_start_line(self.key.day, self.key.session_id, self.summary_stamp, newline),
            body=[line + newline for line in self.body],
            close_line=entry_end_line(self.key.day, self.key.session_id, newline),
        )


@dataclass
class DiaryDiff:
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    extra: int = 0

    @property
    def is_stale(self) -> bool:
        return self.new > 0 or self.updated > 0

    def to_dict(self) -> dict:
        return {
            "new": self.new,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "extra": self.extra,
            "is_stale": self.is_stale,
        }


@dataclass
class SyncPlan:
    document: ParsedDocument
    ideal: dict[EntryKey, IdealEntry]
    sort_keys: dict[EntryKey, SortKey]
    new: list[EntryKey] = field(default_factory=list)
    updated: list[EntryKey] = field(default_factory=list)
    unchanged: list[EntryKey] = field(default_factory=list)
    extra: list[EntryKey] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def diff(self) -> DiaryDiff:
        return DiaryDiff(
            new=len(self.new),
            updated=len(self.updated),
            unchanged=len(self.unchanged),
            extra=len(self.extra),
        )


@dataclass
class SyncReport:
    path: Path
    session_ids: list[int]
    diff: DiaryDiff
    extras: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    backup: Path | None = None

    def to_detail(self) -> dict:
        return {
            "path": str(self.path),
            **self.diff.to_dict(),
            "extra_entries": list(self.extras),
            "warnings": list(self.warnings),
            "backup": str(self.backup) if self.backup else None,
        }


# Tree edits


def insert_section(doc: ParsedDocument, section: DaySection) -> None:
    """Insert a day section at its chronological position."""
    nl = doc.newline
    last_index = None
    for i, node in enumerate(doc.nodes):
        if not isinstance(node, DaySection):
            continue
        if node.day > section.day:
            doc.nodes[i:i] = [section, TextBlock([nl])]
            return
        last_index = i
    if last_index is not None:
        doc.nodes[last_index + 1 : last_index + 1] = [TextBlock([nl]), section]
        return
    if not doc.render().endswith("\n"):
        doc.nodes.append(TextBlock([nl]))
    doc.nodes.extend([section, TextBlock([nl])])


def insert_entry(
    section: DaySection,
    block: EntryBlock,
    sort_key: SortKey,
    key_of: Callable[[EntryBlock], SortKey],
) -> None:
    """Insert before the first entry that sorts after the new one, else after the last entry."""
    last_index = None
    for i, child in enumerate(section.children):
        if not isinstance(child, EntryBlock):
            continue
        if key_of(child) > sort_key:
            section.children.insert(i, block)
            return
        last_index = i
    if last_index is not None:
        section.children.insert(last_index + 1, block)
    else:
        section.children.append(block)


def new_day_section(day: date, newline: str) -> DaySection:
    return DaySection(
        day=day,
        open_line=day_start_line(day, newline),
        children=[TextBlock([day_heading(day) + newline, newline])],
        close_line=day_end_line(day, newline),
    )


class DiarySynchronizer:
    def __init__(
        self,
        repo: Repository,
        guard: SessionGuard | None = None,
        activity: ActivityLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repo
        self._guard = guard or SESSION_GUARD
        self._activity = activity
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Reading

    def load(self, path: Path) -> ParsedDocument:
        """Parse a managed document, rejecting unmanaged or malformed ones."""
        text = read_document(path)
        try:
            doc = parse_document(text)
        except (MalformedManifest, MalformedMarker) as e:
            raise UnmanagedDocumentRejected(f"{path} is not a valid managed diary: {e}") from e
        if doc is None:
            raise UnmanagedDocumentRejected(
                f"{path} has no devchronicle manifest; convert it into a new managed diary instead"
            )
        return doc

    def plan(self, path: Path) -> SyncPlan:
        """Diff a document against the store without writing anything."""
        return self._plan(self.load(path))

    def read_manifest(self, path: Path) -> Manifest:
        """Parse only the first line of a document."""
        with open(path, encoding="utf-8", newline="") as f:
            first = f.readline()
        if not is_manifest_line(first):
            raise UnmanagedDocumentRejected(f"{path} has no devchronicle manifest")
        return Manifest.from_line(first)

    def is_stale(self, path: Path) -> bool:
        """True when a summary was created after the document's last sync.

        Reads only the manifest line and asks the store for one maximum.
        """
        manifest = self.read_manifest(path)
        latest = self._repo.max_summary_created_at(manifest.sessions)
        if latest is None:
            return False
        if manifest.last_synced_at is None:
            return True
        return as_utc(latest) > manifest.last_synced_at

    # Public operations

    def sync(self, path: Path, cancel: threading.Event | None = None) -> OperationOutcome:
        """Merge the store into a managed document in place and report how it ended."""
        try:
            session_ids = list(self.read_manifest(path).sessions)
        except (DevChronicleError, OSError, UnicodeDecodeError) as e:
            # run_sync reports the same problem as the outcome
            logger.debug(f"Could not read sessions bound to {path}: {e}")
            session_ids = []
        return self._run("diary:sync", session_ids, lambda: self.run_sync(path, cancel))

    def create(
        self,
        path: Path,
        session_ids: list[int],
        options: ManifestOptions | None = None,
        overwrite: bool = False,
        cancel: threading.Event | None = None,
    ) -> OperationOutcome:
        """Write a fresh managed document holding every entry of the given sessions."""
        nl = "\n"
        return self._run(
            "diary:create",
            session_ids,
            lambda: self._write_new(
                Path(path), session_ids, options, [DEFAULT_TITLE + nl, nl], nl, overwrite, cancel
            ),
        )

    def convert(
        self,
        source: Path,
        dest: Path,
        session_ids: list[int],
        options: ManifestOptions | None = None,
        overwrite: bool = False,
        cancel: threading.Event | None = None,
    ) -> OperationOutcome:
        """Write a managed copy of an unmanaged document; the source is left untouched."""
        return self._run(
            "diary:convert",
            session_ids,
            lambda: self._convert(Path(source), Path(dest), session_ids, options, overwrite, cancel),
        )

    def run_sync(self, path: Path, cancel: threading.Event | None = None) -> SyncReport:
        """Synchronize without outcome wrapping. Raises on failure."""
        path = Path(path)
        started_at = self._clock()
        doc = self.load(path)
        session_ids = list(doc.manifest.sessions)
        with self._guard.hold(*session_ids):
            plan = self._plan(doc)
            logger.info(
                f"Syncing {path}: {plan.diff.new} new, {plan.diff.updated} updated, "
                f"{plan.diff.unchanged} unchanged, {plan.diff.extra} extra"
            )
            self._apply(plan, cancel)
            doc.manifest.last_synced_at = started_at
            doc.rewrite_manifest()
            check_canceled(cancel)
            backup = atomic_write(path, doc.render(), cancel)
        return self._report(path, session_ids, plan, backup)

    # Internals

    def _run(
        self, operation: str, session_ids: list[int], fn: Callable[[], SyncReport]
    ) -> OperationOutcome:
        started = time.monotonic()
        try:
            report = fn()
            session_ids = report.session_ids
            outcome = OperationOutcome.ok(**report.to_detail())
        except Canceled:
            logger.warning(f"{operation} canceled")
            outcome = OperationOutcome.canceled()
        except (DevChronicleError, OSError) as e:
            logger.error(f"{operation} failed: {e}")
            outcome = OperationOutcome.failed(str(e))

        if self._activity is not None:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._activity.record(operation, session_ids, outcome, duration_ms)
        return outcome

    def _ideal_entries(
        self, session_ids: list[int], options: ManifestOptions, sessions: dict[int, Session]
    ) -> dict[EntryKey, IdealEntry]:
        summaries = self._repo.get_latest_summaries(session_ids)
        ideal: dict[EntryKey, IdealEntry] = {}
        for day in self._repo.get_days_for_sessions(session_ids):
            session = sessions.get(day.session_id)
            if session is None:
                continue
            summary = summaries.get((day.session_id, day.day))
            key = EntryKey(day.day, day.session_id)
            ideal[key] = IdealEntry(
                key=key,
                summary_stamp=summary.created_at if summary else NO_SUMMARY,
                body=entry_body(session, summary, options),
                sort_key=entry_sort_key(session, options),
            )
        return ideal

    def _plan(self, doc: ParsedDocument) -> SyncPlan:
        manifest = doc.manifest
        existing = {e.key: e for e in doc.entries}
        sessions = self._repo.get_sessions(
            set(manifest.sessions) | {k.session_id for k in existing}
        )
        ideal = self._ideal_entries(manifest.sessions, manifest.options, sessions)

        sort_keys: dict[EntryKey, SortKey] = {}
        for key in existing:
            session = sessions.get(key.session_id)
            sort_keys[key] = (
                entry_sort_key(session, manifest.options) if session else ("", "", key.session_id)
            )
        sort_keys.update({key: entry.sort_key for key, entry in ideal.items()})

        plan = SyncPlan(document=doc, ideal=ideal, sort_keys=sort_keys)
        for session_id in manifest.sessions:
            if session_id not in sessions:
                plan.warnings.append(f"Session {session_id} is bound to this diary but no longer exists")

        for key in sorted(ideal):
            entry = existing.get(key)
            if entry is None:
                plan.new.append(key)
            elif entry.summary_stamp != ideal[key].summary_stamp:
                plan.updated.append(key)
            else:
                plan.unchanged.append(key)
        plan.extra = sorted(key for key in existing if key not in ideal)
        for key in plan.extra:
            plan.warnings.append(f"Entry {key} has no stored evidence; left in place")

        for section in doc.sections:
            keys = [sort_keys[e.key] for e in section.entries]
            if keys != sorted(keys):
                plan.warnings.append(f"Entries for {section.day} are out of order")
        for warning in plan.warnings:
            logger.warning(warning)
        return plan

    def _apply(self, plan: SyncPlan, cancel: threading.Event | None) -> None:
        doc = plan.document
        nl = doc.newline
        work: dict[date, list[IdealEntry]] = {}
        for key in plan.new + plan.updated:
            work.setdefault(key.day, []).append(plan.ideal[key])

        for day in sorted(work):
            check_canceled(cancel)
            section = doc.section(day)
            if section is None:
                section = new_day_section(day, nl)
                insert_section(doc, section)
            existing = {e.key: e for e in section.entries}
            for ideal in sorted(work[day], key=lambda e: e.sort_key):
                entry = existing.get(ideal.key)
                if entry is None:
                    insert_entry(
                        section,
                        ideal.to_block(nl),
                        ideal.sort_key,
                        lambda e: plan.sort_keys[e.key],
                    )
                    plan.sort_keys[ideal.key] = ideal.sort_key
                    continue
                entry.summary_stamp = ideal.summary_stamp
                entry.open_line = entry_start_line(
                    day, ideal.key.session_id, ideal.summary_stamp, line_ending(entry.open_line) or nl
                )
                entry.body = [line + nl for line in ideal.body]

    def _write_new(
        self,
        path: Path,
        session_ids: list[int],
        options: ManifestOptions | None,
        preamble: list[str],
        newline: str,
        overwrite: bool,
        cancel: threading.Event | None,
    ) -> SyncReport:
        if path.exists() and not overwrite:
            raise WriteFailed(f"{path} already exists")
        ids = sorted(set(session_ids))
        if not ids:
            raise SessionNotFound("A diary needs at least one session")
        missing = [i for i in ids if i not in self._repo.get_sessions(ids)]
        if missing:
            raise SessionNotFound(f"Unknown session(s): {', '.join(str(i) for i in missing)}")

        with self._guard.hold(*ids):
            now = self._clock()
            manifest = Manifest(sessions=ids, created_at=now, options=options or ManifestOptions())
            doc = ParsedDocument(
                manifest=manifest,
                manifest_line=manifest.to_line(newline),
                nodes=[TextBlock(list(preamble))] if preamble else [],
                newline=newline,
            )
            plan = self._plan(doc)
            self._apply(plan, cancel)
            manifest.last_synced_at = now
            doc.rewrite_manifest()
            check_canceled(cancel)
            backup = atomic_write(path, doc.render(), cancel)
        logger.info(f"Created diary {path} with {plan.diff.new} entries")
        return self._report(path, ids, plan, backup)

    def _convert(
        self,
        source: Path,
        dest: Path,
        session_ids: list[int],
        options: ManifestOptions | None,
        overwrite: bool,
        cancel: threading.Event | None,
    ) -> SyncReport:
        if source.resolve() == dest.resolve():
            raise UnmanagedDocumentRejected(
                "Conversion writes a new document; choose a destination other than the source"
            )
        lines = split_lines(read_document(source))
        newline = "\r\n" if lines and lines[0].endswith("\r\n") else "\n"
        preamble = [line for line in lines if not line.lstrip().startswith(MARKER_PREFIX)]
        if preamble:
            if not line_ending(preamble[-1]):
                preamble[-1] += newline
            preamble.append(newline)
        return self._write_new(dest, session_ids, options, preamble, newline, overwrite, cancel)

    def _report(
        self, path: Path, session_ids: list[int], plan: SyncPlan, backup: Path | None
    ) -> SyncReport:
        return SyncReport(
            path=path,
            session_ids=list(session_ids),
            diff=plan.diff,
            extras=[str(key) for key in plan.extra],
            warnings=list(plan.warnings),
            backup=backup,
        )
