"""Manifest and marker grammar of a managed diary document.

A managed document starts with a single manifest line:

    <!-- devchronicle:manifest {"created_at":...,"kind":"single-session",...} -->

and contains day sections and entries delimited by marker lines:

    <!-- devchronicle:day-start date=2026-02-01 -->
    ## 2026-02-01 (Sunday)
    <!-- devchronicle:entry-start date=2026-02-01 session=7 summary=none -->
    ...entry body...
    <!-- devchronicle:entry-end date=2026-02-01 session=7 -->
    <!-- devchronicle:day-end date=2026-02-01 -->

Everything else is user text. The parser keeps every line with its original
line ending, so rendering an unmodified parse reproduces the input exactly.
A document whose first line is not a manifest is unmanaged (parse returns
None); a structurally invalid one raises MalformedManifest/MalformedMarker.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import NamedTuple, Union

from devchronicle.errors import MalformedManifest, MalformedMarker

MARKER_PREFIX = "<!-- devchronicle:"
MANIFEST_PREFIX = "<!-- devchronicle:manifest "
MARKER_SUFFIX = " -->"
SCHEMA_VERSION = 1
NO_SUMMARY = "none"
SUMMARY_POLICY_LATEST = "latest_created"

MARKER_RE = re.compile(
    r"^<!-- devchronicle:(?P<kind>[a-z-]+)(?P<attrs>(?: [a-z]+=\S+)*) -->[ \t]*$"
)
MARKER_ATTRS: dict[str, tuple[str, ...]] = {
    "day-start": ("date",),
    "day-end": ("date",),
    "entry-start": ("date", "session", "summary"),
    "entry-end": ("date", "session"),
}


class DocumentKind(str, Enum):
    SINGLE_SESSION = "single-session"
    MULTI_SESSION = "multi-session"


@dataclass
class ManifestOptions:
    hide_local_paths: bool = True
    include_placeholders: bool = True
    summary_policy: str = SUMMARY_POLICY_LATEST

    def to_dict(self) -> dict:
        return {
            "hide_local_paths": self.hide_local_paths,
            "include_placeholders": self.include_placeholders,
            "summary_policy": self.summary_policy,
        }


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_timestamp(data: dict, key: str, required: bool) -> datetime | None:
    raw = data.get(key)
    if raw is None:
        if required:
            raise MalformedManifest(f"Manifest is missing {key}")
        return None
    if not isinstance(raw, str):
        raise MalformedManifest(f"Manifest {key} must be a timestamp string")
    try:
        value = datetime.fromisoformat(raw)
    except ValueError as e:
        raise MalformedManifest(f"Manifest {key} is not a timestamp: {raw!r}") from e
    return as_utc(value)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Manifest:
    sessions: list[int]
    created_at: datetime
    last_synced_at: datetime | None = None
    options: ManifestOptions = field(default_factory=ManifestOptions)
    schema: int = SCHEMA_VERSION

    @property
    def kind(self) -> DocumentKind:
        if len(self.sessions) == 1:
            return DocumentKind.SINGLE_SESSION
        return DocumentKind.MULTI_SESSION

    def to_line(self, newline: str = "\n") -> str:
        data = {
            "schema": self.schema,
            "kind": self.kind.value,
            "sessions": sorted(self.sessions),
            "options": self.options.to_dict(),
            "created_at": _timestamp(self.created_at),
            "last_synced_at": _timestamp(self.last_synced_at),
        }
        payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return f"{MANIFEST_PREFIX}{payload}{MARKER_SUFFIX}{newline}"

    @classmethod
    def from_line(cls, line: str) -> Manifest:
        content = line.rstrip("\r\n")
        if not content.startswith(MANIFEST_PREFIX) or not content.endswith(MARKER_SUFFIX):
            raise MalformedManifest("First line is not a manifest record")
        payload = content[len(MANIFEST_PREFIX) : -len(MARKER_SUFFIX)]
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedManifest(f"Manifest is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedManifest("Manifest must be a JSON object")

        schema = data.get("schema")
        if schema != SCHEMA_VERSION:
            raise MalformedManifest(f"Unsupported manifest schema {schema!r}")

        sessions = data.get("sessions")
        if (
            not isinstance(sessions, list)
            or not sessions
            or not all(isinstance(s, int) and not isinstance(s, bool) for s in sessions)
            or len(set(sessions)) != len(sessions)
        ):
            raise MalformedManifest("Manifest sessions must be a non-empty list of unique ids")

        options_data = data.get("options", {})
        if not isinstance(options_data, dict):
            raise MalformedManifest("Manifest options must be an object")
        hide = options_data.get("hide_local_paths", True)
        placeholders = options_data.get("include_placeholders", True)
        policy = options_data.get("summary_policy", SUMMARY_POLICY_LATEST)
        if not isinstance(hide, bool) or not isinstance(placeholders, bool):
            raise MalformedManifest("Manifest formatting flags must be booleans")
        if policy != SUMMARY_POLICY_LATEST:
            raise MalformedManifest(f"Unsupported summary policy {policy!r}")

        manifest = cls(
            sessions=sorted(sessions),
            created_at=_parse_timestamp(data, "created_at", required=True),
            last_synced_at=_parse_timestamp(data, "last_synced_at", required=False),
            options=ManifestOptions(
                hide_local_paths=hide, include_placeholders=placeholders, summary_policy=policy
            ),
            schema=schema,
        )
        if data.get("kind") != manifest.kind.value:
            raise MalformedManifest(
                f"Manifest kind {data.get('kind')!r} does not match {len(sessions)} bound session(s)"
            )
        return manifest


def is_manifest_line(line: str) -> bool:
    return line.startswith(MANIFEST_PREFIX)


# Marker lines


def day_start_line(day: date, newline: str = "\n") -> str:
    return f"{MARKER_PREFIX}day-start date={day.isoformat()}{MARKER_SUFFIX}{newline}"


def day_end_line(day: date, newline: str = "\n") -> str:
    return f"{MARKER_PREFIX}day-end date={day.isoformat()}{MARKER_SUFFIX}{newline}"


def entry_start_line(day: date, session_id: int, summary_stamp: str, newline: str = "\n") -> str:
    return (
        f"{MARKER_PREFIX}entry-start date={day.isoformat()} session={session_id} "
        f"summary={summary_stamp}{MARKER_SUFFIX}{newline}"
    )


def entry_end_line(day: date, session_id: int, newline: str = "\n") -> str:
    return (
        f"{MARKER_PREFIX}entry-end date={day.isoformat()} session={session_id}"
        f"{MARKER_SUFFIX}{newline}"
    )


def line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith("\n"):
        return "\n"
    return ""


def split_lines(text: str) -> list[str]:
    """Split on LF only, keeping line endings (a CR stays with its line)."""
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def parse_marker(content: str, line_no: int) -> tuple[str, dict]:
    """Parse a marker line (without line ending) into its kind and typed attributes."""
    match = MARKER_RE.match(content)
    if not match:
        raise MalformedMarker(f"Unrecognized marker: {content.strip()!r}", line_no)
    kind = match.group("kind")
    if kind not in MARKER_ATTRS:
        raise MalformedMarker(f"Unexpected {kind} marker", line_no)

    raw: dict[str, str] = {}
    for token in match.group("attrs").split():
        key, _, value = token.partition("=")
        if key in raw:
            raise MalformedMarker(f"Duplicate attribute {key}", line_no)
        raw[key] = value
    expected = MARKER_ATTRS[kind]
    if set(raw) != set(expected):
        raise MalformedMarker(
            f"{kind} marker needs attributes {', '.join(expected)}", line_no
        )

    attrs: dict = {}
    try:
        attrs["date"] = date.fromisoformat(raw["date"])
    except ValueError as e:
        raise MalformedMarker(f"Invalid date {raw['date']!r}", line_no) from e
    if "session" in raw:
        if not raw["session"].isdigit():
            raise MalformedMarker(f"Invalid session id {raw['session']!r}", line_no)
        attrs["session"] = int(raw["session"])
    if "summary" in raw:
        stamp = raw["summary"]
        if stamp != NO_SUMMARY:
            try:
                datetime.fromisoformat(stamp)
            except ValueError as e:
                raise MalformedMarker(f"Invalid summary timestamp {stamp!r}", line_no) from e
        attrs["summary"] = stamp
    return kind, attrs


# Document tree


class EntryKey(NamedTuple):
    day: date
    session_id: int

    def __str__(self) -> str:
        return f"{self.day.isoformat()}/session {self.session_id}"


@dataclass
class TextBlock:
    """Opaque user text, preserved byte for byte."""

    lines: list[str]

    def render(self) -> str:
        return "".join(self.lines)


@dataclass
class EntryBlock:
    day: date
    session_id: int
    summary_stamp: str
    open_line: str
    body: list[str] = field(default_factory=list)
    close_line: str = ""

    @property
    def key(self) -> EntryKey:
        return EntryKey(self.day, self.session_id)

    def render(self) -> str:
        return self.open_line + "".join(self.body) + self.close_line


@dataclass
class DaySection:
    day: date
    open_line: str
    children: list[Union[TextBlock, EntryBlock]] = field(default_factory=list)
    close_line: str = ""

    @property
    def entries(self) -> list[EntryBlock]:
        return [c for c in self.children if isinstance(c, EntryBlock)]

    def render(self) -> str:
        return self.open_line + "".join(c.render() for c in self.children) + self.close_line


@dataclass
class ParsedDocument:
    manifest: Manifest
    manifest_line: str
    nodes: list[Union[TextBlock, DaySection]] = field(default_factory=list)
    newline: str = "\n"

    @property
    def sections(self) -> list[DaySection]:
        return [n for n in self.nodes if isinstance(n, DaySection)]

    @property
    def entries(self) -> list[EntryBlock]:
        return [e for s in self.sections for e in s.entries]

    def section(self, day: date) -> DaySection | None:
        for s in self.sections:
            if s.day == day:
                return s
        return None

    def entry(self, key: EntryKey) -> EntryBlock | None:
        for e in self.entries:
            if e.key == key:
                return e
        return None

    def rewrite_manifest(self) -> None:
        """Re-serialize the manifest into the first line, keeping its line ending."""
        self.manifest_line = self.manifest.to_line(line_ending(self.manifest_line))

    def render(self) -> str:
        return self.manifest_line + "".join(n.render() for n in self.nodes)


def parse_document(text: str) -> ParsedDocument | None:
    """Parse a document into its tree; None when the document is unmanaged."""
    lines = split_lines(text)
    if not lines or not is_manifest_line(lines[0]):
        return None

    manifest = Manifest.from_line(lines[0])
    doc = ParsedDocument(
        manifest=manifest,
        manifest_line=lines[0],
        newline="\r\n" if lines[0].endswith("\r\n") else "\n",
    )

    buffer: list[str] = []
    section: DaySection | None = None
    entry: EntryBlock | None = None
    seen_keys: set[EntryKey] = set()
    last_day: date | None = None

    def flush(target: list) -> None:
        if buffer:
            target.append(TextBlock(list(buffer)))
            buffer.clear()

    for line_no, line in enumerate(lines[1:], start=2):
        content = line.rstrip("\r\n")
        if not content.lstrip().startswith(MARKER_PREFIX):
            if entry is not None:
                entry.body.append(line)
            else:
                buffer.append(line)
            continue

        kind, attrs = parse_marker(content, line_no)
        day = attrs["date"]

        if kind == "day-start":
            if section is not None:
                raise MalformedMarker(f"Day {day} opened inside day {section.day}", line_no)
            if last_day is not None and day <= last_day:
                raise MalformedMarker(
                    f"Day {day} is duplicated or out of order after {last_day}", line_no
                )
            flush(doc.nodes)
            section = DaySection(day=day, open_line=line)

        elif kind == "day-end":
            if section is None:
                raise MalformedMarker(f"Day {day} closed without being opened", line_no)
            if entry is not None:
                raise MalformedMarker(f"Day {day} closed inside an open entry", line_no)
            if day != section.day:
                raise MalformedMarker(f"Day {section.day} closed with date {day}", line_no)
            flush(section.children)
            section.close_line = line
            doc.nodes.append(section)
            last_day = section.day
            section = None

        elif kind == "entry-start":
            if section is None:
                raise MalformedMarker("Entry outside a day section", line_no)
            if entry is not None:
                raise MalformedMarker("Entry opened inside another entry", line_no)
            if day != section.day:
                raise MalformedMarker(f"Entry for {day} inside day {section.day}", line_no)
            key = EntryKey(day, attrs["session"])
            if key in seen_keys:
                raise MalformedMarker(f"Duplicate entry {key}", line_no)
            flush(section.children)
            entry = EntryBlock(
                day=day,
                session_id=attrs["session"],
                summary_stamp=attrs["summary"],
                open_line=line,
            )

        else:  # entry-end
            if entry is None or section is None:
                raise MalformedMarker("Entry closed without being opened", line_no)
            if EntryKey(day, attrs["session"]) != entry.key:
                raise MalformedMarker(f"Entry {entry.key} closed with a different key", line_no)
            entry.close_line = line
            section.children.append(entry)
            seen_keys.add(entry.key)
            entry = None

    if entry is not None:
        raise MalformedMarker(f"Entry {entry.key} is never closed")
    if section is not None:
        raise MalformedMarker(f"Day {section.day} is never closed")
    flush(doc.nodes)
    return doc
