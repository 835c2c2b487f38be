"""Groups a day's commits into work units for prompt compression.

Commits are grouped by the top-level folder of the files they touch, then,
for busy folders, by a keyword category inferred from the subject line.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from devchronicle.models import Commit

KEYWORD_MAP: dict[str, list[str]] = {
    "bugfix": ["fix", "bug", "crash", "null", "edge", "error", "issue"],
    "performance": ["perf", "speed", "cache", "memory", "optimize"],
    "refactor": ["refactor", "cleanup", "rename", "restructure"],
    "testing": ["test", "ci", "coverage", "spec"],
    "ui": ["ui", "toolbar", "dialog", "button", "view"],
    "documentation": ["doc", "readme", "comment", "guide"],
}

SPLIT_THRESHOLD = 10  # folders with more commits get split by category


@dataclass
class WorkUnit:
    folder: str
    category: str
    commits: list[Commit] = field(default_factory=list)

    @property
    def additions(self) -> int:
        return sum(c.additions for c in self.commits)

    @property
    def deletions(self) -> int:
        return sum(c.deletions for c in self.commits)


def top_level_folder(path: str) -> str:
    normalized = path.strip().replace("\\", "/")
    head, sep, _ = normalized.partition("/")
    return head if sep and head else "root"


def categorize(subject: str) -> str:
    lowered = subject.lower()
    for category, keywords in KEYWORD_MAP.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return "general"


def _by_size(commits: list[Commit]) -> list[Commit]:
    return sorted(commits, key=lambda c: (-(c.additions + c.deletions), c.sha))


def cluster_commits(commits: list[Commit]) -> list[WorkUnit]:
    folders: dict[str, list[Commit]] = {}
    for commit in commits:
        touched = {top_level_folder(f.path) for f in commit.files} or {"root"}
        for folder in sorted(touched):
            folders.setdefault(folder, []).append(commit)

    units: list[WorkUnit] = []
    for folder, folder_commits in sorted(folders.items(), key=lambda kv: (-len(kv[1]), kv[0])):
        if len(folder_commits) > SPLIT_THRESHOLD:
            categories: dict[str, list[Commit]] = {}
            for commit in folder_commits:
                categories.setdefault(categorize(commit.subject), []).append(commit)
            for category, grouped in categories.items():
                units.append(WorkUnit(folder=folder, category=category, commits=_by_size(grouped)))
        else:
            category = categorize(" ".join(c.subject for c in folder_commits))
            units.append(WorkUnit(folder=folder, category=category, commits=_by_size(folder_commits)))

    return sorted(units, key=lambda u: (-(u.additions + u.deletions), u.folder, u.category))


def describe_work_unit(unit: WorkUnit, max_commits: int = 5) -> str:
    lines = [
        f"[{unit.folder}] {unit.category} ({len(unit.commits)} commits, "
        f"+{unit.additions}/-{unit.deletions}):"
    ]
    for commit in unit.commits[:max_commits]:
        lines.append(
            f"  - {commit.sha[:7]}: {commit.subject} (+{commit.additions}/-{commit.deletions})"
        )
    remaining = len(unit.commits) - max_commits
    if remaining > 0:
        lines.append(f"  ... and {remaining} more commits")
    return "\n".join(lines)
