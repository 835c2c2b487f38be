"""Manual verification: enumerate local history the way `mine` would.

Usage:
    uv run python scripts/check_history.py /path/to/repo [TIMEZONE]

Prints per-day commit counts and churn without touching any database.
"""

from __future__ import annotations

import sys
from pathlib import Path

from devchronicle.errors import DevChronicleError
from devchronicle.git.history import HistoryEnumerator
from devchronicle.mining.aggregator import aggregate_commits
from devchronicle.mining.scope import ScopeResolver
from devchronicle.models import Session


def main() -> None:
    if len(sys.argv) < 2:
        print("ERROR: Provide a repository path")
        sys.exit(1)

    repo_path = Path(sys.argv[1]).resolve()
    tz_name = sys.argv[2] if len(sys.argv) > 2 else ""
    session = Session(id=0, name="check", repo_path=str(repo_path), timezone=tz_name)

    print(f"Enumerating {repo_path}...")
    try:
        plan = ScopeResolver().resolve(session)
        records = list(HistoryEnumerator().enumerate(plan))
    except DevChronicleError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    groups = aggregate_commits(0, records, plan)
    print(f"\n--- {len(records)} commits over {len(groups)} days ---")
    for day in sorted(groups)[-10:]:
        evidence = groups[day]
        print(f"  {day}: {evidence.commit_count} commits, +{evidence.additions}/-{evidence.deletions}")
        for commit in evidence.commits[:3]:
            print(f"    {commit.sha[:8]} {commit.subject}")

    print("\nDone!")


if __name__ == "__main__":
    main()
