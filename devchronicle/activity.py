"""Activity log for long-running operations.

Every mining run, summarization pass and diary synchronization appends one
JSON line describing how it ended, so a human can audit what touched the
evidence store and the diary. The log is a sink object handed to the
components that write to it; nothing in devchronicle opens it implicitly.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from devchronicle.models import OperationOutcome

logger = logging.getLogger(__name__)

REASON_PREVIEW_LIMIT = 500


class ActivityLog:
    """Append-only JSONL operation log."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def record(
        self,
        operation: str,
        session_ids: list[int],
        outcome: OperationOutcome,
        duration_ms: int,
    ) -> None:
        """Append an entry. Write failures are logged, never raised."""
        entry = {
            "timestamp": datetime.now().isoformat(),
            "operation": operation,
            "session_ids": sorted(session_ids),
            "status": outcome.status.value,
            "reason": outcome.reason[:REASON_PREVIEW_LIMIT],
            "detail": outcome.detail,
            "duration_ms": duration_ms,
        }
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write activity log {self.path}: {e}")


def read_activity_log(
    log_path: Path,
    limit: int = 20,
    operation: str | None = None,
) -> list[dict]:
    """Read recent activity log entries.

    Returns entries in reverse chronological order (most recent first).
    """
    path = Path(log_path)
    if not path.exists():
        return []

    entries: list[dict] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue

        if operation and entry.get("operation") != operation:
            continue

        entries.append(entry)

    entries.reverse()
    return entries[:limit]
