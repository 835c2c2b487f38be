"""Per-session single-flight guard.

Mining and diary synchronization for the same session must never overlap,
and neither may run twice at once. Both share one SessionGuard; a request
for a session that is already held is rejected with SessionBusy rather than
queued.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from devchronicle.errors import SessionBusy


class SessionGuard:
    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, session_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def is_held(self, session_id: int) -> bool:
        return self._lock_for(session_id).locked()

    @contextmanager
    def hold(self, *session_ids: int) -> Iterator[None]:
        """Hold every given session for the duration of the block."""
        acquired: list[threading.Lock] = []
        try:
            # Sorted acquisition keeps multi-session holders from deadlocking
            for session_id in sorted(set(session_ids)):
                lock = self._lock_for(session_id)
                if not lock.acquire(blocking=False):
                    raise SessionBusy(f"Session {session_id} is busy with another operation")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


SESSION_GUARD = SessionGuard()
