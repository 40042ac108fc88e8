"""In-memory session table with compare-and-set updates."""

from __future__ import annotations

import copy
import threading

from core.interfaces import ISessionStore
from core.models import Session


class InMemorySessionStore(ISessionStore):
    """
    Keyed by caller id. compare_and_set stores only when the stored version equals
    expected_version (0 means "no session yet"); the stored copy gets version + 1.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def get(self, caller_id: str) -> Session | None:
        with self._lock:
            s = self._sessions.get(caller_id)
            return copy.deepcopy(s) if s is not None else None

    def compare_and_set(self, caller_id: str, expected_version: int, session: Session) -> bool:
        with self._lock:
            current = self._sessions.get(caller_id)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                return False
            stored = copy.deepcopy(session)
            stored.version = expected_version + 1
            self._sessions[caller_id] = stored
            return True

    def delete(self, caller_id: str) -> None:
        with self._lock:
            self._sessions.pop(caller_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
