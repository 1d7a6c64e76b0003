"""
Session state and change log, injected into the engine by the caller.

The engine never reaches a process-wide cache: whatever store the caller
passes in is the only place session state lives.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

from .models import AppliedChange


class SessionStore(Protocol):
    def get(self, session_id: str, key: str) -> Optional[Any]:
        ...

    def set(self, session_id: str, key: str, value: Any) -> None:
        ...

    def delete(self, session_id: str, key: str) -> None:
        ...

    def clear(self, session_id: str) -> None:
        ...

    def append_change(self, session_id: str, change: AppliedChange) -> None:
        ...

    def changes(self, session_id: str) -> List[AppliedChange]:
        ...


class InMemorySessionStore:
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._state: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self._changes: Dict[str, List[AppliedChange]] = defaultdict(list)
        self._lock = threading.Lock()

    def get(self, session_id: str, key: str) -> Optional[Any]:
        with self._lock:
            return self._state.get(session_id, {}).get(key)

    def set(self, session_id: str, key: str, value: Any) -> None:
        with self._lock:
            self._state[session_id][key] = value

    def delete(self, session_id: str, key: str) -> None:
        with self._lock:
            self._state.get(session_id, {}).pop(key, None)

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._state.pop(session_id, None)
            self._changes.pop(session_id, None)

    def append_change(self, session_id: str, change: AppliedChange) -> None:
        with self._lock:
            self._changes[session_id].append(change)

    def changes(self, session_id: str) -> List[AppliedChange]:
        with self._lock:
            return list(self._changes.get(session_id, []))


def snapshot_key(path: str) -> str:
    return f"snapshot:{path}"


def recent_changes_summary(store: SessionStore, session_id: str, limit: int = 5) -> str:
    """Render the last few changes as conversation context for the classifier."""
    changes = store.changes(session_id)
    if not changes:
        return ""

    lines = ["RECENT MODIFICATIONS IN THIS SESSION:"]
    for ch in changes[-limit:]:
        lines.append(f"- {ch.path}: {ch.description or ch.strategy} ({ch.replacement_count} replacements)")
    lines.append(f"Total files modified: {len({c.path for c in changes})}")
    return "\n".join(lines)
