"""
Session edit log.

The agent records uncommitted file changes per session; the orchestrator only
reads them.
"""

import threading
from typing import Dict, List, Protocol, runtime_checkable

from livepreview.schemas import PendingEdit


@runtime_checkable
class EditLog(Protocol):
    """Ordered, session-scoped list of pending edits."""

    async def list_edits(self, session_id: str) -> List[PendingEdit]:
        ...


class InMemoryEditLog:
    """Edit log kept in process memory; used by the panel and in tests."""

    def __init__(self):
        self._edits: Dict[str, List[PendingEdit]] = {}
        self._lock = threading.Lock()

    def record(self, session_id: str, path: str, content: str) -> PendingEdit:
        edit = PendingEdit(path=path, content=content)
        with self._lock:
            self._edits.setdefault(session_id, []).append(edit)
        return edit

    def revert(self, session_id: str, path: str) -> int:
        """
        Mark every edit of ``path`` in the session as reverted.

        Returns:
            Number of edits that changed
        """
        changed = 0
        with self._lock:
            entries = self._edits.get(session_id, [])
            for index, edit in enumerate(entries):
                if edit.path == path and not edit.reverted:
                    entries[index] = edit.model_copy(update={"reverted": True})
                    changed += 1
        return changed

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._edits.pop(session_id, None)

    async def list_edits(self, session_id: str) -> List[PendingEdit]:
        with self._lock:
            return list(self._edits.get(session_id, []))
