"""
Sequence Tracker - checkpoint ordinals and checklist progress.

Checkpoint sequence numbers start at 1 and increase by one per session. The
store is the source of truth: whenever a session has no cached counter it is
seeded from the highest stored sequence number, so a restart continues where
the last process stopped. Assignment is serialized per (workspace, session)
with an asyncio.Lock. An idle session drops its lock, and its counter too
unless a number was reserved with next_sequence().
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

from .config import settings
from .errors import ConflictError
from .records import ChecklistItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionKey = Tuple[str, str]


def completion_percentage(items: Sequence[ChecklistItem]) -> float:
    """Completed / total * 100, or 0 for an empty checklist."""
    if not items:
        return 0.0
    completed = sum(1 for item in items if item.is_completed)
    return completed / len(items) * 100.0


def checklist_status(items: Sequence[ChecklistItem]) -> str:
    total = len(items)
    completed = sum(1 for item in items if item.is_completed)
    if total == 0 or completed == 0:
        return "Not Started"
    if completed == total:
        return "Completed"
    return f"In Progress ({completed}/{total})"


class SequenceTracker:
    """Hands out per-session checkpoint sequence numbers."""

    MAX_ATTEMPTS = 3

    def __init__(self, store):
        self.store = store
        self._counters: Dict[SessionKey, int] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}
        self._users: Dict[SessionKey, int] = {}

    def _key(self, session_id: str, workspace: Optional[str]) -> SessionKey:
        return (workspace or settings.get_workspace(), session_id)

    @asynccontextmanager
    async def _hold(self, key: SessionKey, keep_counter: bool = False):
        """
        Hold the session lock.

        Once no task holds or waits on it, the lock is dropped, along with
        the cached counter unless ``keep_counter`` is set (a reserved number
        exists only in memory).
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]
                if not keep_counter:
                    self._counters.pop(key, None)

    async def _advance(self, key: SessionKey) -> int:
        if key not in self._counters:
            workspace, session_id = key
            self._counters[key] = await self.store.max_sequence(workspace, session_id)
        self._counters[key] += 1
        return self._counters[key]

    def forget(self, session_id: str, workspace: Optional[str] = None):
        """Drop the cached counter; the next call reseeds from the store."""
        self._counters.pop(self._key(session_id, workspace), None)

    async def next_sequence(self, session_id: str, workspace: Optional[str] = None) -> int:
        """Reserve and return the next sequence number for a session."""
        key = self._key(session_id, workspace)
        async with self._hold(key, keep_counter=True):
            return await self._advance(key)

    async def assign(
        self,
        session_id: str,
        write: Callable[[int], Awaitable[T]],
        workspace: Optional[str] = None,
    ) -> T:
        """
        Run ``write(sequence_number)`` while holding the session lock.

        If the write fails the cached counter is dropped so the number is not
        skipped. A unique-constraint conflict means another process wrote the
        same number; the counter is reseeded from the store and the write is
        retried.
        """
        key = self._key(session_id, workspace)
        async with self._hold(key):
            for attempt in range(1, self.MAX_ATTEMPTS + 1):
                sequence_number = await self._advance(key)
                try:
                    return await write(sequence_number)
                except ConflictError:
                    self._counters.pop(key, None)
                    logger.info(
                        f"Sequence {sequence_number} for session {session_id} already taken "
                        f"(attempt {attempt}/{self.MAX_ATTEMPTS}), reseeding from store"
                    )
                except BaseException:
                    self._counters.pop(key, None)
                    raise

        raise ConflictError(
            f"Could not assign a sequence number for session {session_id} "
            f"after {self.MAX_ATTEMPTS} attempts",
            operation="save_checkpoint",
            key=session_id,
        )
