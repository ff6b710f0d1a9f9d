"""
In-memory session registry.

Owns the session_id -> SessionHandle mapping for one manager instance and a
per-session asyncio.Lock. Check-then-act sequences (create, kill, eviction)
hold the session lock so two interleaved requests for the same session
cannot both pass an existence check.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from models.sandbox import SessionHandle

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Process-local registry of live sandbox handles."""

    def __init__(self) -> None:
        self._handles: dict[str, SessionHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}  # holders + waiters per lock

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._handles

    def get(self, session_id: str) -> Optional[SessionHandle]:
        return self._handles.get(session_id)

    def find_by_sandbox_id(self, sandbox_id: str) -> Optional[SessionHandle]:
        for handle in self._handles.values():
            if handle.sandbox_id == sandbox_id:
                return handle
        return None

    def insert_if_absent(self, handle: SessionHandle) -> bool:
        """Insert the handle unless the session is already tracked."""
        if handle.session_id in self._handles:
            return False
        self._handles[handle.session_id] = handle
        logger.debug(f"[SessionRegistry] Tracking session {handle.session_id} -> {handle.sandbox_id}")
        return True

    def pop(self, session_id: str) -> Optional[SessionHandle]:
        return self._handles.pop(session_id, None)

    def handles(self) -> list[SessionHandle]:
        """Snapshot of the tracked handles, safe to iterate across awaits."""
        return list(self._handles.values())

    def session_ids(self) -> list[str]:
        return list(self._handles.keys())

    def locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """
        Hold the per-session lock.

        The lock entry lives only while someone holds or waits for it, so
        ids that were never created do not accumulate.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                del self._locks[session_id]
