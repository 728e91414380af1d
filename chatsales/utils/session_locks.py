# chatsales/utils/session_locks.py
"""
Per-session mutual exclusion for chat turns.

A turn reads the lead, runs extraction against it and writes it back, so two
turns of the same session must never interleave. Each session gets its own
asyncio.Lock; unrelated sessions never wait on each other.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional

from chatsales.utils.logger import logger


@dataclass
class _SessionLockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # holders plus waiters
    last_used: float = field(default_factory=time.monotonic)


class SessionLockRegistry:
    """
    Lock arena keyed by session id.

    Entries are reference counted so an idle lock can be dropped without
    ever handing two coroutines different locks for the same session.
    """

    def __init__(self, max_locks: int = 5000):
        self.max_locks = max_locks
        self._entries: Dict[str, _SessionLockEntry] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(session_id)
        if entry is None:
            if len(self._entries) >= self.max_locks:
                self._cleanup_idle()
            entry = _SessionLockEntry()
            self._entries[session_id] = entry

        entry.users += 1
        waited_from = time.monotonic()
        try:
            async with entry.lock:
                waited = time.monotonic() - waited_from
                if waited > 0.05:
                    logger.debug(f"[SessionLocks] {session_id} waited {waited * 1000:.0f}ms for previous turn")
                yield
        finally:
            entry.users -= 1
            entry.last_used = time.monotonic()

    def is_locked(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._entries)

    def _cleanup_idle(self) -> int:
        """Drop entries nobody holds or waits on, oldest first."""
        idle = sorted(
            (sid for sid, e in self._entries.items() if e.users == 0),
            key=lambda sid: self._entries[sid].last_used,
        )
        for sid in idle:
            del self._entries[sid]
        if idle:
            logger.info(f"[SessionLocks] Cleaned up {len(idle)} idle session locks")
        if len(self._entries) >= self.max_locks:
            logger.warning(f"[SessionLocks] {len(self._entries)} sessions busy; exceeding soft cap {self.max_locks}")
        return len(idle)

    def cleanup_all(self) -> int:
        """Drop every idle entry. Call on shutdown."""
        count = len(self._entries)
        self._entries = {sid: e for sid, e in self._entries.items() if e.users > 0}
        return count - len(self._entries)


_registry: Optional[SessionLockRegistry] = None


def get_session_locks() -> SessionLockRegistry:
    global _registry
    if _registry is None:
        from chatsales.config import settings
        _registry = SessionLockRegistry(max_locks=settings.MAX_SESSION_LOCKS)
    return _registry
