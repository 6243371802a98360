from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Protocol

from warden.logging import get_logger
from warden.service.errors import ServerError

logger = get_logger(__name__)


class SessionLockTimeout(ServerError):
    """Another rotation for the same session held the lock for too long."""

    status_code = 503
    error_code = "session_busy"


class SessionLocks(Protocol):
    def hold(self, session_id: str):  # pragma: no cover - protocol
        ...


class InProcessSessionLocks:
    """One mutex per session id, shared by every thread in this process.

    Entries are reference counted so idle sessions do not accumulate.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    def _checkout(self, session_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[session_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, session_id: str) -> None:
        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[session_id]

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        lock = self._checkout(session_id)
        try:
            if not lock.acquire(timeout=self.timeout):
                logger.warning("session_lock_timeout", session_id=session_id)
                raise SessionLockTimeout("session is busy, retry")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(session_id)

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)
