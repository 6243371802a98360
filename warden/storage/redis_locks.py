from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import LockError, RedisError

from warden.logging import get_logger
from warden.service.locks import SessionLockTimeout

logger = get_logger(__name__)


class RedisSessionLocks:
    """Per-session rotation locks shared across worker processes.

    The lock key expires after ``timeout`` seconds so a crashed holder
    cannot wedge a session.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        timeout: float = 5.0,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.timeout = timeout
        self.client = client or Redis.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        lock = self.client.lock(
            f"auth:rotate:{session_id}",
            timeout=self.timeout,
            blocking_timeout=self.timeout,
        )
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            logger.error("session_lock_redis_error", session_id=session_id, error=str(exc))
            raise SessionLockTimeout("session lock unavailable") from exc
        if not acquired:
            logger.warning("session_lock_timeout", session_id=session_id)
            raise SessionLockTimeout("session is busy, retry")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                # Key expired while held; the store's compare-and-swap still protects the row
                logger.warning("session_lock_expired_before_release", session_id=session_id)
