from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.accounts import AccountService
from warden.service.api_keys import ApiKeyService
from warden.service.auth import AuthService
from warden.service.locks import InProcessSessionLocks
from warden.service.passkeys import PasskeyService
from warden.service.roles import ensure_system_roles
from warden.service.tokens import TokenCodec
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_locks import RedisSessionLocks

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, *, bootstrap: bool = True):
        self.settings = settings or get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        logger.info(
            "runtime_init_started",
            use_memory_store=use_memory,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore]
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if use_memory
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if use_memory else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.locks: Union[InProcessSessionLocks, RedisSessionLocks] = InProcessSessionLocks(
            self.settings.session_lock_timeout_seconds
        )
        if self.settings.redis_url:
            try:
                redis_locks = RedisSessionLocks(
                    self.settings.redis_url, timeout=self.settings.session_lock_timeout_seconds
                )
                redis_locks.verify_connection()
                self.locks = redis_locks
            except RedisError as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is configured but unreachable; rotation locks cannot be shared "
                        "across workers. Unset REDIS_URL to use in-process locks."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    mode="TEST_MODE",
                )

        self.codec = TokenCodec(self.settings)
        self.accounts = AccountService(self.store, self.settings)
        self.api_keys = ApiKeyService(self.store, self.settings, self.codec)
        self.auth = AuthService(
            self.store,
            self.settings,
            self.accounts,
            self.api_keys,
            locks=self.locks,
            codec=self.codec,
        )
        self.passkeys = PasskeyService(self.store, self.settings, self.auth)
        if bootstrap:
            self.bootstrap()
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            lock_type=type(self.locks).__name__,
        )

    def bootstrap(self) -> None:
        """Create the schema (Postgres) and seed the built-in roles."""
        if isinstance(self.store, PostgresStore):
            self.store.ensure_schema()
        ensure_system_roles(self.store)

    def housekeeping(self) -> dict:
        """Drop expired sessions and passkey challenges, retire idle guests."""
        return {
            "sessions": self.auth.delete_expired_sessions(),
            "challenges": self.passkeys.delete_expired_challenges(),
            "anonymous": self.accounts.deactivate_stale_anonymous(),
        }

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if isinstance(self.locks, RedisSessionLocks):
            self.locks.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking so the common path does not take the lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
