from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="When set, per-session rotation locks are held in Redis instead of in-process",
    )
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (in-memory store, no Redis).",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    refresh_reuse_grace_seconds: int = env_field(
        0,
        "REFRESH_REUSE_GRACE_SECONDS",
        description=(
            "Window in which replaying the immediately superseded refresh token is "
            "rejected without revoking the session. 0 disables the window."
        ),
    )
    session_lock_timeout_seconds: float = env_field(5.0, "SESSION_LOCK_TIMEOUT_SECONDS")

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")

    passkey_challenge_ttl_seconds: int = env_field(300, "PASSKEY_CHALLENGE_TTL_SECONDS")
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("Warden", "WEBAUTHN_RP_NAME")
    webauthn_origin: str = env_field("http://localhost:8000", "WEBAUTHN_ORIGIN")

    api_key_max_per_user: int = env_field(100, "API_KEY_MAX_PER_USER")
    api_key_default_ttl_days: int = env_field(36500, "API_KEY_DEFAULT_TTL_DAYS")

    anonymous_retention_days: int = env_field(
        30,
        "ANONYMOUS_RETENTION_DAYS",
        description="Idle days after which housekeeping deactivates an anonymous account; 0 keeps them",
    )

    housekeeping_interval_seconds: int = env_field(
        3600,
        "HOUSEKEEPING_INTERVAL_SECONDS",
        description="Period of the expired session and challenge sweep; 0 disables it",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "lockout_threshold",
        "lockout_minutes",
        "passkey_challenge_ttl_seconds",
        "api_key_max_per_user",
        "api_key_default_ttl_days",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator(
        "refresh_reuse_grace_seconds", "housekeeping_interval_seconds", "anonymous_retention_days"
    )
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(f"must be at least {MIN_SECRET_LENGTH} characters")
            return value
        fs_root = Path(info.data.get("shared_fs_root") or os.getenv("SHARED_FS_ROOT", "/srv/warden"))
        return _load_or_create_secret(fs_root)


MIN_SECRET_LENGTH = 32


def _load_or_create_secret(fs_root: Path) -> str:
    """Return the signing secret kept under ``fs_root``, creating it once.

    Every worker sharing the root signs with the same key, and access tokens
    survive restarts. The file is written to a temp name and renamed so a
    concurrent reader never sees a partial secret.
    """
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
            logger.warning("jwt_secret_too_short_regenerating", path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_name = -1, None
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        os.fchmod(fd, 0o600)
        os.write(fd, generated.encode())
        os.close(fd)
        fd = -1
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        if fd >= 0:
            os.close(fd)
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "cannot persist a JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
