from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys whose values are credential material; never logged, not even partially.
_CREDENTIAL_MARKERS = ("password", "secret", "token", "api_key", "authorization", "credential", "signature")
# Keys holding personal data; partially masked so operators can still correlate.
_PII_MARKERS = ("email", "ip_addr", "user_agent")
_MASK = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current context, generating one if needed."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_pii(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _scrub(key: str, value: Any) -> Any:
    lower = key.lower()
    # Hash prefixes, ids and type tags are lookup handles, not secrets.
    if lower.endswith(("_prefix", "_id", "_ids", "_count", "_type", "_name")):
        return value
    if any(marker in lower for marker in _CREDENTIAL_MARKERS):
        return _MASK if value else value
    if isinstance(value, str) and any(marker in lower for marker in _PII_MARKERS):
        return _mask_pii(value)
    if isinstance(value, Mapping):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    return value


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Strip credential material and mask personal data before rendering.

    Nested mappings (request bodies, error details) are walked as well, so a
    ``detail={"refresh_token": ...}`` field is caught the same way as a
    top-level keyword.
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: minimum level name; unknown names fall back to INFO.
        json_output: render JSON lines (the production format).
        development_mode: render coloured console output instead of JSON.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    level = logging.getLevelName(log_level.upper())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level if isinstance(level, int) else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Emit an audit event on the ``security`` logger.

    Theft detection, challenge reuse and lockouts go through here so they can
    be routed separately from ordinary request logs.
    """
    log = logger or get_logger("security")
    log.warning(event, audit=True, **fields)
