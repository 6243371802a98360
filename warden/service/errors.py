from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An expected failure that the HTTP layer renders as an error envelope.

    Subclasses pin ``status_code`` and the stable ``error_code`` clients
    switch on (``validation_error``, ``unauthorized``, ``forbidden``,
    ``not_found``, ``conflict``, ``server_error``, ``session_busy``).
    Either may be overridden per instance for the odd case such as an
    illegal admin transition reported as 409.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.message!r})"


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Well-formed request that cannot be honoured in the current state."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Also used for resources owned by another account, so ids cannot be enumerated."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class _DomainErrorMixin:
    """Domain rejections carry a fixed public message.

    The constructor argument is the internal ``reason``, which separates
    e.g. theft detection from plain expiry in the logs. Responses only
    ever show ``public_message``.
    """

    public_message: str = "request rejected"

    def __init__(self, reason: str = "", *, detail: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        super().__init__(self.public_message, detail=detail, **kwargs)  # type: ignore[call-arg]
        self.reason = reason or self.public_message


class AccountStateViolation(_DomainErrorMixin, ForbiddenError):
    public_message = "account is not permitted to perform this action"


class InvalidCredential(_DomainErrorMixin, AuthenticationError):
    """Wrong password, bad signature or counter regression; never reveals whether the account exists."""

    public_message = "invalid credentials"


class RefreshTokenInvalid(_DomainErrorMixin, AuthenticationError):
    """Unknown, expired, revoked and replayed refresh tokens all raise this."""

    public_message = "invalid refresh token"


class ChallengeInvalid(_DomainErrorMixin, BadRequestError):
    public_message = "invalid or expired challenge"


class PermissionDenied(_DomainErrorMixin, ForbiddenError):
    public_message = "insufficient scope"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "AccountStateViolation",
    "InvalidCredential",
    "RefreshTokenInvalid",
    "ChallengeInvalid",
    "PermissionDenied",
]
