from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from warden.api.schemas import Envelope, ErrorBody
from warden.logging import get_logger
from warden.service.errors import ServiceError
from warden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "session_busy",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _challenge_headers(status_code: int) -> Optional[Dict[str, str]]:
    if status_code == 401:
        return {"WWW-Authenticate": "Bearer"}
    if status_code == 503:
        return {"Retry-After": "1"}
    return None


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    envelope = Envelope(status="error", error=body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=_challenge_headers(status_code),
    )


def _log_failure(event: str, request: Request, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the ``{"status": "error", ...}`` envelope.

    Domain errors keep their internal ``reason`` in the log only. Unknown
    exceptions are reported as a bare ``server_error`` with no detail.
    """

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure("constraint_violation", request, 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            "service_error",
            request,
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            reason=getattr(exc, "reason", None),
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        _log_failure("request_validation_error", request, 400, validation_errors=errors)
        return _error_response(400, "invalid request", errors, code="validation_error")

    # Registered on Starlette's class so router-level 404/405 are enveloped too.
    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        _log_failure("http_error", request, exc.status_code, message=message)
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
