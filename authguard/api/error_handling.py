from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authguard.api.schemas import Envelope, ErrorBody
from authguard.logging import get_logger
from authguard.service.errors import CaptchaRequired, LimitExceeded, ServiceError
from authguard.storage.errors import ConstraintViolation, StoreUnavailable
from authguard.storage.models import RateLimitResult

logger = get_logger(__name__)

# Fallback codes when a handler has no more specific one
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details)
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=headers,
    )


def _log_error(request: Request, event: str, status_code: int, **fields: Any) -> None:
    """Warn for client errors and expected throttling, error for 5xx."""
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def rate_limit_headers(result: RateLimitResult, *, blocked: bool = False) -> dict[str, str]:
    """X-RateLimit-* headers for a limiter state; Retry-After only when blocked."""
    reset_at = datetime.now(timezone.utc) + timedelta(milliseconds=result.ms_before_next)
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.remaining_points)),
        "X-RateLimit-Reset": reset_at.isoformat(),
    }
    if blocked:
        headers["Retry-After"] = str(round(result.ms_before_next / 1000))
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain, storage and framework errors as the error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_error(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def on_store_unavailable(request: Request, exc: StoreUnavailable):
        # Connection details are logged, never returned
        _log_error(request, "store_unavailable", 503, error=str(exc))
        return _error_response(503, "Service temporarily unavailable", code="service_unavailable")

    @app.exception_handler(LimitExceeded)
    async def on_limit_exceeded(request: Request, exc: LimitExceeded):
        _log_error(request, "limit_exceeded", exc.status_code, error_code=exc.error_code)
        if isinstance(exc, CaptchaRequired):
            return _error_response(
                exc.status_code, exc.message, {"captchaRequired": True}, code=exc.error_code
            )
        if not exc.expose_headers or exc.result is None:
            return _error_response(exc.status_code, exc.message, code=exc.error_code)
        return _error_response(
            exc.status_code,
            exc.message,
            {"retryAfter": exc.retry_after_seconds},
            code=exc.error_code,
            headers=rate_limit_headers(exc.result, blocked=True),
        )

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_error(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        _log_error(request, "request_validation_error", 400, errors=len(errors))
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        # _http_error() puts a ready-made envelope in ``detail``
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message", "http error")
            _log_error(request, "http_client_error", exc.status_code, error_code=code, message=message)
            return _error_response(
                exc.status_code, message, error.get("details"), code=code, headers=exc.headers
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        _log_error(request, "http_error", exc.status_code, message=message)
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
