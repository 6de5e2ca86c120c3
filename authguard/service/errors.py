from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from authguard.storage.errors import StoreUnavailable

if TYPE_CHECKING:
    from authguard.storage.models import RateLimitResult


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403), captcha_required (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400), invalid_token (400), invariant_violation (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class LimitExceeded(ServiceError):
    """A rate, CAPTCHA or lockout threshold was hit (429).

    This is expected traffic, not a fault. ``result`` holds the limiter state
    used for Retry-After and X-RateLimit-* headers when the tier exposes them.
    """

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many authentication attempts. Please try again later.",
        *,
        result: Optional["RateLimitResult"] = None,
        expose_headers: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.result = result
        self.expose_headers = expose_headers

    @property
    def retry_after_seconds(self) -> int:
        if not self.result:
            return 0
        return round(self.result.ms_before_next / 1000)


class CaptchaRequired(LimitExceeded):
    """Caller crossed the CAPTCHA threshold and presented no valid bypass token (403)."""

    status_code = 403
    error_code = "captcha_required"

    def __init__(
        self,
        message: str = "Too many failed attempts. Please complete the CAPTCHA.",
        **kwargs,
    ) -> None:
        super().__init__(message, expose_headers=False, **kwargs)


class InvalidToken(ValidationError):
    """CAPTCHA or unlock token missing, expired or mismatched (400).

    The message never says which of those applied.
    """

    error_code = "invalid_token"


class InvariantViolation(ServiceError):
    """Operation would break a registry invariant, such as revoking the active key (400)."""

    status_code = 400
    error_code = "invariant_violation"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "LimitExceeded",
    "CaptchaRequired",
    "InvalidToken",
    "InvariantViolation",
    "ServerError",
    "StoreUnavailable",
]
