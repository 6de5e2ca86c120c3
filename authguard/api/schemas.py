from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "captcha_required",
    "invalid_token",
    "invariant_violation",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters.

    Keeps look-alike addresses from landing in different limiter buckets.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# Request bodies use the camelCase names existing clients send
class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str = Field(..., min_length=1, max_length=128)
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken", max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    user_id: str
    role: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class CaptchaChallengeResponse(BaseModel):
    challengeId: str
    question: str
    type: str = "math"


class CaptchaVerifyRequest(BaseModel):
    challengeId: str = Field(..., min_length=1, max_length=128)
    response: str = Field(..., min_length=1, max_length=32)


class CaptchaVerifyResponse(BaseModel):
    captchaToken: str
    message: str


class UnlockRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_unlock_email(cls, value: str) -> str:
        return _validate_email(value)


class UnlockVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class MessageResponse(BaseModel):
    message: str


class RateLimitStatsResponse(BaseModel):
    failedLogins: Dict[str, Any]
    captcha: Dict[str, float]


class MeResponse(BaseModel):
    user_id: str
    email: str
    role: str
    key_id: str


# Admin key management (``{success, data}`` bodies)
class RevokeKeyRequest(BaseModel):
    keyId: str = Field(..., min_length=1, max_length=128)


class RotateKeyRequest(BaseModel):
    force: bool = False


class AdminUnlockRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_admin_unlock_email(cls, value: str) -> str:
        return _validate_email(value)


class KeySummary(BaseModel):
    id: str
    algorithm: str
    createdAt: datetime
    expiresAt: datetime
    status: str
    secretPreview: str


class KeyListData(BaseModel):
    keys: List[KeySummary]
    currentSigningKeyId: Optional[str] = None
    totalKeys: int
    activeKeys: int


class AdminResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
