from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from authguard.api.error_handling import rate_limit_headers
from authguard.api.schemas import (
    CaptchaChallengeResponse,
    CaptchaVerifyRequest,
    CaptchaVerifyResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RateLimitStatsResponse,
    UnlockRequest,
    UnlockVerifyRequest,
)
from authguard.logging import get_logger, hash_identifier
from authguard.service.auth import AuthContext
from authguard.service.errors import InvalidToken
from authguard.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Same body for unknown, inactive, wrong-password and locked accounts
INVALID_CREDENTIALS = "Invalid email or password"
UNLOCK_REQUEST_MESSAGE = "If an account exists with this email, unlock instructions have been sent."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    token = runtime.auth.extract_bearer(authorization)
    ctx = await runtime.auth.verify_access_token(token) if token else None
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "admin":
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_captcha_token: Optional[str] = Header(None, alias="X-CAPTCHA-Token"),
):
    """Authenticate with email and password behind the brute-force defenses.

    Raises:
        429: IP or email over its attempt budget
        403: CAPTCHA required and no valid bypass token presented
        401: Invalid credentials or locked account
    """
    runtime = get_runtime()
    defense = runtime.defense
    ip = client_ip(request)

    ip_result = await defense.admit(ip, body.email, body.captcha_token or x_captcha_token)
    if ip_result is not None:
        for name, value in rate_limit_headers(ip_result).items():
            response.headers[name] = value

    if await defense.is_locked(body.email):
        logger.info("login_rejected_locked", email_hash=hash_identifier(body.email), ip=ip)
        await defense.record_failure(ip, body.email, "Account locked")
        raise _http_error("unauthorized", INVALID_CREDENTIALS, status_code=401)

    await defense.apply_progressive_delay(ip)

    user = runtime.auth.authenticate_credentials(body.email, body.password)
    if not user:
        locked = await defense.record_failure(ip, body.email)
        logger.info(
            "login_failed", email_hash=hash_identifier(body.email), ip=ip, account_locked=locked
        )
        raise _http_error("unauthorized", INVALID_CREDENTIALS, status_code=401)

    await defense.record_success(ip, body.email)
    tokens = await runtime.auth.issue_access_token(user)
    logger.info("login_succeeded", user_id=user.id, ip=ip)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=user.id,
            role=user.role,
            access_token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_in=tokens["expires_in"],
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    user = get_runtime().store.get_user(principal.user_id)
    if not user:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return Envelope(
        status="ok",
        data=MeResponse(user_id=user.id, email=user.email, role=user.role, key_id=principal.key_id),
    )


@router.get("/auth/captcha", response_model=Envelope, tags=["captcha"])
async def get_captcha_challenge():
    challenge = await get_runtime().captcha.generate_captcha_challenge()
    return Envelope(
        status="ok",
        data=CaptchaChallengeResponse(
            challengeId=challenge.challenge_id, question=challenge.question, type=challenge.type
        ),
    )


@router.post("/auth/captcha/verify", response_model=Envelope, tags=["captcha"])
async def verify_captcha(body: CaptchaVerifyRequest, request: Request):
    """Answer a challenge; a correct answer returns a one-time bypass token bound to the caller's IP."""
    runtime = get_runtime()
    result = await runtime.captcha.validate_captcha_response(body.challengeId, body.response)
    if not result.valid:
        raise InvalidToken(result.message or "Invalid CAPTCHA response")
    token = await runtime.captcha.generate_captcha_token(client_ip(request))
    return Envelope(status="ok", data=CaptchaVerifyResponse(captchaToken=token, message=result.message))


@router.post("/auth/unlock-request", response_model=Envelope, tags=["lockout"])
async def request_unlock(body: UnlockRequest):
    """Mail a fresh unlock link. Answers identically whether or not the account exists or is locked."""
    try:
        await get_runtime().lockout.initiate_unlock_process(body.email)
    except InvalidToken:
        logger.info("unlock_request_not_applicable", email_hash=hash_identifier(body.email))
    return Envelope(status="ok", data=MessageResponse(message=UNLOCK_REQUEST_MESSAGE))


@router.post("/auth/unlock-verify", response_model=Envelope, tags=["lockout"])
async def verify_unlock(body: UnlockVerifyRequest):
    unlocked = await get_runtime().lockout.verify_and_unlock_account(body.token)
    if not unlocked:
        raise InvalidToken("Invalid or expired unlock token")
    return Envelope(
        status="ok",
        data=MessageResponse(message="Account unlocked successfully. You can now log in."),
    )


@router.get("/auth/rate-limit-stats", response_model=Envelope, tags=["admin"])
async def get_rate_limit_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    failed = await runtime.failed_logins.get_statistics()
    captcha = await runtime.captcha.get_statistics()
    logger.info("rate_limit_stats_viewed", admin_id=principal.user_id)
    return Envelope(
        status="ok",
        data={
            **RateLimitStatsResponse(failedLogins=failed, captcha=captcha).model_dump(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
