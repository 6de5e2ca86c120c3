from __future__ import annotations

import asyncio
from typing import Optional

from authguard.config import RateLimitConfig
from authguard.logging import get_logger, hash_identifier
from authguard.service.captcha import CaptchaValidator
from authguard.service.errors import CaptchaRequired
from authguard.service.failed_login import FailedLoginTracker
from authguard.service.lockout import AccountLockoutManager
from authguard.service.rate_limiter import RateLimiter
from authguard.storage.errors import StoreUnavailable
from authguard.storage.models import RateLimitResult

logger = get_logger(__name__)


class AuthDefense:
    """Order of checks around a credential verification.

    ``admit`` runs before the password is looked at (IP limit, email limit,
    CAPTCHA gate); ``record_failure`` and ``record_success`` do the
    bookkeeping afterwards. The progressive delay is a separate awaited step
    the route applies after ``admit`` so that a client that disconnects while
    waiting has already been counted.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        tracker: FailedLoginTracker,
        lockout: AccountLockoutManager,
        captcha: CaptchaValidator,
        config: Optional[RateLimitConfig] = None,
        *,
        enabled: bool = True,
    ) -> None:
        self.limiter = limiter
        self.tracker = tracker
        self.lockout = lockout
        self.captcha = captcha
        self.config = config or limiter.config
        self.enabled = enabled

    async def admit(
        self, ip: str, email: Optional[str], captcha_token: Optional[str] = None
    ) -> Optional[RateLimitResult]:
        """Raise ``LimitExceeded`` or ``CaptchaRequired`` when the attempt may not proceed.

        Returns the per-IP limiter state for response headers, or None when
        rate limiting is disabled.
        """
        if not self.enabled:
            return None
        ip_result = await self.limiter.check_ip(ip)
        if email:
            try:
                await self.limiter.check_email(email)
            except StoreUnavailable:
                if not self.config.auth.email_fail_open:
                    raise
                logger.warning("email_rate_limit_skipped", email_hash=hash_identifier(email))
        if await self.limiter.check_captcha_required(ip):
            if not captcha_token or not await self.captcha.verify_captcha_token(captcha_token, ip):
                logger.info("captcha_required", ip=ip, token_present=bool(captcha_token))
                raise CaptchaRequired()
            await self.limiter.reset_captcha_attempts(ip)
        return ip_result

    async def apply_progressive_delay(self, ip: str) -> int:
        if not self.enabled:
            return 0
        delay_ms = await self.limiter.get_progressive_delay(ip)
        if delay_ms > 0:
            logger.info("progressive_delay_applied", ip=ip, delay_ms=delay_ms)
            await asyncio.sleep(delay_ms / 1000)
        return delay_ms

    async def is_locked(self, email: str) -> bool:
        return await self.lockout.is_account_locked(email)

    async def record_failure(
        self, ip: str, email: Optional[str], reason: str = "Invalid credentials"
    ) -> bool:
        """Count a failed attempt; returns True when it locked the account."""
        await self.tracker.record_failed_attempt(ip, email, reason)
        if self.enabled:
            await self.limiter.increment_progressive_delay(ip)
            await self.limiter.increment_captcha_attempts(ip)
            if email:
                await self.limiter.increment_captcha_attempts(f"email:{email.lower()}")
        if not email:
            return False
        return await self.lockout.check_and_lock_account(email)

    async def record_success(self, ip: str, email: Optional[str]) -> None:
        await self.limiter.reset_all_limits(ip, email)
        await self.tracker.reset_failed_attempts(ip)
        if email:
            await self.tracker.reset_failed_attempts(email)
