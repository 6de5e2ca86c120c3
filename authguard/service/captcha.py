from __future__ import annotations

import json
import secrets
from datetime import datetime, timezone
from typing import Callable, Dict, Literal, Optional, Protocol

from authguard.config import RateLimitConfig
from authguard.logging import get_logger
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import CoordinationStore
from authguard.storage.models import CaptchaChallenge, CaptchaValidationResult

logger = get_logger(__name__)

CHALLENGE_PREFIX = "captcha:"
TOKEN_PREFIX = "captcha:token:"
STATS_PREFIX = "captcha_stats:"

TOKEN_TTL_SECONDS = 300
# Used tokens stay readable this long for auditing
USED_TOKEN_TTL_SECONDS = 60
HOURLY_STATS_TTL_SECONDS = 7 * 24 * 3600
DAILY_STATS_TTL_SECONDS = 30 * 24 * 3600

StatType = Literal["generated", "solved", "failed", "expired"]
STAT_TYPES = ("generated", "solved", "failed", "expired")


class CaptchaValidator(Protocol):
    """Anything that can redeem a post-CAPTCHA bypass token."""

    async def verify_captcha_token(self, token: str, ip: str) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaptchaChallengeService:
    """Single-use arithmetic challenges and one-time bypass tokens bound to an IP."""

    OPERATORS = ("+", "-", "*")

    def __init__(
        self,
        store: CoordinationStore,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or RateLimitConfig()
        self._clock = clock

    @property
    def challenge_ttl(self) -> int:
        return self.config.auth.captcha_ttl

    async def generate_captcha_challenge(self) -> CaptchaChallenge:
        challenge_id = secrets.token_hex(16)
        left = secrets.randbelow(10) + 1
        right = secrets.randbelow(10) + 1
        operator = secrets.choice(self.OPERATORS)
        if operator == "+":
            answer, question = left + right, f"What is {left} + {right}?"
        elif operator == "-":
            answer, question = left - right, f"What is {left} - {right}?"
        else:
            answer, question = left * right, f"What is {left} × {right}?"

        await self.store.set(f"{CHALLENGE_PREFIX}{challenge_id}", str(answer), ex=self.challenge_ttl)
        await self._increment_stat("generated")
        logger.info("captcha_generated", challenge_id=challenge_id, captcha_type="math")
        return CaptchaChallenge(challenge_id=challenge_id, question=question)

    async def validate_captcha_response(self, challenge_id: str, user_response: str) -> CaptchaValidationResult:
        """Check an answer. The challenge is consumed on the first attempt, right or wrong."""
        key = f"{CHALLENGE_PREFIX}{challenge_id}"
        try:
            expected = await self.store.get(key)
            if expected is None:
                await self._increment_stat("expired")
                return CaptchaValidationResult(False, "CAPTCHA has expired. Please request a new one.")
            await self.store.delete(key)
        except StoreUnavailable as exc:
            logger.error("captcha_validation_failed", error=str(exc))
            return CaptchaValidationResult(False, "Error validating CAPTCHA. Please try again.")

        valid = str(user_response).strip().lower() == expected.strip().lower()
        await self._increment_stat("solved" if valid else "failed")
        if valid:
            logger.info("captcha_solved", challenge_id=challenge_id)
            return CaptchaValidationResult(True, "CAPTCHA verified successfully")
        logger.info("captcha_incorrect", challenge_id=challenge_id)
        return CaptchaValidationResult(False, "Incorrect answer. Please try again.")

    async def generate_captcha_token(self, ip: str) -> str:
        token = secrets.token_hex(32)
        payload = {"ip": ip, "timestamp": int(self._clock().timestamp() * 1000), "used": False}
        await self.store.set(f"{TOKEN_PREFIX}{token}", json.dumps(payload), ex=TOKEN_TTL_SECONDS)
        return token

    async def verify_captcha_token(self, token: str, ip: str) -> bool:
        """Redeem a bypass token once, from the IP it was issued to."""
        if not token:
            return False
        key = f"{TOKEN_PREFIX}{token}"
        try:
            raw = await self.store.get(key)
            if raw is None:
                return False
            data = json.loads(raw)
            if data.get("ip") != ip or data.get("used"):
                return False
            data["used"] = True
            await self.store.set(key, json.dumps(data), ex=USED_TOKEN_TTL_SECONDS)
        except (StoreUnavailable, ValueError) as exc:
            logger.error("captcha_token_verify_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def _increment_stat(self, stat: StatType) -> None:
        now = self._clock()
        day = now.date().isoformat()
        try:
            await self.store.incr_with_expiry(f"{STATS_PREFIX}{day}:{now.hour}:{stat}", HOURLY_STATS_TTL_SECONDS)
            await self.store.incr_with_expiry(f"{STATS_PREFIX}{day}:{stat}", DAILY_STATS_TTL_SECONDS)
        except StoreUnavailable as exc:
            logger.error("captcha_stat_increment_failed", stat=stat, error=str(exc))

    async def _read_counts(self, prefix: str) -> Dict[str, int]:
        values = await self.store.mget([f"{prefix}:{stat}" for stat in STAT_TYPES])
        return {stat: int(value or 0) for stat, value in zip(STAT_TYPES, values)}

    async def get_statistics(self, date: Optional[str] = None) -> Dict[str, float]:
        day = date or self._clock().date().isoformat()
        try:
            stats: Dict[str, float] = dict(await self._read_counts(f"{STATS_PREFIX}{day}"))
        except StoreUnavailable as exc:
            logger.error("captcha_statistics_failed", error=str(exc))
            stats = {stat: 0 for stat in STAT_TYPES}
        attempts = stats["solved"] + stats["failed"]
        stats["solveRate"] = (stats["solved"] / attempts) * 100 if attempts else 0
        return stats

    async def get_hourly_statistics(self, date: Optional[str] = None) -> Dict[int, Dict[str, int]]:
        day = date or self._clock().date().isoformat()
        try:
            return {hour: await self._read_counts(f"{STATS_PREFIX}{day}:{hour}") for hour in range(24)}
        except StoreUnavailable as exc:
            logger.error("captcha_hourly_statistics_failed", error=str(exc))
            return {}
