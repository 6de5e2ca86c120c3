from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authguard.config import RateLimitConfig
from authguard.logging import get_logger, hash_identifier
from authguard.service.errors import LimitExceeded
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import CoordinationStore, LocalCache
from authguard.storage.models import RateLimitResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimiterTier:
    """One fixed-window counter: ``points`` per ``duration_ms``, optional block."""

    name: str
    prefix: str
    points: int
    duration_ms: int
    block_ms: int = 0

    def key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    def result(self, consumed: int, ttl_ms: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=consumed <= self.points,
            remaining_points=max(self.points - consumed, 0),
            ms_before_next=ttl_ms,
            consumed_points=consumed,
            limit=self.points,
        )


class RateLimiter:
    """Per-IP, per-email, progressive-delay and CAPTCHA-gate counters.

    Each tier is a TTL-backed counter in the coordination store, incremented
    and expired by one script call. The per-IP tier falls back to a
    process-local ``LocalCache`` when the store is unreachable; the per-email
    tier does not and lets ``StoreUnavailable`` propagate.
    """

    def __init__(
        self,
        store: CoordinationStore,
        config: Optional[RateLimitConfig] = None,
        *,
        fallback: Optional[LocalCache] = None,
    ) -> None:
        self.store = store
        self.config = config or RateLimitConfig()
        self.fallback = fallback or LocalCache()
        auth = self.config.auth
        self.ip = LimiterTier(
            "ip", "rl_ip", auth.max_attempts.per_ip, auth.window_ms, auth.block_duration_ms
        )
        self.email = LimiterTier(
            "email", "rl_email", auth.max_attempts.per_email, auth.email_window_ms, auth.block_duration_ms
        )
        self.progressive = LimiterTier(
            "progressive",
            "rl_progressive",
            max(len(auth.progressive_delays) - 1, 1),
            auth.window_ms,
            auth.block_duration_ms,
        )
        self.captcha = LimiterTier(
            "captcha", "rl_captcha", auth.max_attempts.before_captcha, auth.window_ms, 0
        )

    # ------------------------------------------------------------------
    # Generic counter operations
    # ------------------------------------------------------------------

    async def consume(
        self,
        tier: LimiterTier,
        identifier: str,
        *,
        points: int = 1,
        store: Optional[CoordinationStore] = None,
    ) -> RateLimitResult:
        target = store or self.store
        consumed, ttl_ms = await target.consume_points(
            tier.key(identifier), tier.points, tier.duration_ms, tier.block_ms, points
        )
        return tier.result(consumed, ttl_ms)

    async def get(self, tier: LimiterTier, identifier: str) -> Optional[RateLimitResult]:
        """Read a counter without consuming; ``None`` when it does not exist."""
        consumed, ttl_ms = await self.store.peek_points(tier.key(identifier))
        if consumed <= 0:
            return None
        return tier.result(consumed, ttl_ms)

    async def delete(self, tier: LimiterTier, identifier: str) -> None:
        await self.store.delete(tier.key(identifier))

    # ------------------------------------------------------------------
    # Entry tiers
    # ------------------------------------------------------------------

    async def check_ip(self, ip: str) -> RateLimitResult:
        """Consume one per-IP point; raises ``LimitExceeded`` once the IP is over budget."""
        try:
            result = await self.consume(self.ip, ip)
        except StoreUnavailable as exc:
            logger.error("ip_rate_limiter_fallback", error=str(exc))
            result = await self.consume(self.ip, ip, store=self.fallback)
        if not result.allowed:
            logger.warning(
                "ip_rate_limited", ip=ip, retry_after_ms=result.ms_before_next
            )
            raise LimitExceeded(result=result)
        return result

    async def check_email(self, email: str) -> RateLimitResult:
        """Consume one per-email point. Store errors propagate (fail closed)."""
        normalized = email.lower()
        try:
            result = await self.consume(self.email, normalized)
        except StoreUnavailable:
            logger.error("email_rate_limiter_unavailable", email_hash=hash_identifier(normalized))
            raise
        if not result.allowed:
            logger.warning(
                "email_rate_limited",
                email_hash=hash_identifier(normalized),
                retry_after_ms=result.ms_before_next,
            )
            raise LimitExceeded(result=result, expose_headers=False)
        return result

    # ------------------------------------------------------------------
    # Progressive delay
    # ------------------------------------------------------------------

    async def get_progressive_delay(self, identifier: str) -> int:
        """Delay in milliseconds to hold the next response for ``identifier``."""
        delays = self.config.auth.progressive_delays
        try:
            current = await self.get(self.progressive, identifier)
        except StoreUnavailable as exc:
            logger.error("progressive_delay_lookup_failed", error=str(exc))
            return 0
        attempts = current.consumed_points if current else 0
        return delays[min(attempts, len(delays) - 1)]

    async def increment_progressive_delay(self, identifier: str) -> None:
        # Running past the tier's points just blocks the key, which is expected here
        try:
            await self.consume(self.progressive, identifier)
        except StoreUnavailable as exc:
            logger.error("progressive_delay_increment_failed", error=str(exc))

    async def reset_progressive_delay(self, identifier: str) -> None:
        try:
            await self.delete(self.progressive, identifier)
        except StoreUnavailable as exc:
            logger.error("progressive_delay_reset_failed", error=str(exc))

    # ------------------------------------------------------------------
    # CAPTCHA gate
    # ------------------------------------------------------------------

    async def check_captcha_required(self, identifier: str) -> bool:
        try:
            current = await self.get(self.captcha, identifier)
        except StoreUnavailable as exc:
            logger.error("captcha_gate_lookup_failed", error=str(exc))
            return False
        return bool(current and current.consumed_points >= self.captcha.points)

    async def increment_captcha_attempts(self, identifier: str) -> None:
        try:
            await self.consume(self.captcha, identifier)
        except StoreUnavailable as exc:
            logger.error("captcha_gate_increment_failed", error=str(exc))

    async def reset_captcha_attempts(self, identifier: str) -> None:
        try:
            await self.delete(self.captcha, identifier)
        except StoreUnavailable as exc:
            logger.error("captcha_gate_reset_failed", error=str(exc))

    async def reset_all_limits(self, identifier: str, email: Optional[str] = None) -> None:
        """Clear every counter for ``identifier`` and, when given, the email counter."""
        keys = [
            self.ip.key(identifier),
            self.progressive.key(identifier),
            self.captcha.key(identifier),
        ]
        if email:
            keys.append(self.email.key(email.lower()))
        try:
            await self.store.delete(*keys)
        except StoreUnavailable as exc:
            logger.error("rate_limit_reset_failed", error=str(exc))
        # The fallback may hold a per-IP count from an earlier outage
        await self.fallback.delete(self.ip.key(identifier))
