from __future__ import annotations

import json
import time
from typing import Dict, List, Literal, Optional

from authguard.config import RateLimitConfig
from authguard.logging import get_logger, hash_identifier
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import CoordinationStore
from authguard.storage.models import FailedLoginAttempt

logger = get_logger(__name__)

FailureKind = Literal["ip", "email", "captcha"]

ATTEMPT_PREFIX = "failed_login:"
COUNTER_PREFIX = "failed_login_count:"
LOCK_MARKER_PREFIX = "account_locked:"


def _now_ms() -> int:
    return int(time.time() * 1000)


class FailedLoginTracker:
    """Audit trail and counters for failed logins, keyed by IP and email.

    Writes and reads degrade to "nothing recorded" when the store is down;
    the limiter tiers are what actually reject traffic.
    """

    def __init__(self, store: CoordinationStore, config: Optional[RateLimitConfig] = None) -> None:
        self.store = store
        self.config = config or RateLimitConfig()

    @property
    def ip_ttl_seconds(self) -> int:
        return self.config.auth.window_seconds

    @property
    def email_ttl_seconds(self) -> int:
        return max(1, self.config.auth.email_window_ms // 1000)

    def _ttl_for(self, kind: FailureKind) -> int:
        return self.email_ttl_seconds if kind == "email" else self.ip_ttl_seconds

    async def record_failed_attempt(
        self, ip: str, email: Optional[str] = None, reason: str = "Invalid credentials"
    ) -> FailedLoginAttempt:
        normalized = email.lower() if email else None
        attempt = FailedLoginAttempt(ip=ip, email=normalized, reason=reason, timestamp=_now_ms())
        payload = json.dumps(attempt.to_dict())
        try:
            await self.store.append_record(f"{ATTEMPT_PREFIX}ip:{ip}", payload, self.ip_ttl_seconds)
            if normalized:
                await self.store.append_record(
                    f"{ATTEMPT_PREFIX}email:{normalized}", payload, self.email_ttl_seconds
                )
            await self.increment_failure_count(ip, "ip")
            if normalized:
                await self.increment_failure_count(normalized, "email")
        except StoreUnavailable as exc:
            logger.error("failed_login_record_failed", error=str(exc))
            return attempt
        logger.info(
            "failed_login_recorded",
            ip=ip,
            email_hash=hash_identifier(normalized),
            reason=reason,
        )
        return attempt

    async def get_failed_attempts(self, identifier: str, window_seconds: int) -> List[FailedLoginAttempt]:
        """Attempts for an IP or email within the window, newest first."""
        keys = [f"{ATTEMPT_PREFIX}ip:{identifier}", f"{ATTEMPT_PREFIX}email:{identifier.lower()}"]
        cutoff = _now_ms() - window_seconds * 1000
        unique: Dict[tuple, FailedLoginAttempt] = {}
        try:
            for key in keys:
                for raw in await self.store.list_records(key):
                    try:
                        attempt = FailedLoginAttempt.from_dict(json.loads(raw))
                    except (ValueError, TypeError):
                        logger.warning("failed_login_record_corrupt", key_prefix=key.split(":")[1])
                        continue
                    if attempt.timestamp >= cutoff:
                        unique[(attempt.ip, attempt.timestamp)] = attempt
        except StoreUnavailable as exc:
            logger.error("failed_login_lookup_failed", error=str(exc))
            return []
        return sorted(unique.values(), key=lambda a: a.timestamp, reverse=True)

    async def reset_failed_attempts(self, identifier: str) -> None:
        lowered = identifier.lower()
        keys = [
            f"{ATTEMPT_PREFIX}ip:{identifier}",
            f"{ATTEMPT_PREFIX}email:{lowered}",
            f"{COUNTER_PREFIX}ip:{identifier}",
            f"{COUNTER_PREFIX}email:{lowered}",
            f"{COUNTER_PREFIX}captcha:{identifier}",
        ]
        try:
            await self.store.delete(*keys)
        except StoreUnavailable as exc:
            logger.error("failed_login_reset_failed", error=str(exc))
            return
        logger.info("failed_login_reset", identifier_hash=hash_identifier(identifier))

    async def is_blocked(self, identifier: str) -> bool:
        limits = self.config.auth.max_attempts
        if await self.get_failure_count(identifier, "ip") >= limits.per_ip:
            return True
        if "@" in identifier:
            return await self.get_failure_count(identifier.lower(), "email") >= limits.per_email
        return False

    async def increment_failure_count(self, identifier: str, kind: FailureKind) -> int:
        return await self.store.incr_with_expiry(f"{COUNTER_PREFIX}{kind}:{identifier}", self._ttl_for(kind))

    async def get_failure_count(self, identifier: str, kind: FailureKind) -> int:
        try:
            value = await self.store.get(f"{COUNTER_PREFIX}{kind}:{identifier}")
        except StoreUnavailable as exc:
            logger.error("failure_count_lookup_failed", kind=kind, error=str(exc))
            return 0
        return int(value) if value else 0

    # ------------------------------------------------------------------
    # Lock markers (mirror of the user-store lock, for monitoring)
    # ------------------------------------------------------------------

    async def mark_locked(self, email: str, reason: str, ttl_seconds: int) -> None:
        marker = json.dumps({"email": email.lower(), "reason": reason, "lockedAt": _now_ms()})
        try:
            await self.store.set(f"{LOCK_MARKER_PREFIX}{email.lower()}", marker, ex=ttl_seconds)
        except StoreUnavailable as exc:
            logger.error("lock_marker_write_failed", error=str(exc))

    async def clear_lock_marker(self, email: str) -> None:
        try:
            await self.store.delete(f"{LOCK_MARKER_PREFIX}{email.lower()}")
        except StoreUnavailable as exc:
            logger.error("lock_marker_clear_failed", error=str(exc))

    async def get_statistics(self) -> dict:
        """Snapshot of current failure counters and locked accounts."""
        stats: dict = {
            "failedAttemptsByIP": {},
            "failedAttemptsByEmail": {},
            "blockedIPs": [],
            "lockedAccounts": [],
        }
        per_ip = self.config.auth.max_attempts.per_ip
        try:
            for key in await self.store.scan_keys(f"{COUNTER_PREFIX}ip:*"):
                ip = key[len(f"{COUNTER_PREFIX}ip:"):]
                count = await self.get_failure_count(ip, "ip")
                if count > 0:
                    stats["failedAttemptsByIP"][ip] = count
                    if count >= per_ip:
                        stats["blockedIPs"].append(ip)
            for key in await self.store.scan_keys(f"{COUNTER_PREFIX}email:*"):
                email = key[len(f"{COUNTER_PREFIX}email:"):]
                count = await self.get_failure_count(email, "email")
                if count > 0:
                    stats["failedAttemptsByEmail"][email] = count
            lock_keys = await self.store.scan_keys(f"{LOCK_MARKER_PREFIX}*")
            stats["lockedAccounts"] = sorted(key[len(LOCK_MARKER_PREFIX):] for key in lock_keys)
        except StoreUnavailable as exc:
            logger.error("failed_login_statistics_failed", error=str(exc))
            return {"failedAttemptsByIP": {}, "failedAttemptsByEmail": {}, "blockedIPs": [], "lockedAccounts": []}
        return stats
