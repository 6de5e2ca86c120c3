from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    account_locked: bool = False
    account_locked_at: Optional[datetime] = None
    account_lock_reason: Optional[str] = None
    unlock_token: Optional[str] = None
    unlock_token_generated_at: Optional[datetime] = None
    meta: Dict | None = None


# Fields a UserStore.update_user call may change
LOCK_FIELDS = frozenset(
    {
        "account_locked",
        "account_locked_at",
        "account_lock_reason",
        "unlock_token",
        "unlock_token_generated_at",
    }
)


@dataclass
class RateLimitResult:
    """State of one limiter counter after a consume or peek."""

    allowed: bool
    remaining_points: int
    ms_before_next: int
    consumed_points: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remainingPoints": self.remaining_points,
            "msBeforeNext": self.ms_before_next,
            "consumedPoints": self.consumed_points,
        }


@dataclass
class FailedLoginAttempt:
    ip: str
    reason: str
    timestamp: int  # epoch milliseconds
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if payload["email"] is None:
            payload.pop("email")
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedLoginAttempt":
        return cls(
            ip=str(data.get("ip", "unknown")),
            reason=str(data.get("reason", "")),
            timestamp=int(data.get("timestamp", 0)),
            email=data.get("email"),
        )


@dataclass
class AccountLockInfo:
    email: str
    locked_at: datetime
    reason: str
    failed_attempts: int
    unlock_token: Optional[str] = None


@dataclass
class CaptchaChallenge:
    challenge_id: str
    question: str
    type: str = "math"


@dataclass
class CaptchaValidationResult:
    valid: bool
    message: str


class KeyStatus:
    ACTIVE = "active"
    ROTATING = "rotating"
    REVOKED = "revoked"

    VERIFYING = frozenset({ACTIVE, ROTATING})


@dataclass
class SigningKey:
    id: str
    secret: str
    created_at: datetime
    expires_at: datetime
    status: str = KeyStatus.ACTIVE
    algorithm: str = "HS256"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "secret": self.secret,
            "algorithm": self.algorithm,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SigningKey":
        status = data.get("status", KeyStatus.ACTIVE)
        # Older records used "expired" for what is now "revoked"
        if status == "expired":
            status = KeyStatus.REVOKED
        return cls(
            id=data["id"],
            secret=data["secret"],
            algorithm=data.get("algorithm", "HS256"),
            created_at=_parse_ts(data["createdAt"]),
            expires_at=_parse_ts(data["expiresAt"]),
            status=status,
        )

    @property
    def secret_preview(self) -> str:
        return f"{self.secret[:8]}...{self.secret[-4:]}"

    def age_days(self, now: Optional[datetime] = None) -> int:
        return int(((now or _utcnow()) - self.created_at).total_seconds() // 86400)


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
