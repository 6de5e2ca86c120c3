from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Set

from authguard.config import LockoutConfig
from authguard.logging import get_logger, hash_identifier
from authguard.service.errors import InvalidToken, NotFoundError
from authguard.service.failed_login import FailedLoginTracker
from authguard.storage.models import AccountLockInfo, User

logger = get_logger(__name__)

DEFAULT_LOCK_REASON = "Too many failed login attempts"

_CLEARED_LOCK = {
    "account_locked": False,
    "account_locked_at": None,
    "account_lock_reason": None,
    "unlock_token": None,
    "unlock_token_generated_at": None,
}


class UserStore(Protocol):
    """User lookups and lock-field updates the lockout manager needs."""

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_unlock_token(self, token: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> User: ...


class NotificationService(Protocol):
    async def send_email(self, to: str, subject: str, html: str) -> bool: ...


class AccountLockoutManager:
    """Locks accounts after repeated failures and runs the unlock-by-email flow.

    State lives on the user record (``account_locked`` plus the unlock token
    fields); a TTL'd ``account_locked:{email}`` marker in the coordination
    store mirrors it for monitoring. Emails go out as background tasks so a
    slow or failing mail server never changes the caller's response.
    """

    def __init__(
        self,
        user_store: UserStore,
        tracker: FailedLoginTracker,
        notifier: NotificationService,
        config: Optional[LockoutConfig] = None,
    ) -> None:
        self.user_store = user_store
        self.tracker = tracker
        self.notifier = notifier
        self.config = config or LockoutConfig()
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def check_and_lock_account(self, email: str) -> bool:
        """Lock ``email`` once its failure count reaches the threshold.

        Any error reads as "not locked" so a flaky store cannot lock people out.
        """
        try:
            failures = await self.tracker.get_failure_count(email.lower(), "email")
            if failures < self.config.before_lockout:
                return False
            return await self.lock_account(email)
        except Exception as exc:
            logger.error(
                "account_lock_check_failed",
                email_hash=hash_identifier(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def lock_account(self, email: str, reason: str = DEFAULT_LOCK_REASON) -> bool:
        user = self.user_store.get_user_by_email(email)
        if not user:
            logger.warning("account_lock_unknown_user", email_hash=hash_identifier(email))
            return False
        if user.account_locked:
            # Keep the token already mailed to the owner
            logger.info("account_already_locked", user_id=user.id)
            return True
        token = secrets.token_hex(32)
        now = datetime.now(timezone.utc)
        self.user_store.update_user(
            user.id,
            account_locked=True,
            account_locked_at=now,
            account_lock_reason=reason,
            unlock_token=token,
            unlock_token_generated_at=now,
        )
        await self.tracker.mark_locked(user.email, reason, self.config.lock_marker_ttl_seconds)
        self._notify(user.email, *self._lockout_email(token))
        logger.warning(
            "account_locked", user_id=user.id, email_hash=hash_identifier(user.email), reason=reason
        )
        return True

    async def is_account_locked(self, email: str) -> bool:
        try:
            user = self.user_store.get_user_by_email(email)
        except Exception as exc:
            logger.error("account_lock_status_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        return bool(user and user.account_locked)

    async def get_account_lock_info(self, email: str) -> Optional[AccountLockInfo]:
        user = self.user_store.get_user_by_email(email)
        if not user or not user.account_locked:
            return None
        failures = await self.tracker.get_failure_count(email.lower(), "email")
        return AccountLockInfo(
            email=user.email,
            locked_at=user.account_locked_at or datetime.now(timezone.utc),
            reason=user.account_lock_reason or "Security lockout",
            failed_attempts=failures,
            unlock_token=user.unlock_token,
        )

    # ------------------------------------------------------------------
    # Unlocking
    # ------------------------------------------------------------------

    async def initiate_unlock_process(self, email: str) -> None:
        """Issue a fresh unlock token and mail it.

        Raises ``InvalidToken`` when there is no locked account for ``email``.
        HTTP callers must answer the same way whether or not this raises.
        """
        user = self.user_store.get_user_by_email(email)
        if not user or not user.account_locked:
            raise InvalidToken("Account is not locked")
        token = secrets.token_hex(32)
        self.user_store.update_user(
            user.id, unlock_token=token, unlock_token_generated_at=datetime.now(timezone.utc)
        )
        self._notify(user.email, *self._unlock_request_email(token))
        logger.info("account_unlock_initiated", user_id=user.id)

    async def verify_and_unlock_account(self, token: str) -> bool:
        """Unlock the account holding ``token``; False for unknown or expired tokens."""
        if not token:
            return False
        try:
            user = self.user_store.get_user_by_unlock_token(token)
            if not user:
                logger.warning("unlock_token_invalid")
                return False
            issued = user.unlock_token_generated_at
            max_age = timedelta(seconds=self.config.unlock_token_ttl_seconds)
            if issued is None or datetime.now(timezone.utc) - issued > max_age:
                logger.warning("unlock_token_expired", user_id=user.id)
                return False
            await self._clear_lock(user)
        except Exception as exc:
            logger.error("account_unlock_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        self._notify(user.email, *self._unlocked_email())
        logger.info("account_unlocked", user_id=user.id)
        return True

    async def admin_unlock_account(self, email: str, admin_id: str) -> None:
        user = self.user_store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        await self._clear_lock(user)
        logger.info(
            "account_unlocked_by_admin",
            user_id=user.id,
            admin_id=admin_id,
            email_hash=hash_identifier(user.email),
        )
        self._notify(user.email, *self._admin_unlocked_email())

    async def _clear_lock(self, user: User) -> None:
        self.user_store.update_user(user.id, **_CLEARED_LOCK)
        await self.tracker.reset_failed_attempts(user.email)
        await self.tracker.clear_lock_marker(user.email)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, to: str, subject: str, html: str) -> None:
        task = asyncio.create_task(self.notifier.send_email(to, subject, html))
        self._pending.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("notification_failed", error_type=type(exc).__name__, error=str(exc))

    async def drain_notifications(self) -> None:
        """Wait for queued emails; used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _unlock_url(self, token: str) -> str:
        return f"{self.config.app_base_url.rstrip('/')}/unlock-account?token={token}"

    def _lockout_email(self, token: str) -> tuple[str, str]:
        name = self.config.product_name
        url = self._unlock_url(token)
        return (
            f"Your {name} account has been locked",
            f"""
<h2>Account Security Alert</h2>
<p>Your {name} account has been temporarily locked due to multiple failed login attempts.</p>
<p>If this was you, you can unlock your account by clicking the link below:</p>
<p><a href="{url}">Unlock My Account</a></p>
<p>This link will expire in 24 hours.</p>
<p>If you did not attempt to log in, please contact our support team immediately.</p>
<p>Best regards,<br>The {name} Security Team</p>
""",
        )

    def _unlock_request_email(self, token: str) -> tuple[str, str]:
        name = self.config.product_name
        url = self._unlock_url(token)
        return (
            f"Unlock your {name} account",
            f"""
<h2>Account Unlock Request</h2>
<p>We received a request to unlock your {name} account.</p>
<p>Click the link below to unlock your account:</p>
<p><a href="{url}">Unlock My Account</a></p>
<p>This link will expire in 24 hours.</p>
<p>If you did not request this, please ignore this email.</p>
<p>Best regards,<br>The {name} Security Team</p>
""",
        )

    def _unlocked_email(self) -> tuple[str, str]:
        name = self.config.product_name
        return (
            f"Your {name} account has been unlocked",
            f"""
<h2>Account Unlocked</h2>
<p>Your {name} account has been successfully unlocked.</p>
<p>You can now log in with your credentials.</p>
<p>Best regards,<br>The {name} Security Team</p>
""",
        )

    def _admin_unlocked_email(self) -> tuple[str, str]:
        name = self.config.product_name
        return (
            f"Your {name} account has been unlocked by an administrator",
            f"""
<h2>Account Unlocked by Administrator</h2>
<p>Your {name} account has been unlocked by our support team.</p>
<p>You can now log in with your credentials.</p>
<p>If you have any questions or concerns, please contact our support team.</p>
<p>Best regards,<br>The {name} Support Team</p>
""",
        )
