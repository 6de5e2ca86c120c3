from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authguard.config import get_settings, reset_settings_cache
from authguard.logging import get_logger
from authguard.service.auth import AuthService
from authguard.service.captcha import CaptchaChallengeService
from authguard.service.defense import AuthDefense
from authguard.service.failed_login import FailedLoginTracker
from authguard.service.jwt_keys import JWTKeyRegistry, RotationScheduler
from authguard.service.lockout import AccountLockoutManager
from authguard.service.notification import EmailNotifier
from authguard.service.rate_limiter import RateLimiter
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import CoordinationStore, LocalCache
from authguard.storage.memory import MemoryStore
from authguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a store URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse((parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment))


class Runtime:
    """Holds the coordination store and every defense component for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            rate_limiting_enabled=self.settings.rate_limiting_enabled,
        )
        self.store = MemoryStore()
        self.notifier = EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        cache: CoordinationStore = (
            LocalCache() if self.settings.test_mode else RedisCache(
                self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
            )
        )
        self._wire(cache)
        self._listener_task: Optional[asyncio.Task] = None
        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            email_configured=self.notifier.is_configured,
        )

    def _wire(self, cache: CoordinationStore) -> None:
        settings = self.settings
        rate_config = settings.rate_limit_config()
        self.cache = cache
        self.rate_limiter = RateLimiter(cache, rate_config)
        self.failed_logins = FailedLoginTracker(cache, rate_config)
        self.captcha = CaptchaChallengeService(cache, rate_config)
        self.lockout = AccountLockoutManager(
            self.store, self.failed_logins, self.notifier, settings.lockout_config()
        )
        self.keys = JWTKeyRegistry(cache, settings.key_encryption_secret, settings.jwt_key_config())
        self.scheduler = RotationScheduler(self.keys)
        self.auth = AuthService(self.store, self.keys, settings)
        self.defense = AuthDefense(
            self.rate_limiter,
            self.failed_logins,
            self.lockout,
            self.captcha,
            rate_config,
            enabled=settings.rate_limiting_enabled,
        )

    async def start(self) -> None:
        """Connect the store and start the rotation scheduler and key-update listener."""
        try:
            await self.cache.connect()
        except StoreUnavailable as exc:
            if not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, CAPTCHA state and signing keys; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
                message="Running without Redis; limits and keys are process-local only.",
            )
            self._wire(LocalCache())

        if self.settings.register_legacy_jwt_key and self.settings.jwt_secret:
            await self.keys.register_legacy_key(self.settings.jwt_secret)
        if self.settings.key_rotation_enabled:
            self.scheduler.start()
        self._listener_task = asyncio.create_task(self.keys.listen_for_updates())

    async def close(self) -> None:
        await self.scheduler.stop()
        if self._listener_task is not None:
            task, self._listener_task = self._listener_task, None
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, StoreUnavailable):
                await task
        await self.lockout.drain_notifications()
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
