"""Tests for the login rate limiter tiers.

Covers:
- Per-IP budget, blocking and the process-local fallback
- Per-email budget and its fail-closed behaviour
- Progressive delay schedule
- CAPTCHA gate counters
- Resetting every counter after a successful login
"""

from unittest.mock import patch

import pytest

from authguard.config import AuthLimits, MaxAttempts, RateLimitConfig
from authguard.service.errors import LimitExceeded
from authguard.service.rate_limiter import RateLimiter
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import LocalCache


class BrokenStore:
    """Coordination store whose every call fails like an unreachable Redis."""

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise StoreUnavailable("redis unavailable")

        return _fail


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config():
    return RateLimitConfig(
        auth=AuthLimits(
            window_ms=60_000,
            email_window_ms=120_000,
            block_duration_ms=300_000,
            max_attempts=MaxAttempts(per_ip=3, per_email=4, before_captcha=2, before_lockout=5),
            progressive_delays=[0, 1000, 5000, 15000],
        )
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return LocalCache(clock=clock)


@pytest.fixture
def limiter(store, config):
    return RateLimiter(store, config)


class TestIPLimit:
    """Tests for the per-IP tier."""

    async def test_allows_up_to_budget(self, limiter):
        """Each attempt inside the budget is admitted with decreasing remaining points."""
        first = await limiter.check_ip("1.2.3.4")
        second = await limiter.check_ip("1.2.3.4")
        third = await limiter.check_ip("1.2.3.4")

        assert first.remaining_points == 2
        assert second.remaining_points == 1
        assert third.remaining_points == 0
        assert third.allowed
        assert third.limit == 3

    async def test_rejects_over_budget_with_block_duration(self, limiter):
        """The attempt past the budget raises with the block duration as retry time."""
        for _ in range(3):
            await limiter.check_ip("1.2.3.4")

        with pytest.raises(LimitExceeded) as exc_info:
            await limiter.check_ip("1.2.3.4")

        exc = exc_info.value
        assert exc.status_code == 429
        assert exc.expose_headers is True
        assert exc.result.remaining_points == 0
        assert exc.result.ms_before_next == 300_000
        assert exc.retry_after_seconds == 300

    async def test_block_expires(self, limiter, clock):
        """Once the block lapses the IP gets a fresh budget."""
        for _ in range(3):
            await limiter.check_ip("1.2.3.4")
        with pytest.raises(LimitExceeded):
            await limiter.check_ip("1.2.3.4")

        clock.advance(301)
        result = await limiter.check_ip("1.2.3.4")
        assert result.consumed_points == 1

    async def test_ips_are_independent(self, limiter):
        """Exhausting one IP does not affect another."""
        for _ in range(3):
            await limiter.check_ip("1.1.1.1")

        result = await limiter.check_ip("2.2.2.2")
        assert result.remaining_points == 2

    async def test_falls_back_to_local_counter_when_store_down(self, config):
        """Store outages switch the IP tier to the process-local fallback."""
        fallback = LocalCache()
        limiter = RateLimiter(BrokenStore(), config, fallback=fallback)

        with patch("authguard.service.rate_limiter.logger") as mock_logger:
            for _ in range(3):
                await limiter.check_ip("1.2.3.4")
            with pytest.raises(LimitExceeded):
                await limiter.check_ip("1.2.3.4")

        events = [call.args[0] for call in mock_logger.error.call_args_list]
        assert "ip_rate_limiter_fallback" in events
        consumed, _ = await fallback.peek_points("rl_ip:1.2.3.4")
        assert consumed == 4

    async def test_fallback_forgets_expired_addresses(self, config, clock):
        """Counters for addresses that never return are dropped once their window passes."""
        fallback = LocalCache(clock=clock)
        limiter = RateLimiter(BrokenStore(), config, fallback=fallback)
        for i in range(500):
            await limiter.check_ip(f"10.{i // 256}.{i % 256}.1")
        assert len(fallback._data) == 500

        clock.advance(24 * 3600)
        await limiter.check_ip("192.0.2.1")

        assert list(fallback._data) == ["rl_ip:192.0.2.1"]
        assert list(fallback._expires) == ["rl_ip:192.0.2.1"]


class TestEmailLimit:
    """Tests for the per-email tier."""

    async def test_email_is_case_insensitive(self, limiter):
        """Upper- and lower-case spellings share one counter."""
        await limiter.check_email("User@Example.com")
        result = await limiter.check_email("user@example.com")

        assert result.consumed_points == 2

    async def test_rejects_without_exposing_headers(self, limiter):
        """Over-budget emails raise a limit error that hides limiter state."""
        for _ in range(4):
            await limiter.check_email("user@example.com")

        with pytest.raises(LimitExceeded) as exc_info:
            await limiter.check_email("user@example.com")

        assert exc_info.value.expose_headers is False

    async def test_store_outage_propagates(self, config):
        """The email tier has no fallback; store errors reach the caller."""
        limiter = RateLimiter(BrokenStore(), config)

        with pytest.raises(StoreUnavailable):
            await limiter.check_email("user@example.com")


class TestProgressiveDelay:
    """Tests for the progressive delay schedule."""

    async def test_delay_follows_schedule(self, limiter):
        """Each recorded failure moves one step along the delay list."""
        assert await limiter.get_progressive_delay("1.2.3.4") == 0

        await limiter.increment_progressive_delay("1.2.3.4")
        assert await limiter.get_progressive_delay("1.2.3.4") == 1000

        await limiter.increment_progressive_delay("1.2.3.4")
        assert await limiter.get_progressive_delay("1.2.3.4") == 5000

    async def test_delay_caps_at_last_entry(self, limiter):
        """Failures beyond the schedule keep the largest delay."""
        for _ in range(10):
            await limiter.increment_progressive_delay("1.2.3.4")

        assert await limiter.get_progressive_delay("1.2.3.4") == 15000

    async def test_reset_clears_delay(self, limiter):
        await limiter.increment_progressive_delay("1.2.3.4")
        await limiter.reset_progressive_delay("1.2.3.4")

        assert await limiter.get_progressive_delay("1.2.3.4") == 0

    async def test_store_outage_means_no_delay(self, config):
        """Lookups that fail apply no delay instead of erroring."""
        limiter = RateLimiter(BrokenStore(), config)

        assert await limiter.get_progressive_delay("1.2.3.4") == 0
        await limiter.increment_progressive_delay("1.2.3.4")


class TestCaptchaGate:
    """Tests for the CAPTCHA threshold counters."""

    async def test_required_once_threshold_reached(self, limiter):
        """The gate closes when failures reach the configured count."""
        await limiter.increment_captcha_attempts("1.2.3.4")
        assert await limiter.check_captcha_required("1.2.3.4") is False

        await limiter.increment_captcha_attempts("1.2.3.4")
        assert await limiter.check_captcha_required("1.2.3.4") is True

    async def test_reset_reopens_gate(self, limiter):
        for _ in range(2):
            await limiter.increment_captcha_attempts("1.2.3.4")
        await limiter.reset_captcha_attempts("1.2.3.4")

        assert await limiter.check_captcha_required("1.2.3.4") is False

    async def test_store_outage_does_not_require_captcha(self, config):
        limiter = RateLimiter(BrokenStore(), config)

        assert await limiter.check_captcha_required("1.2.3.4") is False


class TestResetAllLimits:
    """Tests for clearing counters after a successful login."""

    async def test_clears_ip_and_email_counters(self, limiter):
        """A success wipes the IP, progressive, CAPTCHA and email counters."""
        await limiter.check_ip("1.2.3.4")
        await limiter.check_email("user@example.com")
        await limiter.increment_progressive_delay("1.2.3.4")
        await limiter.increment_captcha_attempts("1.2.3.4")

        await limiter.reset_all_limits("1.2.3.4", "User@Example.com")

        assert await limiter.get(limiter.ip, "1.2.3.4") is None
        assert await limiter.get(limiter.email, "user@example.com") is None
        assert await limiter.get_progressive_delay("1.2.3.4") == 0
        assert await limiter.check_captcha_required("1.2.3.4") is False

    async def test_clears_fallback_counter(self, store, config):
        """Counts taken during an outage are cleared too."""
        fallback = LocalCache()
        await fallback.consume_points("rl_ip:1.2.3.4", 3, 60_000, 0)
        limiter = RateLimiter(store, config, fallback=fallback)

        await limiter.reset_all_limits("1.2.3.4")

        assert await fallback.peek_points("rl_ip:1.2.3.4") == (0, 0)
