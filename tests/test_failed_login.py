"""Tests for the failed login tracker."""

import itertools
from unittest.mock import patch

import pytest

from authguard.config import AuthLimits, MaxAttempts, RateLimitConfig
from authguard.service.failed_login import FailedLoginTracker
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import LocalCache


class BrokenStore:
    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise StoreUnavailable("redis unavailable")

        return _fail


@pytest.fixture
def store():
    return LocalCache()


@pytest.fixture
def tracker(store):
    config = RateLimitConfig(auth=AuthLimits(max_attempts=MaxAttempts(per_ip=3, per_email=2)))
    return FailedLoginTracker(store, config)


def _ticking_clock(start: int = 1_700_000_000_000):
    counter = itertools.count(start, 10)
    return lambda: next(counter)


class TestRecordFailedAttempt:
    """Tests for recording attempts and counters."""

    async def test_records_under_ip_and_email(self, tracker, store):
        """An attempt is appended to both the IP and email audit lists."""
        attempt = await tracker.record_failed_attempt("1.2.3.4", "User@Example.com", "Invalid credentials")

        assert attempt.email == "user@example.com"
        assert len(await store.list_records("failed_login:ip:1.2.3.4")) == 1
        assert len(await store.list_records("failed_login:email:user@example.com")) == 1

    async def test_increments_failure_counters(self, tracker):
        await tracker.record_failed_attempt("1.2.3.4", "user@example.com")
        await tracker.record_failed_attempt("1.2.3.4", "user@example.com")

        assert await tracker.get_failure_count("1.2.3.4", "ip") == 2
        assert await tracker.get_failure_count("user@example.com", "email") == 2

    async def test_without_email_only_ip_counted(self, tracker, store):
        await tracker.record_failed_attempt("1.2.3.4")

        assert await tracker.get_failure_count("1.2.3.4", "ip") == 1
        assert await store.scan_keys("failed_login:email:*") == []

    async def test_logs_recorded_event(self, tracker):
        with patch("authguard.service.failed_login.logger") as mock_logger:
            await tracker.record_failed_attempt("1.2.3.4", "user@example.com")

        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args.args[0] == "failed_login_recorded"
        # The raw address never reaches the log
        assert "user@example.com" not in str(mock_logger.info.call_args)

    async def test_store_outage_is_not_raised(self):
        """Recording degrades to a no-op when the store is down."""
        tracker = FailedLoginTracker(BrokenStore())

        attempt = await tracker.record_failed_attempt("1.2.3.4", "user@example.com")

        assert attempt.ip == "1.2.3.4"
        assert await tracker.get_failure_count("1.2.3.4", "ip") == 0


class TestGetFailedAttempts:
    """Tests for reading the audit trail."""

    async def test_merges_ip_and_email_newest_first(self, tracker):
        """Attempts stored under both keys are returned once, newest first."""
        with patch("authguard.service.failed_login._now_ms", side_effect=_ticking_clock()):
            await tracker.record_failed_attempt("1.2.3.4", "user@example.com", "first")
            await tracker.record_failed_attempt("1.2.3.4", "user@example.com", "second")
            attempts = await tracker.get_failed_attempts("1.2.3.4", 900)

        assert [a.reason for a in attempts] == ["second", "first"]

    async def test_window_excludes_old_attempts(self, tracker):
        times = iter([1_000_000, 1_000_000 + 10 * 60 * 1000, 1_000_000 + 10 * 60 * 1000])
        with patch("authguard.service.failed_login._now_ms", side_effect=lambda: next(times)):
            await tracker.record_failed_attempt("1.2.3.4", reason="old")
            await tracker.record_failed_attempt("1.2.3.4", reason="recent")
            attempts = await tracker.get_failed_attempts("1.2.3.4", 5 * 60)

        assert [a.reason for a in attempts] == ["recent"]

    async def test_skips_corrupt_records(self, tracker, store):
        await store.append_record("failed_login:ip:1.2.3.4", "{not json", 60)
        await tracker.record_failed_attempt("1.2.3.4")

        attempts = await tracker.get_failed_attempts("1.2.3.4", 900)

        assert len(attempts) == 1


class TestResetAndBlocking:
    """Tests for resets and blocked checks."""

    async def test_reset_clears_lists_and_counters(self, tracker):
        await tracker.record_failed_attempt("1.2.3.4", "user@example.com")

        await tracker.reset_failed_attempts("1.2.3.4")
        await tracker.reset_failed_attempts("user@example.com")

        assert await tracker.get_failed_attempts("1.2.3.4", 900) == []
        assert await tracker.get_failure_count("1.2.3.4", "ip") == 0
        assert await tracker.get_failure_count("user@example.com", "email") == 0

    async def test_ip_blocked_at_threshold(self, tracker):
        for _ in range(3):
            await tracker.increment_failure_count("1.2.3.4", "ip")

        assert await tracker.is_blocked("1.2.3.4") is True
        assert await tracker.is_blocked("5.6.7.8") is False

    async def test_email_blocked_at_threshold(self, tracker):
        for _ in range(2):
            await tracker.increment_failure_count("user@example.com", "email")

        assert await tracker.is_blocked("User@Example.com") is True


class TestStatistics:
    """Tests for the monitoring snapshot."""

    async def test_reports_counts_blocked_and_locked(self, tracker):
        for _ in range(3):
            await tracker.record_failed_attempt("1.2.3.4", "user@example.com")
        await tracker.record_failed_attempt("5.6.7.8")
        await tracker.mark_locked("User@Example.com", "Too many failed login attempts", 60)

        stats = await tracker.get_statistics()

        assert stats["failedAttemptsByIP"] == {"1.2.3.4": 3, "5.6.7.8": 1}
        assert stats["failedAttemptsByEmail"] == {"user@example.com": 3}
        assert stats["blockedIPs"] == ["1.2.3.4"]
        assert stats["lockedAccounts"] == ["user@example.com"]

    async def test_clear_lock_marker(self, tracker):
        await tracker.mark_locked("user@example.com", "reason", 60)
        await tracker.clear_lock_marker("user@example.com")

        stats = await tracker.get_statistics()
        assert stats["lockedAccounts"] == []

    async def test_store_outage_returns_empty_snapshot(self):
        stats = await FailedLoginTracker(BrokenStore()).get_statistics()

        assert stats == {
            "failedAttemptsByIP": {},
            "failedAttemptsByEmail": {},
            "blockedIPs": [],
            "lockedAccounts": [],
        }
