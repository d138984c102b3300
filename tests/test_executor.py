"""Unit tests for failure classification and the rate-limited executor."""

import random
import socket
from unittest.mock import MagicMock

import pytest

from mailwatch.exceptions import ExhaustedError, TransientError
from mailwatch.executor import (
    Classification,
    RateLimitedExecutor,
    classify_error,
    is_permission_error,
    retry_after_seconds,
)

from tests.gmail_test_helpers import RecordingSleep, make_http_error


class TestClassifyError:
    """Tests for classify_error()."""

    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_server_errors_retryable(self, status):
        """Test server errors retryable."""
        assert classify_error(make_http_error(status)) is Classification.RETRYABLE

    def test_429_rate_limited(self):
        """Test that 429 is classified as rate limited."""
        assert classify_error(make_http_error(429, "rateLimitExceeded")) is Classification.RATE_LIMITED

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded"])
    def test_403_quota_reasons_rate_limited(self, reason):
        """Test 403 quota reasons rate limited."""
        assert classify_error(make_http_error(403, reason)) is Classification.RATE_LIMITED

    def test_401_auth(self):
        """Test that 401 is classified as an auth failure."""
        assert classify_error(make_http_error(401, "authError")) is Classification.AUTH

    def test_403_permission_auth(self):
        """Test that a 403 permission error is classified as an auth failure."""
        error = make_http_error(403, "insufficientPermissions")
        assert classify_error(error) is Classification.AUTH
        assert is_permission_error(error)

    @pytest.mark.parametrize("status", [400, 404, 409])
    def test_other_4xx_terminal(self, status):
        """Test other 4xx terminal."""
        assert classify_error(make_http_error(status)) is Classification.TERMINAL

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError("timed out"),
            ConnectionResetError("reset"),
            socket.gaierror("dns"),
            TransientError("token endpoint down"),
        ],
    )
    def test_network_failures_retryable(self, error):
        """Test network failures retryable."""
        assert classify_error(error) is Classification.RETRYABLE

    def test_unknown_exception_terminal(self):
        """Test unknown exception terminal."""
        assert classify_error(ValueError("bug")) is Classification.TERMINAL

    def test_quota_403_is_not_permission_error(self):
        """Test quota 403 is not permission error."""
        assert not is_permission_error(make_http_error(403, "userRateLimitExceeded"))

    def test_retry_after_header(self):
        """Test retry after header."""
        error = make_http_error(429, "rateLimitExceeded", headers={"retry-after": "12"})
        assert retry_after_seconds(error) == 12.0
        assert retry_after_seconds(make_http_error(429)) is None


def failing_then(results):
    """Operation raising/returning the given results in order."""
    op = MagicMock(side_effect=list(results))
    return op


class TestRateLimitedExecutor:
    """Tests for RateLimitedExecutor.execute()."""

    def test_success_first_try(self, executor, sleep):
        """Test success first try."""
        assert executor.execute(lambda: "ok", name="op") == "ok"
        assert sleep.calls == []

    def test_retries_then_succeeds(self, executor, sleep):
        """Test retries then succeeds."""
        op = failing_then([make_http_error(503), make_http_error(500), {"ok": True}])
        assert executor.execute(op, name="op") == {"ok": True}
        assert op.call_count == 3
        assert len(sleep.calls) == 2

    def test_rate_limited_three_times_then_succeeds(self, executor, sleep):
        """Test rate limited three times then succeeds."""
        op = failing_then([make_http_error(429, "rateLimitExceeded")] * 3 + ["done"])
        assert executor.execute(op, name="op", account_id="acct-1") == "done"
        assert op.call_count == 4
        assert executor.state_for("acct-1").consecutive_failures == 0

    def test_backoff_bound(self, clock):
        """Test that backoff never exceeds the configured ceiling."""
        sleep = RecordingSleep()
        executor = RateLimitedExecutor(
            max_attempts=5, base_delay=1.0, max_delay=60.0, sleep=sleep, clock=clock
        )
        op = MagicMock(side_effect=make_http_error(503))

        with pytest.raises(ExhaustedError) as exc_info:
            executor.execute(op, name="users.watch")

        assert op.call_count == 5
        assert exc_info.value.attempts == 5
        assert len(sleep.calls) == 4
        assert all(delay <= 60.0 for delay in sleep.calls)
        assert sleep.total < 300

    def test_exhausted_chains_last_error(self, executor):
        """Test exhausted chains last error."""
        last = make_http_error(503)
        with pytest.raises(ExhaustedError) as exc_info:
            executor.execute(MagicMock(side_effect=last), name="op")
        assert exc_info.value.last_error is last
        assert exc_info.value.__cause__ is last

    def test_terminal_not_retried(self, executor, sleep):
        """Test terminal not retried."""
        error = make_http_error(400)
        op = MagicMock(side_effect=error)
        with pytest.raises(type(error)) as exc_info:
            executor.execute(op, name="op")
        assert exc_info.value is error
        assert op.call_count == 1
        assert sleep.calls == []

    def test_auth_reraised_unmodified(self, executor, sleep):
        """Test auth reraised unmodified."""
        error = make_http_error(401, "authError")
        op = MagicMock(side_effect=error)
        with pytest.raises(type(error)) as exc_info:
            executor.execute(op, name="op")
        assert exc_info.value is error
        assert op.call_count == 1

    def test_per_call_attempt_override(self, executor):
        """Test per call attempt override."""
        op = MagicMock(side_effect=TimeoutError("slow"))
        with pytest.raises(ExhaustedError):
            executor.execute(op, max_attempts=2, name="op")
        assert op.call_count == 2

    def test_retry_after_raises_delay(self, executor, sleep):
        """Test retry after raises delay."""
        op = failing_then(
            [make_http_error(429, "rateLimitExceeded", headers={"retry-after": "30"}), "ok"]
        )
        executor.execute(op, name="op")
        assert 30.0 <= sleep.calls[0] <= 60.0

    def test_rate_limit_blocks_other_calls_for_account(self, executor, sleep):
        """Test rate limit blocks other calls for account."""
        op = failing_then([make_http_error(429, "rateLimitExceeded"), "ok"])
        executor.execute(op, name="first", account_id="acct-1")
        backoff = sleep.calls[0]

        executor.execute(lambda: "ok", name="second", account_id="acct-1")
        assert len(sleep.calls) == 2
        assert sleep.calls[1] == pytest.approx(backoff)

        executor.execute(lambda: "ok", name="other", account_id="acct-2")
        assert len(sleep.calls) == 2

    def test_backoff_delay_formula(self, clock):
        """Test backoff delay formula."""
        executor = RateLimitedExecutor(
            base_delay=2.0, max_delay=60.0, rng=random.Random(7), sleep=RecordingSleep(), clock=clock
        )
        for attempt in range(4):
            delay = executor.backoff_delay(attempt)
            assert 2.0 * 2**attempt <= delay <= 2.0 * 2**attempt + 2.0
        assert executor.backoff_delay(10) == 60.0
