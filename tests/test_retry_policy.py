"""
Tests for Retry Policy

Verifies exponential backoff with full jitter and the bounded retry loop.
"""

from unittest.mock import Mock, patch

import pytest

from core.exceptions import EscrowUnavailable, InsufficientFunds, RetriesExhausted
from core.retry import backoff_delay, retry_call


class TestExponentialBackoff:
    """Full jitter: random(0, min(cap, base * 2^attempt))"""

    def test_full_jitter_bounds(self):
        """Delays stay inside the jitter envelope for each attempt"""
        for attempt, ceiling in [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0)]:
            for _ in range(50):
                assert 0 <= backoff_delay(attempt) <= ceiling

    def test_delay_capped(self):
        """Large attempt numbers never exceed the cap"""
        for _ in range(50):
            assert backoff_delay(20, base=1.0, cap=30.0) <= 30.0

    def test_uniform_called_with_ceiling(self):
        with patch("core.retry.random.uniform", return_value=0.5) as mock_uniform:
            assert backoff_delay(3, base=2.0, cap=30.0) == 0.5
        mock_uniform.assert_called_once_with(0, 16.0)

    def test_negative_attempt_treated_as_first(self):
        with patch("core.retry.random.uniform", return_value=0.0) as mock_uniform:
            backoff_delay(-1)
        mock_uniform.assert_called_once_with(0, 1.0)


class TestRetryCall:
    """Bounded retry loop"""

    def test_success_first_try(self):
        fn = Mock(return_value="ok")
        sleep = Mock()
        assert retry_call(fn, operation="op", retry_on=(EscrowUnavailable,), sleep=sleep) == "ok"
        sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        fn = Mock(side_effect=[EscrowUnavailable("503"), "ok"])
        sleep = Mock()
        assert retry_call(fn, operation="op", retry_on=(EscrowUnavailable,), sleep=sleep) == "ok"
        assert fn.call_count == 2
        assert sleep.call_count == 1

    def test_exhausted(self):
        """Every attempt fails: RetriesExhausted carries the last error"""
        error = EscrowUnavailable("down")
        fn = Mock(side_effect=error)
        sleep = Mock()
        with pytest.raises(RetriesExhausted) as exc_info:
            retry_call(fn, operation="escrow lock", retry_on=(EscrowUnavailable,), max_attempts=4, sleep=sleep)

        assert fn.call_count == 4
        assert sleep.call_count == 3
        assert exc_info.value.attempts == 4
        assert exc_info.value.original is error
        assert "escrow lock" in str(exc_info.value)

    def test_non_retryable_propagates(self):
        fn = Mock(side_effect=InsufficientFunds("empty"))
        sleep = Mock()
        with pytest.raises(InsufficientFunds):
            retry_call(fn, operation="op", retry_on=(EscrowUnavailable,), sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_sleep_uses_configured_bounds(self):
        fn = Mock(side_effect=[EscrowUnavailable("x"), EscrowUnavailable("x"), "ok"])
        sleep = Mock()
        retry_call(fn, operation="op", retry_on=(EscrowUnavailable,), base_delay=0.1, max_delay=0.15, sleep=sleep)
        assert all(0 <= c.args[0] <= 0.15 for c in sleep.call_args_list)
