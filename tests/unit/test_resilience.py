"""
Unit tests for resilience patterns.

Tests the retry decorator and bounded polling.
"""

from unittest.mock import patch

import pytest

from patchkeeper.errors import StoreConnectivityError, StoreError
from patchkeeper.services.resilience import poll_until, with_sync_retry


class TestSyncRetryDecorator:
    """Tests for with_sync_retry decorator."""

    def test_successful_call_no_retry(self):
        """Test successful call doesn't retry."""
        call_count = 0

        @with_sync_retry(max_attempts=3, min_wait=0)
        def success():
            nonlocal call_count
            call_count += 1
            return "ok"

        assert success() == "ok"
        assert call_count == 1

    def test_retries_on_failure(self):
        """Test that failures trigger retries."""
        call_count = 0

        @with_sync_retry(max_attempts=3, min_wait=0.01, retry_exceptions=(StoreError,))
        def fail_twice():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise StoreError("transient")
            return "ok"

        assert fail_twice() == "ok"
        assert call_count == 3

    def test_max_attempts_exceeded(self):
        """Test that the last exception propagates after max attempts."""
        call_count = 0

        @with_sync_retry(max_attempts=2, min_wait=0, retry_exceptions=(StoreError,))
        def always_fail():
            nonlocal call_count
            call_count += 1
            raise StoreConnectivityError("link failure")

        with pytest.raises(StoreConnectivityError):
            always_fail()
        assert call_count == 2

    def test_non_retryable_exception_propagates_immediately(self):
        """Test that exceptions outside retry_exceptions are not retried."""
        call_count = 0

        @with_sync_retry(max_attempts=3, min_wait=0, retry_exceptions=(StoreError,))
        def bad_input():
            nonlocal call_count
            call_count += 1
            raise ValueError("not transient")

        with pytest.raises(ValueError):
            bad_input()
        assert call_count == 1

    def test_backoff_is_exponential_and_capped(self):
        """Test wait times double and stop at max_wait."""

        @with_sync_retry(max_attempts=5, min_wait=1.0, max_wait=3.0, retry_exceptions=(OSError,))
        def always_fail():
            raise OSError("busy")

        with patch("patchkeeper.services.resilience.time.sleep") as mock_sleep:
            with pytest.raises(OSError):
                always_fail()

        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 3.0, 3.0]


class TestPollUntil:
    """Tests for poll_until."""

    def test_satisfied_on_first_check(self):
        sleeps = []

        result = poll_until(lambda: True, interval_seconds=5, max_attempts=3, sleep=sleeps.append)

        assert result.satisfied == True
        assert result.attempts == 1
        assert sleeps == []

    def test_satisfied_after_waiting(self):
        answers = iter([False, False, True])
        sleeps = []

        result = poll_until(lambda: next(answers), interval_seconds=5, max_attempts=5, sleep=sleeps.append)

        assert result.satisfied == True
        assert result.attempts == 3
        assert sleeps == [5, 5]

    def test_gives_up_after_max_attempts(self):
        """Never loops unbounded."""
        sleeps = []

        result = poll_until(lambda: False, interval_seconds=2, max_attempts=4, sleep=sleeps.append)

        assert result.timed_out == True
        assert result.attempts == 4
        # No sleep after the final check
        assert len(sleeps) == 3
