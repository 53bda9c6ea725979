"""
Tests for the retry utilities with exponential backoff.

This module tests the retry decorator and backoff calculation to ensure
transient failures are retried with bounded, jittered delays.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from pricesync.utils.error_handler import RetryableStatusError
from pricesync.utils.retry import backoff_delay, is_retryable_status, retry


class TestBackoffDelay:
    """Test backoff delay calculation."""

    def test_exponential_without_jitter(self):
        delays = [backoff_delay(n, base_delay=0.5, max_delay=60, jitter=False) for n in range(1, 5)]
        assert delays == [0.5, 1.0, 2.0, 4.0]

    def test_capped_at_max_delay(self):
        assert backoff_delay(20, base_delay=1.0, max_delay=20.0, jitter=False) == 20.0

    def test_jitter_stays_within_half_to_full(self):
        for attempt in range(1, 8):
            ceiling = min(0.4 * 2 ** (attempt - 1), 20.0)
            delay = backoff_delay(attempt, base_delay=0.4, max_delay=20.0)
            assert ceiling * 0.5 <= delay <= ceiling


class TestRetryDecorator:
    """Test the basic retry decorator functionality."""

    def test_retry_success_on_first_attempt(self):
        """Test that function succeeds on first attempt without retries."""
        @retry(max_attempts=3, base_delay=0.1)
        def test_func():
            return "success"

        assert test_func() == "success"

    @patch("pricesync.utils.retry.time.sleep")
    def test_retry_success_after_failures(self, mock_sleep):
        """Test that function succeeds after some failures."""
        attempt_count = 0

        @retry(max_attempts=3, base_delay=0.1)
        def test_func():
            nonlocal attempt_count
            attempt_count += 1
            if attempt_count < 3:
                raise ValueError("Temporary failure")
            return "success"

        assert test_func() == "success"
        assert attempt_count == 3
        assert mock_sleep.call_count == 2

    @patch("pricesync.utils.retry.time.sleep")
    def test_retry_max_attempts_exceeded(self, mock_sleep):
        """Test that retry stops after max attempts and re-raises."""
        attempt_count = 0

        @retry(max_attempts=3, base_delay=0.1)
        def test_func():
            nonlocal attempt_count
            attempt_count += 1
            raise ValueError("Persistent failure")

        with pytest.raises(ValueError) as exc_info:
            test_func()

        assert str(exc_info.value) == "Persistent failure"
        assert attempt_count == 3

    def test_non_matching_exception_is_not_retried(self):
        attempt_count = 0

        @retry(max_attempts=3, exceptions=(RetryableStatusError,))
        def test_func():
            nonlocal attempt_count
            attempt_count += 1
            raise KeyError("permanent")

        with pytest.raises(KeyError):
            test_func()
        assert attempt_count == 1

    @pytest.mark.asyncio
    async def test_async_retry_uses_asyncio_sleep(self):
        calls = AsyncMock(side_effect=[RetryableStatusError(503), RetryableStatusError(429), "ok"])
        logger = MagicMock()

        @retry(max_attempts=4, base_delay=0.4, jitter=False, exceptions=(RetryableStatusError,), logger=logger)
        async def fetch():
            return await calls()

        with patch("pricesync.utils.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await fetch() == "ok"

        assert [c.args[0] for c in mock_sleep.await_args_list] == [0.4, 0.8]
        assert logger.warning.call_count == 2
        logger.error.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_retry_logs_exhaustion(self):
        logger = MagicMock()

        @retry(max_attempts=2, base_delay=0.1, exceptions=(RetryableStatusError,), logger=logger)
        async def fetch():
            raise RetryableStatusError(500)

        with patch("pricesync.utils.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryableStatusError) as exc_info:
                await fetch()

        assert exc_info.value.status == 500
        logger.error.assert_called_once()


class TestRetryableStatus:
    """Test retryable status classification."""

    @pytest.mark.parametrize("status", [429, 500, 501, 502, 503, 504, 507, 520, 522, 524, 599])
    def test_retryable(self, status):
        assert is_retryable_status(status)

    @pytest.mark.parametrize("status", [200, 301, 400, 401, 403, 404, 422, 600])
    def test_permanent(self, status):
        assert not is_retryable_status(status)
