"""
Tests for provider retry wrapper.

Tests cover:
- Success on first attempt (no sleep)
- Success after transient failures
- Exhausted budget raises ProviderError chained to the last failure
- Fixed backoff between attempts, none after the last
- Argument passthrough and invalid budgets
"""

import pytest
from unittest.mock import AsyncMock, patch

from app.core.errors import ProviderError
from app.core.retry import with_retry


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures: int, value="ok", error=ConnectionError):
        self.failures = failures
        self.value = value
        self.error = error
        self.calls = []

    async def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if len(self.calls) <= self.failures:
            raise self.error(f"attempt {len(self.calls)} failed")
        return self.value


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        fn = Flaky(failures=0)
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await with_retry(fn, attempts=3, backoff_seconds=1.0)()

        assert result == "ok"
        assert len(fn.calls) == 1
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        fn = Flaky(failures=2)
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await with_retry(fn, attempts=3, backoff_seconds=1.0)()

        assert result == "ok"
        assert len(fn.calls) == 3
        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_exhausted_budget_raises_provider_error(self):
        fn = Flaky(failures=10, error=TimeoutError)
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(ProviderError) as exc_info:
                await with_retry(fn, attempts=2, backoff_seconds=2.0, operation="fetch_daily_candles")()

        err = exc_info.value
        assert err.operation == "fetch_daily_candles"
        assert err.attempts == 2
        assert isinstance(err.cause, TimeoutError)
        assert err.__cause__ is err.cause
        assert len(fn.calls) == 2
        # Backoff only between attempts
        assert mock_sleep.await_count == 1
        mock_sleep.assert_awaited_with(2.0)

    @pytest.mark.asyncio
    async def test_any_exception_is_retried(self):
        fn = Flaky(failures=1, error=ValueError)
        result = await with_retry(fn, attempts=2, backoff_seconds=0)()
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_zero_backoff_never_sleeps(self):
        fn = Flaky(failures=2)
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await with_retry(fn, attempts=3, backoff_seconds=0)()
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_arguments_passed_through(self):
        fn = Flaky(failures=1)
        await with_retry(fn, attempts=2, backoff_seconds=0)("AAPL", resolution="D")

        assert fn.calls == [(("AAPL",), {"resolution": "D"}), (("AAPL",), {"resolution": "D"})]

    @pytest.mark.asyncio
    async def test_single_attempt_budget(self):
        fn = Flaky(failures=1)
        with pytest.raises(ProviderError):
            await with_retry(fn, attempts=1, backoff_seconds=0)()
        assert len(fn.calls) == 1

    def test_invalid_attempts_rejected(self):
        with pytest.raises(ValueError):
            with_retry(Flaky(failures=0), attempts=0, backoff_seconds=0)
