"""
Tests for the batch concurrent price updater.

Tests cover:
- Completeness: N symbols with K unresolvable -> N-K quote fetches, K errors
- Circuit breaker gate (open -> no provider contact at all)
- Breaker feeding: failing runs add, clean runs reset, mixed runs leave it
- Batch partitioning and rate-limit sleeps
- Batch timeout cancels slow units and counts them as failures
- Per-symbol failures never abort the batch
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlmodel import select

from app.core.circuit_breaker import CircuitBreaker, CircuitState
from app.core.config import Settings
from app.core.typing import utc_now
from app.models.market import MarketData
from app.models.security import Security
from app.services.market_data import FetchOutcome, MarketDataService
from helpers import make_quote

SYMBOLS = ["AAA", "BBB", "CCC", "DDD", "EEE"]


def build_service(session, provider, breaker, **overrides) -> MarketDataService:
    options = dict(
        FINNHUB_API_KEY="test-key",
        API_DELAY_MS=0,
        QUOTE_RETRY_BACKOFF_SECONDS=0,
        HISTORICAL_RETRY_BACKOFF_SECONDS=0,
        BATCH_TIMEOUT_SECONDS=5.0,
    )
    options.update(overrides)
    return MarketDataService(session, provider, circuit_breaker=breaker, settings=Settings(**options))


def script_all_quotes(provider, symbols=SYMBOLS, price=50):
    for symbol in symbols:
        provider.quotes[symbol] = make_quote(price, high=price + 1, low=price - 1, previous_close=price)


class TestCompleteness:
    @pytest.mark.asyncio
    async def test_all_symbols_refreshed(self, service, fake_provider, test_session, breaker, sample_securities):
        script_all_quotes(fake_provider)

        result = await service.bulk_update_current_prices(SYMBOLS)

        assert result.skipped is False
        assert (result.successes, result.failures) == (5, 0)
        assert fake_provider.quote_calls() == 5
        assert len(test_session.exec(select(MarketData)).all()) == 5
        for security in test_session.exec(select(Security)).all():
            assert security.current_price == Decimal("50")

    @pytest.mark.asyncio
    async def test_unresolvable_symbols_never_fetched(self, service, fake_provider, sample_securities):
        script_all_quotes(fake_provider)
        symbols = SYMBOLS + ["UNK1", "UNK2"]

        result = await service.bulk_update_current_prices(symbols)

        assert fake_provider.quote_calls() == len(symbols) - 2
        assert fake_provider.quote_calls("UNK1") == 0
        assert fake_provider.quote_calls("UNK2") == 0
        assert result.failures == 2
        assert result.successes == 5
        assert result.count(FetchOutcome.RESOLUTION_ERROR) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, service, fake_provider, sample_securities):
        script_all_quotes(fake_provider)
        fake_provider.quotes["BBB"] = make_quote(0, high=0, low=0)
        fake_provider.quotes["DDD"] = ConnectionError("reset")

        result = await service.bulk_update_current_prices(SYMBOLS)

        assert result.successes == 3
        assert result.failures == 2
        outcomes = {a.symbol: a.outcome for a in result.attempts}
        assert outcomes["BBB"] == FetchOutcome.INVALID_DATA
        assert outcomes["DDD"] == FetchOutcome.PROVIDER_ERROR
        assert outcomes["AAA"] == FetchOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_stale_fallback_counts_as_failure(self, service, fake_provider, test_session, sample_securities):
        script_all_quotes(fake_provider)
        fake_provider.quotes["AAA"] = ConnectionError("down")
        price = Decimal("40")
        test_session.add(
            MarketData(
                security_id=sample_securities[0].id,
                market_date=utc_now().date() - timedelta(days=1),
                open_price=price,
                high_price=price,
                low_price=price,
                close_price=price,
                adjusted_close_price=price,
                volume=10,
            )
        )
        test_session.commit()

        result = await service.bulk_update_current_prices(SYMBOLS)

        outcomes = {a.symbol: a.outcome for a in result.attempts}
        assert outcomes["AAA"] == FetchOutcome.STALE_FALLBACK
        assert result.failures == 1

    @pytest.mark.asyncio
    async def test_empty_symbol_list(self, service, fake_provider, breaker):
        breaker.record_batch_result(successes=0, failures=2)

        result = await service.bulk_update_current_prices([])

        assert (result.successes, result.failures) == (0, 0)
        # Zero failures is a clean run
        assert breaker.consecutive_failures == 0


class TestCircuitBreakerGate:
    @pytest.mark.asyncio
    async def test_open_breaker_skips_everything(self, service, fake_provider, breaker, sample_securities):
        script_all_quotes(fake_provider)
        breaker.record_batch_result(successes=0, failures=5)
        assert breaker.is_open()

        result = await service.bulk_update_current_prices(SYMBOLS + ["NEW"])

        assert result.skipped is True
        assert result.total == 0
        assert fake_provider.quote_calls() == 0
        assert fake_provider.calls["profile"] == []
        assert breaker.consecutive_failures == 5

    @pytest.mark.asyncio
    async def test_single_symbol_path_not_gated(self, service, fake_provider, breaker, sample_securities):
        script_all_quotes(fake_provider)
        breaker.record_batch_result(successes=0, failures=5)

        record = await service.fetch_and_store_current_market_data("AAA")

        assert record.close_price == Decimal("50")

    @pytest.mark.asyncio
    async def test_failing_runs_open_breaker(self, service, fake_provider, breaker, sample_securities):
        # No quotes scripted: every fetch fails
        for round_number in range(1, 5):
            result = await service.bulk_update_current_prices(["AAA"])
            assert result.failures == 1
            assert breaker.consecutive_failures == round_number
            assert breaker.state == CircuitState.CLOSED

        await service.bulk_update_current_prices(["AAA"])
        assert breaker.consecutive_failures == 5
        assert breaker.is_open()

    @pytest.mark.asyncio
    async def test_mixed_run_leaves_counter(self, service, fake_provider, breaker, sample_securities):
        breaker.record_batch_result(successes=0, failures=3)
        script_all_quotes(fake_provider)
        fake_provider.quotes["AAA"] = ConnectionError("down")

        await service.bulk_update_current_prices(SYMBOLS)

        assert breaker.consecutive_failures == 3

    @pytest.mark.asyncio
    async def test_clean_run_resets_counter(self, service, fake_provider, breaker, sample_securities):
        breaker.record_batch_result(successes=0, failures=4)
        script_all_quotes(fake_provider)

        await service.bulk_update_current_prices(SYMBOLS)

        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_half_open_probe_resets(self, test_session, fake_provider, sample_securities):
        breaker = CircuitBreaker(name="probe", failure_threshold=5, recovery_timeout=60.0)
        breaker.record_batch_result(successes=0, failures=5)
        breaker._last_failure_time = datetime.now(timezone.utc) - timedelta(minutes=5)
        service = build_service(test_session, fake_provider, breaker)
        script_all_quotes(fake_provider)

        result = await service.bulk_update_current_prices(SYMBOLS)

        assert result.skipped is False
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0


class TestBatching:
    @pytest.mark.asyncio
    async def test_batches_and_rate_limit_sleeps(self, test_session, fake_provider, breaker, sample_securities):
        service = build_service(test_session, fake_provider, breaker, BATCH_SIZE=2, API_DELAY_MS=50)
        script_all_quotes(fake_provider)

        with patch("app.services.market_data.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await service.bulk_update_current_prices(SYMBOLS)

        assert result.successes == 5
        delays = [call.args[0] for call in mock_sleep.await_args_list]
        # One per unit after its fetch, twice that between the three batches
        assert delays.count(0.05) == 5
        assert delays.count(0.1) == 2

    @pytest.mark.asyncio
    async def test_batch_size_larger_than_list(self, test_session, fake_provider, breaker, sample_securities):
        service = build_service(test_session, fake_provider, breaker, BATCH_SIZE=50)
        script_all_quotes(fake_provider)

        result = await service.bulk_update_current_prices(SYMBOLS)
        assert result.successes == 5


class TestBatchTimeout:
    @pytest.mark.asyncio
    async def test_slow_unit_cancelled_and_counted(self, test_session, fake_provider, breaker, sample_securities):
        service = build_service(test_session, fake_provider, breaker, BATCH_TIMEOUT_SECONDS=0.2)
        script_all_quotes(fake_provider)
        fake_provider.quote_delay["CCC"] = 5.0

        started = datetime.now(timezone.utc)
        result = await service.bulk_update_current_prices(SYMBOLS)
        elapsed = (datetime.now(timezone.utc) - started).total_seconds()

        assert elapsed < 3.0
        assert result.successes == 4
        assert result.failures == 1
        outcomes = {a.symbol: a.outcome for a in result.attempts}
        assert outcomes["CCC"] == FetchOutcome.TIMEOUT

        # The cancelled unit wrote nothing
        ccc = test_session.exec(select(Security).where(Security.symbol == "CCC")).one()
        assert ccc.current_price is None
        assert service.get_latest_market_data("CCC") is None
