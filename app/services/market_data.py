"""
Market data ingestion service.

Single-symbol write path:
    resolve security -> fetch quote (retried) -> validate quote -> map onto
    today's record -> validate record -> update security price state ->
    save record. Any failure after resolution falls back to the latest stored
    record when it is still fresh, otherwise the failure propagates.

Historical path:
    fetch candle range -> skip weekends and invalid candles -> map and
    validate each day -> save as one batch, one-by-one on integrity errors.

Bulk path:
    circuit breaker gate -> batches of BATCH_SIZE -> one asyncio task per
    resolved security, bounded by BATCH_TIMEOUT_SECONDS -> feed the breaker.

Database work never awaits between mutating and committing, so a unit that
is cancelled on batch timeout can only stop at a provider call or at its
rate-limit sleep and leaves no partial write behind.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from app.core.config import Settings, settings as default_settings
from app.core.errors import (
    ErrorHandler,
    InvalidMarketDataError,
    ProviderError,
    SecurityResolutionError,
    capture_exception,
)
from app.core.typing import as_utc, utc_now
from app.models.market import MarketData
from app.models.security import Security
from app.providers.base import MarketDataProvider
from app.schemas import CandleSeries, Quote
from app.services.fetcher import MarketDataFetcher
from app.services.market_store import MarketDataStore
from app.services.securities import SecurityRegistry
from app.services.validation import MarketDataValidator, is_market_day, last_market_day

logger = structlog.get_logger(__name__)

CIRCUIT_BREAKER_NAME = "market_data"


class FetchOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_DATA = "invalid_data"
    PROVIDER_ERROR = "provider_error"
    PERSISTENCE_ERROR = "persistence_error"
    STALE_FALLBACK = "stale_fallback"
    RESOLUTION_ERROR = "resolution_error"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class FetchAttemptResult:
    """Outcome of one symbol's refresh. Only SUCCESS counts as a success."""

    symbol: str
    outcome: FetchOutcome
    record: Optional[MarketData] = None
    error: Optional[str] = None
    exception: Optional[Exception] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.outcome == FetchOutcome.SUCCESS


@dataclass
class BulkUpdateResult:
    successes: int = 0
    failures: int = 0
    skipped: bool = False
    attempts: List[FetchAttemptResult] = field(default_factory=list)

    def add(self, attempt: FetchAttemptResult) -> None:
        self.attempts.append(attempt)
        if attempt.ok:
            self.successes += 1
        else:
            self.failures += 1

    @property
    def total(self) -> int:
        return self.successes + self.failures

    def count(self, outcome: FetchOutcome) -> int:
        return sum(1 for a in self.attempts if a.outcome == outcome)


@dataclass
class MarketDataStats:
    active_securities: int
    today_records: int
    last_market_day_records: int
    circuit_breaker_open: bool
    consecutive_failures: int
    last_market_day: Optional[date] = None
    stale_securities: int = 0
    significant_movers: int = 0

    @classmethod
    def degraded(cls) -> "MarketDataStats":
        return cls(0, 0, 0, True, -1)


def market_data_circuit_breaker(settings: Settings = default_settings) -> CircuitBreaker:
    """Process-wide breaker for the bulk refresh, configured from settings."""
    timeout_minutes = settings.CIRCUIT_BREAKER_TIMEOUT_MINUTES
    return CircuitBreakerRegistry.get(
        CIRCUIT_BREAKER_NAME,
        failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout=timeout_minutes * 60 if timeout_minutes > 0 else None,
    )


def collect_market_data_stats(
    store: MarketDataStore,
    breaker: CircuitBreaker,
    today: Optional[date] = None,
    settings: Settings = default_settings,
) -> MarketDataStats:
    """Status snapshot for health endpoints. Degraded snapshot on any error."""
    try:
        today = today or utc_now().date()
        previous = last_market_day(today)
        return MarketDataStats(
            active_securities=store.count_active_securities(),
            today_records=store.count_records_on(today),
            last_market_day_records=store.count_records_on(previous),
            circuit_breaker_open=breaker.is_open(),
            consecutive_failures=breaker.consecutive_failures,
            last_market_day=previous,
            stale_securities=len(store.find_stale_securities(settings.STALE_THRESHOLD_HOURS)),
            significant_movers=len(store.find_significant_movers(settings.SIGNIFICANT_CHANGE_THRESHOLD_PERCENT)),
        )
    except Exception as e:
        capture_exception(e, context={"operation": "market_data_stats"})
        return MarketDataStats.degraded()


def _classify(exc: Exception) -> FetchOutcome:
    if isinstance(exc, InvalidMarketDataError):
        return FetchOutcome.INVALID_DATA
    if isinstance(exc, ProviderError):
        return FetchOutcome.PROVIDER_ERROR
    if isinstance(exc, SecurityResolutionError):
        return FetchOutcome.RESOLUTION_ERROR
    if isinstance(exc, SQLAlchemyError):
        return FetchOutcome.PERSISTENCE_ERROR
    return FetchOutcome.ERROR


class MarketDataService:
    """
    Ingestion pipeline for one database session.

    Args:
        session: SQLModel session shared by the store and the registry
        provider: Upstream market-data client
        registry: Security resolution collaborator (built from session/provider if omitted)
        circuit_breaker: Gate over bulk refreshes (process-wide one if omitted)
        settings: Thresholds, budgets and delays
    """

    def __init__(
        self,
        session: Session,
        provider: MarketDataProvider,
        registry: Optional[SecurityRegistry] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        settings: Settings = default_settings,
    ):
        self.session = session
        self.settings = settings
        self.store = MarketDataStore(session)
        self.registry = registry or SecurityRegistry(session, provider, settings)
        self.fetcher = MarketDataFetcher(provider, self.store, settings)
        self.validator = MarketDataValidator(settings)
        self.circuit_breaker = circuit_breaker or market_data_circuit_breaker(settings)

    # --- Resolution --------------------------------------------------------

    async def resolve_security(self, symbol: str) -> Security:
        """
        Existing security for ``symbol``, or a newly created one.

        Existing securities without a sector get a best-effort sector refresh
        once they are older than SECTOR_REFRESH_AGE_HOURS.

        Raises:
            SecurityResolutionError: unknown symbol that could not be created
        """
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise SecurityResolutionError(symbol, "empty symbol")

        security = self.registry.find_existing_security(symbol)
        if security is not None:
            if self.registry.needs_sector_update(security):
                with ErrorHandler("update_security_sector", context={"symbol": symbol}):
                    security = await self.registry.update_security_sector(security)
            return security

        logger.info("Security not found, creating", symbol=symbol)
        try:
            return await self.registry.create_security_from_symbol(symbol)
        except SecurityResolutionError:
            raise
        except Exception as e:
            if isinstance(e, SQLAlchemyError):
                self.session.rollback()
            raise SecurityResolutionError(symbol, str(e)) from e

    # --- Current quote -----------------------------------------------------

    async def fetch_and_store_current_market_data(self, symbol: str) -> MarketData:
        """
        Refresh today's record and the security's price from a live quote.

        Resolution errors propagate as-is. Any later failure is answered with
        the latest stored record if it is still fresh, otherwise re-raised.
        """
        security = await self.resolve_security(symbol)
        attempt = await self._refresh_security(security)
        if attempt.exception is not None:
            raise attempt.exception
        return attempt.record

    async def _refresh_security(self, security: Security) -> FetchAttemptResult:
        symbol = security.symbol
        try:
            record = await self._store_current_quote(security)
            return FetchAttemptResult(symbol, FetchOutcome.SUCCESS, record=record)
        except Exception as e:
            if isinstance(e, SQLAlchemyError):
                self.session.rollback()

            cached = self._fresh_cached_record(security)
            if cached is not None:
                logger.warning(
                    "Serving cached market data after fetch failure",
                    symbol=symbol,
                    market_date=str(cached.market_date),
                    last_updated=str(cached.last_updated),
                    error=str(e),
                )
                return FetchAttemptResult(symbol, FetchOutcome.STALE_FALLBACK, record=cached, error=str(e))

            logger.error(
                "Failed to fetch market data",
                symbol=symbol,
                error=str(e),
                error_type=type(e).__name__,
            )
            return FetchAttemptResult(symbol, _classify(e), error=str(e), exception=e)

    async def _store_current_quote(self, security: Security) -> MarketData:
        symbol = security.symbol
        quote = await self.fetcher.fetch_current_quote(symbol, security)

        reason = self.validator.validate_quote(quote)
        if reason:
            logger.warning("Rejected invalid quote", symbol=symbol, reason=reason)
            self.validator.raise_if_invalid(reason, symbol)

        record = self.store.get_or_create_record(security, utc_now().date(), self.settings.DATA_SOURCE_NAME)
        self._apply_quote(record, quote)

        reason = self.validator.validate_record(record)
        if reason:
            self._discard_changes(record)
            logger.warning("Rejected invalid market data record", symbol=symbol, reason=reason)
            self.validator.raise_if_invalid(reason, symbol)

        self._update_price_state(security, quote.current)

        # Price state is already committed, a failed record save only gets logged
        with ErrorHandler(
            "save_market_data",
            context={"symbol": symbol, "market_date": str(record.market_date)},
            level="error",
        ):
            record = self.store.save_record(record)

        logger.info(
            "Market data stored",
            symbol=symbol,
            market_date=str(record.market_date),
            close=str(record.close_price),
        )
        return record

    @staticmethod
    def _apply_quote(record: MarketData, quote: Quote) -> None:
        # Pre-market quotes report o=0
        if quote.open is not None and quote.open > 0:
            record.open_price = quote.open
        else:
            record.open_price = quote.current
        record.high_price = quote.high
        record.low_price = quote.low
        record.close_price = quote.current
        record.adjusted_close_price = quote.current
        if record.volume is None:
            record.volume = 0  # quotes carry no volume

    def _update_price_state(self, security: Security, new_price: Decimal) -> None:
        self.validator.check_significant_change(security.symbol, security.current_price, new_price)
        security.apply_price(new_price)
        self.store.save_security(security)
        logger.debug(
            "Updated security price",
            symbol=security.symbol,
            price=str(security.current_price),
            change=str(security.price_change),
            change_percent=str(security.price_change_percent),
        )

    def _discard_changes(self, record: MarketData) -> None:
        if record.id is not None:
            self.session.expire(record)

    # --- Staleness ---------------------------------------------------------

    def is_fresh(self, record: MarketData) -> bool:
        last_updated = as_utc(record.last_updated)
        if last_updated is None:
            return False
        return last_updated >= utc_now() - timedelta(hours=self.settings.STALE_THRESHOLD_HOURS)

    def _fresh_cached_record(self, security: Security) -> Optional[MarketData]:
        latest = self.store.find_latest_record(security)
        if latest is not None and self.is_fresh(latest):
            return latest
        return None

    # --- Historical candles --------------------------------------------------

    async def fetch_and_store_historical_market_data(self, symbol: str, from_date: date, to_date: date) -> int:
        """
        Ingest daily candles for an inclusive date range.

        Returns:
            Number of records persisted.
        """
        if from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")

        security = await self.resolve_security(symbol)
        candles = await self.fetcher.fetch_daily_candles(security.symbol, from_date, to_date)
        if candles.is_empty:
            logger.info("No candle data for range", symbol=security.symbol, from_date=str(from_date), to_date=str(to_date))
            return 0

        entries: List[tuple] = []
        records: List[MarketData] = []
        skipped_weekend = 0
        skipped_invalid = 0

        with self.session.no_autoflush:
            for index, timestamp in enumerate(candles.timestamps):
                market_date = datetime.fromtimestamp(timestamp, tz=timezone.utc).date()
                if not is_market_day(market_date):
                    skipped_weekend += 1
                    continue

                reason = self.validator.validate_candle_at(candles, index)
                if reason:
                    logger.warning("Skipping invalid candle", symbol=security.symbol, market_date=str(market_date), reason=reason)
                    skipped_invalid += 1
                    continue

                record = self._build_candle_record(security, candles, index, market_date)
                if record is None:
                    skipped_invalid += 1
                    continue
                entries.append((market_date, index))
                records.append(record)

        def rebuild(position: int) -> Optional[MarketData]:
            market_date, index = entries[position]
            return self._build_candle_record(security, candles, index, market_date)

        saved = self.store.save_records(records, rebuild=rebuild)

        logger.info(
            "Historical market data stored",
            symbol=security.symbol,
            from_date=str(from_date),
            to_date=str(to_date),
            saved=saved,
            skipped_weekend=skipped_weekend,
            skipped_invalid=skipped_invalid,
        )
        return saved

    def _build_candle_record(
        self, security: Security, candles: CandleSeries, index: int, market_date: date
    ) -> Optional[MarketData]:
        record = self.store.get_or_create_record(security, market_date, self.settings.DATA_SOURCE_NAME)
        close = candles.value_at(candles.close, index)
        record.open_price = candles.value_at(candles.open, index)
        record.high_price = candles.value_at(candles.high, index)
        record.low_price = candles.value_at(candles.low, index)
        record.close_price = close
        record.adjusted_close_price = close
        volume = candles.value_at(candles.volume, index)
        record.volume = volume if volume is not None else 0

        reason = self.validator.validate_record(record)
        if reason:
            self._discard_changes(record)
            logger.warning("Skipping invalid market data record", symbol=security.symbol, market_date=str(market_date), reason=reason)
            return None
        return record

    # --- Bulk refresh ------------------------------------------------------

    async def bulk_update_current_prices(self, symbols: Sequence[str]) -> BulkUpdateResult:
        """
        Refresh current prices for many symbols, batch by batch.

        Skipped entirely while the circuit breaker is open. One symbol's
        failure never aborts the run; failures are counted and fed to the
        breaker at the end.
        """
        if self.circuit_breaker.is_open():
            logger.warning(
                "Circuit breaker open, skipping bulk price update",
                symbols=len(symbols),
                consecutive_failures=self.circuit_breaker.consecutive_failures,
            )
            return BulkUpdateResult(skipped=True)

        result = BulkUpdateResult()
        batch_size = max(1, self.settings.BATCH_SIZE)
        batches = [list(symbols[i : i + batch_size]) for i in range(0, len(symbols), batch_size)]

        for number, batch in enumerate(batches, start=1):
            if number > 1:
                await asyncio.sleep(self.settings.api_delay_seconds * 2)
            logger.debug("Processing batch", batch=number, batches=len(batches), size=len(batch))
            await self._run_batch(batch, result)

        self.circuit_breaker.record_batch_result(result.successes, result.failures)

        logger.info(
            "Bulk price update complete",
            symbols=len(symbols),
            processed=result.total,
            successes=result.successes,
            failures=result.failures,
            circuit_state=self.circuit_breaker.state.value,
        )
        return result

    async def _run_batch(self, batch: Sequence[str], result: BulkUpdateResult) -> None:
        tasks: Dict[asyncio.Task, str] = {}

        for symbol in batch:
            try:
                security = await self.resolve_security(symbol)
            except Exception as e:
                logger.warning("Could not resolve symbol", symbol=symbol, error=str(e))
                result.add(FetchAttemptResult(symbol, FetchOutcome.RESOLUTION_ERROR, error=str(e)))
                continue
            task = asyncio.create_task(self._update_unit(security), name=f"price-update:{security.symbol}")
            tasks[task] = security.symbol

        if not tasks:
            return

        done, pending = await asyncio.wait(tasks.keys(), timeout=self.settings.BATCH_TIMEOUT_SECONDS)

        if pending:
            for task in pending:
                task.cancel()
            # Let cancelled units unwind; their results are discarded
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Batch timed out",
                cancelled=len(pending),
                batch_size=len(batch),
                timeout_seconds=self.settings.BATCH_TIMEOUT_SECONDS,
            )

        for task, symbol in tasks.items():
            if task in pending or task.cancelled():
                result.add(FetchAttemptResult(symbol, FetchOutcome.TIMEOUT, error="batch timeout"))
            elif task.exception() is not None:
                exc = task.exception()
                result.add(FetchAttemptResult(symbol, _classify(exc), error=str(exc), exception=exc))
            else:
                result.add(task.result())

    async def _update_unit(self, security: Security) -> FetchAttemptResult:
        # Each task runs in its own context copy, so the binding stays per symbol
        structlog.contextvars.bind_contextvars(symbol=security.symbol)
        attempt = await self._refresh_security(security)
        if not attempt.ok:
            logger.warning(
                "Price update failed",
                outcome=attempt.outcome.value,
                error=attempt.error,
            )
        delay = self.settings.api_delay_seconds
        if delay > 0:
            await asyncio.sleep(delay)
        return attempt

    # --- Reads ---------------------------------------------------------------

    def get_latest_market_data(self, symbol: str) -> Optional[MarketData]:
        security = self.store.find_security_by_symbol(symbol)
        if security is None:
            return None
        return self.store.find_latest_record(security)

    def get_market_data(self, symbol: str, market_date: date) -> Optional[MarketData]:
        security = self.store.find_security_by_symbol(symbol)
        if security is None:
            return None
        return self.store.find_record(security, market_date)

    def get_market_data_range(self, symbol: str, from_date: date, to_date: date) -> List[MarketData]:
        security = self.store.find_security_by_symbol(symbol)
        if security is None:
            return []
        return self.store.find_records_between(security, from_date, to_date)

    def get_market_data_stats(self) -> MarketDataStats:
        return collect_market_data_stats(self.store, self.circuit_breaker, settings=self.settings)
