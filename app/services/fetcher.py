"""
Quote/candle fetcher: provider calls for one symbol with bounded retry.

Quote fetches get QUOTE_RETRY_ATTEMPTS attempts with a fixed backoff,
candle range fetches get HISTORICAL_RETRY_ATTEMPTS. Exhausted budgets raise
ProviderError.
"""

from datetime import date
from typing import Optional

import structlog

from app.core.config import Settings, settings as default_settings
from app.core.errors import ErrorHandler
from app.core.retry import with_retry
from app.models.security import Security
from app.providers.base import MarketDataProvider
from app.schemas import CandleSeries, Quote
from app.services.market_store import MarketDataStore

logger = structlog.get_logger(__name__)


class MarketDataFetcher:
    def __init__(
        self,
        provider: MarketDataProvider,
        store: MarketDataStore,
        settings: Settings = default_settings,
    ):
        self.provider = provider
        self.store = store
        self._get_quote = with_retry(
            provider.get_quote,
            attempts=settings.QUOTE_RETRY_ATTEMPTS,
            backoff_seconds=settings.QUOTE_RETRY_BACKOFF_SECONDS,
            operation="fetch_current_quote",
        )
        self._get_candles = with_retry(
            provider.get_candles,
            attempts=settings.HISTORICAL_RETRY_ATTEMPTS,
            backoff_seconds=settings.HISTORICAL_RETRY_BACKOFF_SECONDS,
            operation="fetch_daily_candles",
        )

    async def fetch_current_quote(self, symbol: str, security: Optional[Security] = None) -> Quote:
        """
        Fetch the current quote for ``symbol``.

        When ``security`` is given, its previous close is brought in line with
        the quote's previous close so day-change math stays correct.
        """
        quote = await self._get_quote(symbol)
        if security is not None:
            self._sync_previous_close(security, quote)
        return quote

    async def fetch_daily_candles(self, symbol: str, from_date: date, to_date: date) -> CandleSeries:
        candles = await self._get_candles(symbol, from_date, to_date, "D")
        logger.debug(
            "Fetched daily candles",
            symbol=symbol,
            from_date=str(from_date),
            to_date=str(to_date),
            count=len(candles),
        )
        return candles

    def _sync_previous_close(self, security: Security, quote: Quote) -> None:
        previous_close = quote.previous_close
        if previous_close is None or previous_close <= 0:
            return
        if security.previous_close == previous_close:
            return

        logger.debug(
            "Updating previous close",
            symbol=security.symbol,
            old=str(security.previous_close),
            new=str(previous_close),
        )
        security.previous_close = previous_close
        with ErrorHandler("sync_previous_close", context={"symbol": security.symbol}):
            self.store.save_security(security)
