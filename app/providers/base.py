"""Contract the ingestion pipeline expects from an upstream market-data provider."""

from datetime import date
from typing import Protocol

from app.schemas import CandleSeries, CompanyProfile, Quote


class MarketDataProvider(Protocol):
    """
    Upstream provider client.

    Failures are opaque: any exception raised by these calls is treated as
    retryable by the pipeline's own retry budget.
    """

    async def get_quote(self, symbol: str) -> Quote: ...

    async def get_candles(
        self, symbol: str, from_date: date, to_date: date, resolution: str = "D"
    ) -> CandleSeries: ...

    async def get_company_profile(self, symbol: str) -> CompanyProfile: ...
