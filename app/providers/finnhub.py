"""
Finnhub API client for quotes, daily candles and company profiles.

API Endpoints:
- GET /quote?symbol=X - Real-time quote (c, h, l, o, pc, t)
- GET /stock/candle?symbol=X&resolution=D&from=..&to=.. - OHLCV arrays
- GET /stock/profile2?symbol=X - Company metadata

Unknown symbols are not errors on Finnhub's side: /quote answers with zeros,
/stock/candle with {"s": "no_data"} and /stock/profile2 with {}. Callers
validate the payloads rather than relying on HTTP status.

Retries are not done here; the pipeline wraps each call in its own budget.
"""

from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional

import httpx
import structlog

from app.core.config import Settings, settings as default_settings
from app.schemas import CandleSeries, CompanyProfile, Quote

logger = structlog.get_logger(__name__)


def _epoch_seconds(day: date) -> int:
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


class FinnhubClient:
    """
    Async Finnhub client.

    Example:
        async with FinnhubClient() as client:
            quote = await client.get_quote("AAPL")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Settings = default_settings,
    ):
        self.api_key = api_key if api_key is not None else settings.FINNHUB_API_KEY
        self.base_url = (base_url or settings.FINNHUB_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.FINNHUB_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

        if not self.api_key:
            logger.warning("Finnhub API key is not configured")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FinnhubClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        response = await self.client.get(
            f"{self.base_url}{path}",
            params={**params, "token": self.api_key},
            timeout=self.timeout,
        )
        if response.status_code == 429:
            logger.warning("Finnhub rate limit exceeded", path=path)
        response.raise_for_status()
        return response.json()

    async def get_quote(self, symbol: str) -> Quote:
        data = await self._get("/quote", {"symbol": symbol})
        quote = Quote.model_validate(data or {})
        logger.debug("Fetched quote", symbol=symbol, current=str(quote.current))
        return quote

    async def get_candles(
        self, symbol: str, from_date: date, to_date: date, resolution: str = "D"
    ) -> CandleSeries:
        data = await self._get(
            "/stock/candle",
            {
                "symbol": symbol,
                "resolution": resolution,
                "from": _epoch_seconds(from_date),
                "to": _epoch_seconds(to_date),
            },
        )
        candles = CandleSeries.model_validate(data or {})
        logger.debug("Fetched candles", symbol=symbol, count=len(candles), status=candles.status)
        return candles

    async def get_company_profile(self, symbol: str) -> CompanyProfile:
        data = await self._get("/stock/profile2", {"symbol": symbol})
        return CompanyProfile.model_validate(data or {})
