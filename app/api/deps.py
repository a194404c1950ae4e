from typing import Optional

from fastapi import Depends
from sqlmodel import Session

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.db import get_session
from app.providers.finnhub import FinnhubClient
from app.services.market_data import MarketDataService, market_data_circuit_breaker

_provider: Optional[FinnhubClient] = None


def get_provider() -> FinnhubClient:
    """Shared Finnhub client so connections are pooled across requests."""
    global _provider
    if _provider is None:
        _provider = FinnhubClient(settings=settings)
    return _provider


async def close_provider() -> None:
    global _provider
    if _provider is not None:
        await _provider.aclose()
        _provider = None


def get_circuit_breaker() -> CircuitBreaker:
    return market_data_circuit_breaker(settings)


def get_market_data_service(
    session: Session = Depends(get_session),
    provider: FinnhubClient = Depends(get_provider),
    breaker: CircuitBreaker = Depends(get_circuit_breaker),
) -> MarketDataService:
    return MarketDataService(session, provider, circuit_breaker=breaker, settings=settings)
