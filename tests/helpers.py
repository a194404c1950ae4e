"""
Builders shared by the test modules: candle timestamps, quotes and a
scriptable in-process provider.
"""

import asyncio
from collections import defaultdict
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from app.schemas import CandleSeries, CompanyProfile, Quote


def epoch(day: date) -> int:
    """UTC midnight of ``day`` as epoch seconds, the way Finnhub stamps daily candles."""
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


def make_quote(current, high=None, low=None, open=None, previous_close=None) -> Quote:
    def dec(v):
        return Decimal(str(v)) if v is not None else None

    return Quote(
        current=dec(current),
        high=dec(high),
        low=dec(low),
        open=dec(open),
        previous_close=dec(previous_close),
    )


class FakeProvider:
    """
    In-process MarketDataProvider.

    Quotes, candles and profiles are scripted per symbol. A scripted value
    that is an Exception instance is raised instead of returned. Lists are
    consumed one element per call (the last element repeats).
    """

    def __init__(self):
        self.quotes: Dict[str, object] = {}
        self.candles: Dict[str, object] = {}
        self.profiles: Dict[str, object] = {}
        self.calls: Dict[str, List[str]] = defaultdict(list)
        self.quote_delay: Dict[str, float] = {}

    @staticmethod
    def _next(script, symbol):
        if isinstance(script, list):
            value = script.pop(0) if len(script) > 1 else script[0]
        else:
            value = script
        if isinstance(value, Exception):
            raise value
        return value

    async def get_quote(self, symbol: str) -> Quote:
        self.calls["quote"].append(symbol)
        delay = self.quote_delay.get(symbol)
        if delay:
            await asyncio.sleep(delay)
        if symbol not in self.quotes:
            raise RuntimeError(f"no quote scripted for {symbol}")
        return self._next(self.quotes[symbol], symbol)

    async def get_candles(self, symbol: str, from_date: date, to_date: date, resolution: str = "D") -> CandleSeries:
        self.calls["candles"].append(symbol)
        if symbol not in self.candles:
            return CandleSeries(status="no_data")
        return self._next(self.candles[symbol], symbol)

    async def get_company_profile(self, symbol: str) -> CompanyProfile:
        self.calls["profile"].append(symbol)
        if symbol not in self.profiles:
            return CompanyProfile()
        return self._next(self.profiles[symbol], symbol)

    def quote_calls(self, symbol: Optional[str] = None) -> int:
        if symbol is None:
            return len(self.calls["quote"])
        return self.calls["quote"].count(symbol)
