from typing import List, Optional
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class Quote(BaseModel):
    """Real-time quote as returned by Finnhub's /quote endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    current: Optional[Decimal] = Field(default=None, alias="c")
    high: Optional[Decimal] = Field(default=None, alias="h")
    low: Optional[Decimal] = Field(default=None, alias="l")
    open: Optional[Decimal] = Field(default=None, alias="o")
    previous_close: Optional[Decimal] = Field(default=None, alias="pc")
    timestamp: Optional[int] = Field(default=None, alias="t")


class CandleSeries(BaseModel):
    """Daily candles as parallel arrays, Finnhub /stock/candle layout."""

    model_config = ConfigDict(populate_by_name=True)

    close: List[Optional[Decimal]] = Field(default_factory=list, alias="c")
    high: List[Optional[Decimal]] = Field(default_factory=list, alias="h")
    low: List[Optional[Decimal]] = Field(default_factory=list, alias="l")
    open: List[Optional[Decimal]] = Field(default_factory=list, alias="o")
    timestamps: List[int] = Field(default_factory=list, alias="t")
    volume: List[Optional[int]] = Field(default_factory=list, alias="v")
    status: Optional[str] = Field(default=None, alias="s")

    def __len__(self) -> int:
        return len(self.close)

    @property
    def is_empty(self) -> bool:
        return self.status == "no_data" or not self.close

    @staticmethod
    def value_at(values: List, index: int):
        """Element at index, or None when the array is short."""
        if 0 <= index < len(values):
            return values[index]
        return None


class CompanyProfile(BaseModel):
    """Subset of Finnhub's /stock/profile2 used to register securities."""

    model_config = ConfigDict(populate_by_name=True)

    ticker: Optional[str] = None
    name: Optional[str] = None
    exchange: Optional[str] = None
    industry: Optional[str] = Field(default=None, alias="finnhubIndustry")

    @property
    def is_empty(self) -> bool:
        return not (self.ticker or self.name)


class MarketDataStatsOut(BaseModel):
    active_securities: int
    today_records: int
    last_market_day_records: int
    last_market_day: Optional[date] = None
    circuit_breaker_open: bool
    consecutive_failures: int
    stale_securities: int = 0
    significant_movers: int = 0
