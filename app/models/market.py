from typing import Optional
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.typing import utc_now


class MarketData(SQLModel, table=True):
    """One daily OHLCV row per (security, trading date), upserted on re-fetch."""

    __table_args__ = (UniqueConstraint("security_id", "market_date", name="uq_marketdata_security_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    security_id: int = Field(foreign_key="security.id", index=True)
    market_date: date = Field(index=True)

    open_price: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    high_price: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    low_price: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    close_price: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    adjusted_close_price: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    volume: Optional[int] = Field(default=None)

    data_source: str = Field(default="Finnhub")
    created_at: datetime = Field(default_factory=utc_now)
    last_updated: datetime = Field(default_factory=utc_now)
