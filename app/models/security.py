from typing import Optional
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlmodel import Field, SQLModel

from app.core.typing import utc_now, as_utc

PERCENT_QUANTUM = Decimal("0.0001")


class Security(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    symbol: str = Field(index=True, unique=True, max_length=10)
    company_name: str = Field(default="")
    sector: Optional[str] = Field(default=None, index=True)
    exchange: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True, index=True)

    # Current price state - written only by the ingestion pipeline
    current_price: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    previous_close: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    price_change: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)
    price_change_percent: Optional[Decimal] = Field(default=None, max_digits=19, decimal_places=4)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def apply_price(self, new_price: Decimal) -> None:
        """Set the current price and derive day change against previous close."""
        if self.previous_close is not None and self.previous_close > 0:
            change = new_price - self.previous_close
            self.price_change = change
            self.price_change_percent = (change / self.previous_close * 100).quantize(
                PERCENT_QUANTUM, rounding=ROUND_HALF_UP
            )
        self.current_price = new_price
        self.updated_at = utc_now()

    def is_price_stale(self, threshold_hours: int) -> bool:
        updated = as_utc(self.updated_at)
        if updated is None:
            return True
        return updated < utc_now() - timedelta(hours=threshold_hours)
