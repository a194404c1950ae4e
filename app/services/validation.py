"""
Validation engine for market data.

Checks quotes, single candles and fully-mapped records for internal
consistency and domain-valid price ranges before anything reaches storage.

Each ``validate_*`` method returns ``None`` when the input is acceptable and
a short reason string otherwise, so callers can log and skip (historical
path) or raise ``InvalidMarketDataError`` (single-quote path).

Significant-change detection is advisory only and never rejects data.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog

from app.core.config import Settings, settings as default_settings
from app.core.errors import InvalidMarketDataError
from app.core.typing import utc_now
from app.models.market import MarketData
from app.schemas import CandleSeries, Quote

logger = structlog.get_logger(__name__)


def is_market_day(day: date) -> bool:
    """Trading day = not Saturday or Sunday. Holidays are not modelled."""
    return day.weekday() < 5


def last_market_day(before: date) -> date:
    """Most recent trading day strictly before ``before``."""
    day = before - timedelta(days=1)
    while not is_market_day(day):
        day -= timedelta(days=1)
    return day


def _ohlc_reason(
    open_: Optional[Decimal],
    high: Optional[Decimal],
    low: Optional[Decimal],
    close: Optional[Decimal],
) -> Optional[str]:
    """Check low <= {open, close} <= high for whichever fields are present."""
    if high is not None and low is not None and high < low:
        return f"high {high} below low {low}"
    for label, value in (("open", open_), ("close", close)):
        if value is None:
            continue
        if high is not None and value > high:
            return f"{label} {value} above high {high}"
        if low is not None and value < low:
            return f"{label} {value} below low {low}"
    return None


class MarketDataValidator:
    def __init__(self, settings: Settings = default_settings):
        self.min_price = settings.MIN_VALID_PRICE
        self.max_price = settings.MAX_VALID_PRICE
        self.change_threshold = settings.SIGNIFICANT_CHANGE_THRESHOLD_PERCENT

    def is_valid_price(self, price: Optional[Decimal]) -> bool:
        if price is None:
            return False
        return price > 0 and self.min_price <= price <= self.max_price

    def validate_quote(self, quote: Quote) -> Optional[str]:
        if not self.is_valid_price(quote.current):
            return f"current price {quote.current} out of range"

        high, low = quote.high, quote.low
        if high is not None and low is not None:
            if high < low:
                return f"high {high} below low {low}"
            if not (low <= quote.current <= high):
                return f"current price {quote.current} outside [{low}, {high}]"
        return None

    def validate_candle_at(self, series: CandleSeries, index: int) -> Optional[str]:
        close = series.value_at(series.close, index)
        if not self.is_valid_price(close):
            return f"close {close} out of range at index {index}"

        return _ohlc_reason(
            series.value_at(series.open, index),
            series.value_at(series.high, index),
            series.value_at(series.low, index),
            close,
        )

    def validate_record(self, record: MarketData) -> Optional[str]:
        """Pre-persist check on a fully mapped record."""
        if not self.is_valid_price(record.open_price):
            return f"open {record.open_price} missing or out of range"
        if not self.is_valid_price(record.close_price):
            return f"close {record.close_price} missing or out of range"
        if record.volume is None or record.volume < 0:
            return f"volume {record.volume} missing or negative"
        if record.market_date is None:
            return "market date missing"
        if record.market_date > utc_now().date():
            return f"market date {record.market_date} is in the future"

        return _ohlc_reason(record.open_price, record.high_price, record.low_price, record.close_price)

    @staticmethod
    def price_change_percent(old: Decimal, new: Decimal) -> Decimal:
        """Absolute percent change, |new - old| / old * 100."""
        if old is None or old == 0:
            return Decimal("0")
        return abs(new - old) / old * 100

    def is_significant_change(self, old: Optional[Decimal], new: Optional[Decimal]) -> bool:
        if old is None or new is None or old <= 0:
            return False
        return self.price_change_percent(old, new) > self.change_threshold

    def check_significant_change(self, symbol: str, old: Optional[Decimal], new: Optional[Decimal]) -> bool:
        """Log a warning for large moves. Never blocks the write."""
        if not self.is_significant_change(old, new):
            return False
        logger.warning(
            "significant price change",
            symbol=symbol,
            old_price=str(old),
            new_price=str(new),
            change_percent=str(self.price_change_percent(old, new).quantize(Decimal("0.01"))),
            threshold_percent=str(self.change_threshold),
        )
        return True

    @staticmethod
    def raise_if_invalid(reason: Optional[str], symbol: Optional[str] = None) -> None:
        if reason is not None:
            raise InvalidMarketDataError(reason, symbol=symbol)
