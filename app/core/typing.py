"""
Query and clock helpers shared by the models and the store.

SQLModel class attributes are SQLAlchemy InstrumentedAttribute objects at
runtime but plain Python types to a type checker, so column methods such as
``.desc()`` need ``col`` to type-check.

Timestamps are always aware UTC in memory. SQLite hands them back naive,
``as_utc`` normalises them before any comparison.
"""

from typing import TYPE_CHECKING, Optional, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """select(MarketData).order_by(col(MarketData.market_date).desc())"""
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
