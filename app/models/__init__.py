from .security import Security
from .market import MarketData

__all__ = [
    "Security",
    "MarketData",
]
