import threading
from dataclasses import asdict
from typing import Any, Optional

import structlog
from cachetools import TTLCache
from fastapi import APIRouter, Depends

from app.api.deps import get_market_data_service
from app.schemas import MarketDataStatsOut
from app.services.market_data import MarketDataService

router = APIRouter()
logger = structlog.get_logger(__name__)

# Health probes poll this often; counts only need to be roughly current
_status_cache = TTLCache(maxsize=1, ttl=15)
_status_cache_lock = threading.Lock()


def get_status_cache(key: str) -> Optional[Any]:
    with _status_cache_lock:
        return _status_cache.get(key)


def set_status_cache(key: str, value: Any):
    with _status_cache_lock:
        _status_cache[key] = value


def clear_status_cache():
    with _status_cache_lock:
        _status_cache.clear()


@router.get("/status", response_model=MarketDataStatsOut)
def read_status(
    service: MarketDataService = Depends(get_market_data_service),
) -> Any:
    """
    Ingestion status snapshot: active securities, record counts for today and
    the last market day, circuit breaker state, stale securities and
    significant movers.
    Cached for 15 seconds.
    """
    cached = get_status_cache("status")
    if cached is not None:
        return cached

    stats = service.get_market_data_stats()
    if stats.consecutive_failures < 0:
        logger.warning("Serving degraded market data status")
        # Don't cache degraded snapshots
        return MarketDataStatsOut(**asdict(stats))

    result = MarketDataStatsOut(**asdict(stats))
    set_status_cache("status", result)
    return result
