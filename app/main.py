from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import market
from app.api.deps import close_provider
from app.core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from app.core.config import settings
from app.core.logging_config import get_logger
from app.db import create_db_and_tables

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Market data service starting", project=settings.PROJECT_NAME)
    create_db_and_tables()
    if not settings.FINNHUB_API_KEY:
        logger.warning("FINNHUB_API_KEY is not set, provider calls will be rejected")

    try:
        yield
    finally:
        await close_provider()
        logger.info("Market data service stopped")


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

app.include_router(market.router, prefix=f"{settings.API_V1_STR}/market-data", tags=["market-data"])


@app.get("/health")
def health():
    """Liveness plus circuit breaker states (open = unhealthy, half-open = degraded)."""
    circuits = CircuitBreakerRegistry.get_all_states()

    status = "healthy"
    if CircuitState.OPEN.value in circuits.values():
        status = "unhealthy"
    elif CircuitState.HALF_OPEN.value in circuits.values():
        status = "degraded"

    return {"status": status, "circuits": circuits}
