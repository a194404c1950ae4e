"""
Test fixtures for the market data pipeline.

Provides in-memory database sessions, a scriptable in-process provider,
zero-delay settings and sample securities.
"""

import pytest
from typing import Generator, List
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from app.core.config import Settings
from app.models.security import Security
from app.services.market_data import MarketDataService
from helpers import FakeProvider


# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(name="test_engine")
def test_engine_fixture():
    """Create a fresh in-memory SQLite engine for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(test_engine) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every delay and backoff zeroed so tests run instantly."""
    return Settings(
        FINNHUB_API_KEY="test-key",
        API_DELAY_MS=0,
        QUOTE_RETRY_BACKOFF_SECONDS=0,
        HISTORICAL_RETRY_BACKOFF_SECONDS=0,
        BATCH_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker(name="test_market_data", failure_threshold=5)


@pytest.fixture(autouse=True)
def clear_circuit_breakers():
    CircuitBreakerRegistry.clear()
    yield
    CircuitBreakerRegistry.clear()


@pytest.fixture
def service(test_session, fake_provider, breaker, test_settings) -> MarketDataService:
    return MarketDataService(test_session, fake_provider, circuit_breaker=breaker, settings=test_settings)


@pytest.fixture
def sample_security(test_session) -> Security:
    """An established security with a known sector (no enrichment triggered)."""
    security = Security(
        symbol="ABC",
        company_name="ABC Industries",
        sector="Technology",
        exchange="NASDAQ",
        is_active=True,
    )
    test_session.add(security)
    test_session.commit()
    test_session.refresh(security)
    return security


@pytest.fixture
def sample_securities(test_session) -> List[Security]:
    securities = [
        Security(symbol=symbol, company_name=f"{symbol} Corp", sector="Technology")
        for symbol in ("AAA", "BBB", "CCC", "DDD", "EEE")
    ]
    for security in securities:
        test_session.add(security)
    test_session.commit()
    for security in securities:
        test_session.refresh(security)
    return securities
