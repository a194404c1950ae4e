from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "MicroInvest Market Data"
    API_V1_STR: str = "/api/v1"
    DATABASE_URL: str = "sqlite:///./market_data.db"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Finnhub
    FINNHUB_API_KEY: str = ""  # Must be set via environment variable
    FINNHUB_BASE_URL: str = "https://finnhub.io/api/v1"
    FINNHUB_TIMEOUT_SECONDS: float = 30.0
    DATA_SOURCE_NAME: str = "Finnhub"

    # Staleness fallback
    STALE_THRESHOLD_HOURS: int = 24

    # Validation
    MIN_VALID_PRICE: Decimal = Decimal("0.01")
    MAX_VALID_PRICE: Decimal = Decimal("100000")
    SIGNIFICANT_CHANGE_THRESHOLD_PERCENT: Decimal = Decimal("5.0")

    # Bulk refresh
    BATCH_SIZE: int = 50
    API_DELAY_MS: int = 100  # Per-unit delay; batches wait twice this
    BATCH_TIMEOUT_SECONDS: float = 30.0

    # Circuit breaker
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT_MINUTES: int = 0  # 0 = reset only by a clean bulk run

    # Retry budgets
    QUOTE_RETRY_ATTEMPTS: int = 3
    QUOTE_RETRY_BACKOFF_SECONDS: float = 1.0
    HISTORICAL_RETRY_ATTEMPTS: int = 2
    HISTORICAL_RETRY_BACKOFF_SECONDS: float = 2.0

    # Sector enrichment only for securities older than this
    SECTOR_REFRESH_AGE_HOURS: int = 24

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def api_delay_seconds(self) -> float:
        return self.API_DELAY_MS / 1000


settings = Settings()
