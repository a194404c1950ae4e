"""
Security resolution: map a ticker symbol to a Security row, creating it from
the provider's company profile when it is not known yet.
"""

from datetime import timedelta
from typing import Optional

import structlog
from sqlmodel import Session

from app.core.config import Settings, settings as default_settings
from app.core.errors import SecurityResolutionError
from app.core.typing import as_utc, utc_now
from app.models.security import Security
from app.providers.base import MarketDataProvider
from app.services.market_store import MarketDataStore

logger = structlog.get_logger(__name__)


class SecurityRegistry:
    def __init__(
        self,
        session: Session,
        provider: MarketDataProvider,
        settings: Settings = default_settings,
    ):
        self.store = MarketDataStore(session)
        self.provider = provider
        self.settings = settings

    def find_existing_security(self, symbol: str) -> Optional[Security]:
        return self.store.find_security_by_symbol(symbol)

    async def create_security_from_symbol(self, symbol: str) -> Security:
        """
        Register a new security from its company profile.

        Raises:
            SecurityResolutionError: profile lookup failed or returned nothing
        """
        symbol = symbol.upper()
        logger.info("Creating security from provider profile", symbol=symbol)

        try:
            profile = await self.provider.get_company_profile(symbol)
        except Exception as e:
            logger.error("Company profile lookup failed", symbol=symbol, error=str(e))
            raise SecurityResolutionError(symbol, str(e)) from e

        if profile.is_empty:
            raise SecurityResolutionError(symbol, "provider has no profile for symbol")

        security = Security(
            symbol=symbol,
            company_name=(profile.name or "").strip() or symbol,
            sector=profile.industry or None,
            exchange=profile.exchange or None,
            is_active=True,
        )
        security = self.store.save_security(security)

        logger.info(
            "Created security",
            symbol=security.symbol,
            company_name=security.company_name,
            sector=security.sector,
            exchange=security.exchange,
        )
        return security

    def needs_sector_update(self, security: Security) -> bool:
        """Sector unknown and the row is old enough that a profile refresh is worth trying."""
        if security.sector:
            return False
        created = as_utc(security.created_at)
        if created is None:
            return True
        return created < utc_now() - timedelta(hours=self.settings.SECTOR_REFRESH_AGE_HOURS)

    async def update_security_sector(self, security: Security) -> Security:
        """Refresh sector from the company profile. Unchanged when the profile has none."""
        profile = await self.provider.get_company_profile(security.symbol)
        if not profile.industry:
            logger.debug("No sector in provider profile", symbol=security.symbol)
            return security

        security.sector = profile.industry
        security = self.store.save_security(security)
        logger.info("Updated security sector", symbol=security.symbol, sector=security.sector)
        return security
