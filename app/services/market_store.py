"""
Persistence boundary for daily market data and security price state.

One MarketData row per (security, trading date), enforced by a unique
constraint. Writes go through explicit find-then-insert-or-update so that
repeated fetches for the same day converge on a single row.
"""

from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.typing import col, utc_now
from app.models.market import MarketData
from app.models.security import Security

logger = structlog.get_logger(__name__)


class MarketDataStore:
    def __init__(self, session: Session):
        self.session = session

    # --- Securities ---------------------------------------------------------

    def find_security_by_symbol(self, symbol: str) -> Optional[Security]:
        return self.session.exec(select(Security).where(Security.symbol == symbol.upper())).first()

    def save_security(self, security: Security) -> Security:
        self.session.add(security)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(security)
        return security

    def count_active_securities(self) -> int:
        return self.session.exec(select(func.count(Security.id)).where(Security.is_active == True)).one()  # noqa: E712

    def list_active_symbols(self) -> List[str]:
        return list(
            self.session.exec(
                select(Security.symbol).where(Security.is_active == True).order_by(Security.symbol)  # noqa: E712
            ).all()
        )

    def find_stale_securities(self, threshold_hours: int) -> List[Security]:
        """Active securities whose price state is older than ``threshold_hours``."""
        active = self.session.exec(
            select(Security).where(Security.is_active == True).order_by(Security.symbol)  # noqa: E712
        ).all()
        return [s for s in active if s.is_price_stale(threshold_hours)]

    def find_significant_movers(self, threshold_percent: Decimal) -> List[Security]:
        """Active securities whose day move is strictly beyond ``threshold_percent``, largest first."""
        priced = self.session.exec(
            select(Security).where(
                Security.is_active == True,  # noqa: E712
                col(Security.price_change_percent).is_not(None),
            )
        ).all()
        movers = [s for s in priced if abs(s.price_change_percent) > threshold_percent]
        return sorted(movers, key=lambda s: abs(s.price_change_percent), reverse=True)

    # --- Market data records -------------------------------------------------

    def find_record(self, security: Security, market_date: date) -> Optional[MarketData]:
        return self.session.exec(
            select(MarketData).where(
                MarketData.security_id == security.id,
                MarketData.market_date == market_date,
            )
        ).first()

    def get_or_create_record(self, security: Security, market_date: date, data_source: str) -> MarketData:
        """Existing record for the pair, or a new unsaved one stamped with ``data_source``."""
        existing = self.find_record(security, market_date)
        if existing is not None:
            return existing

        now = utc_now()
        return MarketData(
            security_id=security.id,
            market_date=market_date,
            data_source=data_source,
            created_at=now,
            last_updated=now,
        )

    def find_latest_record(self, security: Security) -> Optional[MarketData]:
        return self.session.exec(
            select(MarketData)
            .where(MarketData.security_id == security.id)
            .order_by(col(MarketData.market_date).desc())
            .limit(1)
        ).first()

    def find_records_between(self, security: Security, from_date: date, to_date: date) -> List[MarketData]:
        return list(
            self.session.exec(
                select(MarketData)
                .where(
                    MarketData.security_id == security.id,
                    MarketData.market_date >= from_date,
                    MarketData.market_date <= to_date,
                )
                .order_by(col(MarketData.market_date))
            ).all()
        )

    def count_records_on(self, market_date: date) -> int:
        return self.session.exec(select(func.count(MarketData.id)).where(MarketData.market_date == market_date)).one()

    def save_record(self, record: MarketData) -> MarketData:
        record.last_updated = utc_now()
        self.session.add(record)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(record)
        return record

    def save_records(
        self,
        records: Sequence[MarketData],
        rebuild: Optional[Callable[[int], Optional[MarketData]]] = None,
    ) -> int:
        """
        Persist a set of records in one transaction.

        On an integrity violation the transaction is rolled back and records
        are saved one at a time, so one bad row does not lose the rest.
        Rollback expires already-persistent rows and discards their pending
        changes, so ``rebuild(i)`` is called to re-derive record ``i`` before
        the single save when provided.

        Returns:
            Number of records persisted.
        """
        if not records:
            return 0

        now = utc_now()
        for record in records:
            record.last_updated = now
            self.session.add(record)

        try:
            self.session.commit()
            return len(records)
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(
                "batch save hit integrity error, saving one by one",
                count=len(records),
                error=str(e.orig) if e.orig else str(e),
            )

        saved = 0
        for index, record in enumerate(records):
            candidate = rebuild(index) if rebuild is not None else record
            if candidate is None:
                continue
            try:
                self.save_record(candidate)
                saved += 1
            except IntegrityError as e:
                logger.warning(
                    "skipping record that violates integrity",
                    security_id=candidate.security_id,
                    market_date=str(candidate.market_date),
                    error=str(e.orig) if e.orig else str(e),
                )
        return saved
