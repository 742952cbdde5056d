"""Exchange rate records — immutable once written."""

from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, Numeric, String

from ..database import UTCDateTime
from .base import Base

RATE_SOURCES = ("quoted", "manual")


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    id = Column(Integer, primary_key=True)
    base_currency = Column(String(3), nullable=False)
    target_currency = Column(String(3), nullable=False)
    rate = Column(Numeric(20, 10), nullable=False)
    source = Column(String(10), nullable=False)
    valid_from = Column(UTCDateTime, nullable=False)
    valid_until = Column(UTCDateTime, nullable=False)
    reason = Column(String(500))
    operator_id = Column(String(100))
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_rate_pair_source", "base_currency", "target_currency", "source"),
        Index("ix_rate_validity", "valid_from", "valid_until"),
    )

    def to_dict(self) -> dict:
        return {
            "baseCurrency": self.base_currency,
            "targetCurrency": self.target_currency,
            "rate": str(self.rate),
            "source": self.source,
            "validFrom": self.valid_from.isoformat() if self.valid_from else None,
            "validUntil": self.valid_until.isoformat() if self.valid_until else None,
            "reason": self.reason,
            "operatorId": self.operator_id,
        }
