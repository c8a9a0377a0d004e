"""
Bid Model - a driver's time-limited price offer on a cargo request
"""
from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, ForeignKey, Index

from freight.core.clock import utcnow
from freight.core.money import Money
from freight.db.database import Base


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True)
    cargo_request_id = Column(Integer, ForeignKey("cargo_requests.id"), nullable=False, index=True)
    driver_id = Column(BigInteger, nullable=False, index=True)

    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="IRR")
    message = Column(String(1000), nullable=True)

    expires_at = Column(DateTime, nullable=False)
    is_accepted = Column(Boolean, nullable=False, default=False)
    is_rejected = Column(Boolean, nullable=False, default=False)
    accepted_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_bids_request_driver", "cargo_request_id", "driver_id"),
    )

    @property
    def amount_money(self) -> Money:
        return Money(self.amount, self.currency)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Derived from expires_at - nothing sweeps bids"""
        return (now or utcnow()) >= self.expires_at

    def status_at(self, now: datetime | None = None) -> str:
        if self.is_accepted:
            return "accepted"
        if self.is_rejected:
            return "rejected"
        if self.is_expired(now):
            return "expired"
        return "pending"
