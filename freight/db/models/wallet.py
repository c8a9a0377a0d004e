"""
Wallet Model - available and pending balances per user
"""
from decimal import Decimal

from sqlalchemy import Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, CheckConstraint

from freight.core.clock import utcnow
from freight.core.money import Money
from freight.db.database import Base


class Wallet(Base):
    """Mutated only by WalletLedgerService"""

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(BigInteger, unique=True, nullable=False, index=True)
    currency = Column(String(3), nullable=False, default="IRR")

    available_balance = Column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    pending_balance = Column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    total_earnings = Column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    total_spending = Column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))

    is_active = Column(Boolean, nullable=False, default=True)
    last_transaction_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_wallet_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_wallet_pending_non_negative"),
    )

    @property
    def available(self) -> Money:
        return Money(self.available_balance, self.currency)

    @property
    def pending(self) -> Money:
        return Money(self.pending_balance, self.currency)

    @property
    def total(self) -> Money:
        return self.available + self.pending
