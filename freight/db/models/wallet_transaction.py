"""
Wallet Transaction Model - immutable ledger entries
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint,
)

from freight.core.clock import utcnow
from freight.db.database import Base


class WalletTransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PAYMENT_HOLD = "payment_hold"
    RELEASE = "release"


class WalletTransactionStatus(str, enum.Enum):
    COMPLETED = "completed"


class WalletTransaction(Base):
    """
    One row per ledger mutation. available_after / pending_after are the wallet
    snapshot right after this entry, so replaying entries in id order must
    reproduce every snapshot.
    """

    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)

    transaction_type = Column(SQLEnum(WalletTransactionType), nullable=False)
    status = Column(SQLEnum(WalletTransactionStatus), nullable=False, default=WalletTransactionStatus.COMPLETED)
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="IRR")
    available_after = Column(Numeric(18, 2), nullable=False)
    pending_after = Column(Numeric(18, 2), nullable=False)

    # מזהה עסקי (למשל מספר תשלום) - מונע זיכוי כפול
    correlation_id = Column(String(100), nullable=True)
    memo = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("wallet_id", "correlation_id", "transaction_type", name="uq_wallet_correlation_type"),
        CheckConstraint("amount > 0", name="ck_wallet_transaction_amount_positive"),
    )
