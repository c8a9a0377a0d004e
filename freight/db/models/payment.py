"""
Payment Model - settlement of one completed trip
"""
import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, ForeignKey, Enum as SQLEnum,
)

from freight.core.clock import utcnow
from freight.core.money import Money
from freight.db.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "gateway"
    WALLET = "wallet"


# תשלום "פתוח" - create_payment חוזר עליו במקום ליצור חדש
OPEN_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED})


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    payment_number = Column(String(32), nullable=False, unique=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    payer_id = Column(BigInteger, nullable=False, index=True)
    payee_id = Column(BigInteger, nullable=False, index=True)

    amount = Column(Numeric(18, 2), nullable=False)
    commission_amount = Column(Numeric(18, 2), nullable=False)
    net_amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="IRR")
    commission_rule_id = Column(Integer, nullable=True)

    method = Column(SQLEnum(PaymentMethod), nullable=False, default=PaymentMethod.GATEWAY)
    gateway = Column(String(20), nullable=True)
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)

    # external transaction id issued by the gateway; idempotency key for callbacks
    authority = Column(String(100), nullable=True, unique=True)
    reference_id = Column(String(100), nullable=True)
    redirect_url = Column(String(1000), nullable=True)

    description = Column(String(500), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    refund_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    processing_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def gross_money(self) -> Money:
        return Money(self.amount, self.currency)

    @property
    def commission_money(self) -> Money:
        return Money(self.commission_amount, self.currency)

    @property
    def net_money(self) -> Money:
        return Money(self.net_amount, self.currency)
