"""
Commission Rule Model - how much the platform keeps from a settlement
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, JSON, Enum as SQLEnum, Index,
)

from freight.core.clock import utcnow
from freight.db.database import Base
from freight.db.models.cargo_request import CargoType, VehicleType


class CommissionType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    TIERED_PERCENTAGE = "tiered_percentage"
    PER_TRANSACTION = "per_transaction"


class CommissionApplicability(str, enum.Enum):
    DRIVER = "driver"
    CARGO_OWNER = "cargo_owner"
    BOTH = "both"
    PLATFORM = "platform"


class CommissionRule(Base):
    """
    Rules are never deleted: they are deactivated or closed with effective_to
    so that a payment's commission can always be recomputed from the rule it
    references.
    """

    __tablename__ = "commission_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)

    commission_type = Column(SQLEnum(CommissionType), nullable=False)
    applicability = Column(SQLEnum(CommissionApplicability), nullable=False, default=CommissionApplicability.DRIVER)

    rate = Column(Numeric(5, 4), nullable=True)          # 0.1000 = 10%
    flat_amount = Column(Numeric(18, 2), nullable=True)  # FIXED_AMOUNT / PER_TRANSACTION
    min_amount = Column(Numeric(18, 2), nullable=True)
    max_amount = Column(Numeric(18, 2), nullable=True)
    threshold_amount = Column(Numeric(18, 2), nullable=True)  # rule applies from this trip amount up
    currency = Column(String(3), nullable=False, default="IRR")

    # [{"up_to": "5000000", "rate": "0.10"}, {"up_to": null, "rate": "0.07"}]
    tier_configuration = Column(JSON, nullable=True)

    vehicle_type = Column(SQLEnum(VehicleType), nullable=True)
    cargo_type = Column(SQLEnum(CargoType), nullable=True)

    effective_from = Column(DateTime, nullable=False, default=utcnow)
    effective_to = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    superseded_by_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    deactivated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_commission_rules_active_scope", "is_active", "vehicle_type", "cargo_type"),
    )
