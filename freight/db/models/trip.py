"""
Trip Model - operational execution of an engaged cargo request
"""
import enum
from datetime import timedelta

from sqlalchemy import Column, Integer, BigInteger, String, Text, Numeric, DateTime, ForeignKey, Enum as SQLEnum

from freight.core.clock import utcnow
from freight.core.money import Money
from freight.db.database import Base


class TripStatus(str, enum.Enum):
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    STARTED = "started"
    LOADING = "loading"
    LOADED = "loaded"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_TRIP_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED, TripStatus.REJECTED})
NON_CANCELLABLE_TRIP_STATUSES = frozenset({
    TripStatus.DELIVERED,
    TripStatus.COMPLETED,
    TripStatus.CANCELLED,
    TripStatus.REJECTED,
})
# מצבים שבהם הנהג בדרך ומותר לשלוח נקודות מעקב
TRACKABLE_TRIP_STATUSES = frozenset({
    TripStatus.STARTED,
    TripStatus.LOADING,
    TripStatus.LOADED,
    TripStatus.IN_TRANSIT,
    TripStatus.ARRIVED,
})

# the happy path, in order; every column is stamped by exactly one transition
TRIP_PHASE_TIMESTAMPS = (
    "assigned_at",
    "accepted_at",
    "started_at",
    "loading_started_at",
    "loading_completed_at",
    "in_transit_at",
    "arrived_at",
    "delivered_at",
    "completed_at",
)


class Trip(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True)
    trip_number = Column(String(20), nullable=False, index=True)
    cargo_request_id = Column(Integer, ForeignKey("cargo_requests.id"), nullable=False, index=True)
    driver_id = Column(BigInteger, nullable=False, index=True)
    bid_id = Column(Integer, nullable=True)

    status = Column(SQLEnum(TripStatus), nullable=False, default=TripStatus.ASSIGNED, index=True)

    agreed_price = Column(Numeric(18, 2), nullable=False)
    actual_price = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="IRR")

    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    accepted_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    loading_started_at = Column(DateTime, nullable=True)
    loading_completed_at = Column(DateTime, nullable=True)
    in_transit_at = Column(DateTime, nullable=True)
    arrived_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    rejection_reason = Column(String(500), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def agreed_money(self) -> Money:
        return Money(self.agreed_price, self.currency)

    @property
    def settlement_money(self) -> Money:
        """Actual price when recorded, agreed price otherwise"""
        price = self.actual_price if self.actual_price is not None else self.agreed_price
        return Money(price, self.currency)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRIP_STATUSES

    @property
    def total_duration(self) -> timedelta | None:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    @property
    def loading_duration(self) -> timedelta | None:
        if self.loading_started_at and self.loading_completed_at:
            return self.loading_completed_at - self.loading_started_at
        return None

    @property
    def transit_duration(self) -> timedelta | None:
        if self.in_transit_at and self.arrived_at:
            return self.arrived_at - self.in_transit_at
        return None
