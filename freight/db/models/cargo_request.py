"""
Cargo Request Model - a shipment posted by a cargo owner
"""
import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Numeric, Float, DateTime,
    Enum as SQLEnum, Index,
)

from freight.core.clock import utcnow
from freight.core.money import Money
from freight.db.database import Base


class CargoRequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


# "פעיל" נקבע לפי שייכות לקבוצה, לא לפי סדר ה-enum
ACTIVE_REQUEST_STATUSES = frozenset({
    CargoRequestStatus.PENDING,
    CargoRequestStatus.ACCEPTED,
    CargoRequestStatus.PICKED_UP,
})
TERMINAL_REQUEST_STATUSES = frozenset({
    CargoRequestStatus.DELIVERED,
    CargoRequestStatus.CANCELLED,
    CargoRequestStatus.FAILED,
})


class CargoType(str, enum.Enum):
    GENERAL = "general"
    FOOD = "food"
    ELECTRONICS = "electronics"
    FURNITURE = "furniture"
    CONSTRUCTION = "construction"
    AGRICULTURAL = "agricultural"
    INDUSTRIAL = "industrial"
    CHEMICAL = "chemical"
    HAZARDOUS = "hazardous"
    REFRIGERATED = "refrigerated"
    OVERSIZED = "oversized"
    FRAGILE = "fragile"


class VehicleType(str, enum.Enum):
    PICKUP_TRUCK = "pickup_truck"
    VAN = "van"
    MINI_TRUCK = "mini_truck"
    BOX_TRUCK = "box_truck"
    FLATBED_TRUCK = "flatbed_truck"
    REFRIGERATED_TRUCK = "refrigerated_truck"
    TANKER_TRUCK = "tanker_truck"
    SEMI_TRUCK = "semi_truck"
    DUMP_TRUCK = "dump_truck"
    CONCRETE_MIXER = "concrete_mixer"
    CRANE_TRUCK = "crane_truck"
    CAR_CARRIER = "car_carrier"
    LIVESTOCK_TRUCK = "livestock_truck"
    CONTAINER_TRUCK = "container_truck"
    TOW_TRUCK = "tow_truck"
    OTHER = "other"


class CargoRequest(Base):
    """Shipment request; status moves one way except for cancel"""

    __tablename__ = "cargo_requests"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(BigInteger, nullable=False, index=True)

    cargo_name = Column(String(200), nullable=False)
    cargo_description = Column(Text, nullable=True)
    cargo_type = Column(SQLEnum(CargoType), nullable=False, default=CargoType.GENERAL)
    vehicle_type = Column(SQLEnum(VehicleType), nullable=False, default=VehicleType.OTHER)
    weight_kg = Column(Numeric(12, 2), nullable=False)
    volume_m3 = Column(Numeric(12, 2), nullable=True)
    special_instructions = Column(Text, nullable=True)

    pickup_address = Column(String(500), nullable=False)
    pickup_latitude = Column(Float, nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    pickup_time = Column(DateTime, nullable=False)

    delivery_address = Column(String(500), nullable=False)
    delivery_latitude = Column(Float, nullable=False)
    delivery_longitude = Column(Float, nullable=False)
    delivery_time = Column(DateTime, nullable=False)

    price = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="IRR")

    status = Column(SQLEnum(CargoRequestStatus), nullable=False, default=CargoRequestStatus.PENDING, index=True)
    driver_id = Column(BigInteger, nullable=True, index=True)
    trip_id = Column(Integer, nullable=True)
    accepted_bid_id = Column(Integer, nullable=True)

    cancellation_reason = Column(String(500), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    accepted_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_cargo_requests_status_created", "status", "created_at"),
    )

    @property
    def price_money(self) -> Money:
        return Money(self.price, self.currency)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REQUEST_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES
