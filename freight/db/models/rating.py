"""
Rating Model - post-trip feedback between driver and cargo owner
"""
import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, ForeignKey, JSON, Enum as SQLEnum, UniqueConstraint,
    CheckConstraint,
)

from freight.core.clock import utcnow
from freight.db.database import Base


class RatingKind(str, enum.Enum):
    DRIVER = "driver"            # cargo owner rates the driver
    CARGO_OWNER = "cargo_owner"  # driver rates the cargo owner


RATING_DIMENSIONS = {
    RatingKind.DRIVER: frozenset({
        "punctuality", "professionalism", "communication", "vehicle_condition", "driving_skill",
    }),
    RatingKind.CARGO_OWNER: frozenset({
        "punctuality", "communication", "payment_promptness", "cargo_accuracy",
    }),
}


class Rating(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    rater_id = Column(BigInteger, nullable=False)
    rated_user_id = Column(BigInteger, nullable=False, index=True)
    kind = Column(SQLEnum(RatingKind), nullable=False)

    score = Column(Integer, nullable=False)
    dimension_scores = Column(JSON, nullable=False, default=dict)
    comment = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("trip_id", "rater_id", "kind", name="uq_rating_trip_rater_kind"),
        CheckConstraint("score >= 1 AND score <= 5", name="ck_rating_score_range"),
    )
