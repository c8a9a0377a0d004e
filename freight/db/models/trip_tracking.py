"""
Trip Tracking Model - GPS points reported while a trip is under way
"""
from sqlalchemy import Column, Integer, Float, DateTime, ForeignKey

from freight.core.clock import utcnow
from freight.db.database import Base


class TripTrackingPoint(Base):
    """Append-only"""

    __tablename__ = "trip_tracking_points"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed_kmh = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)

    recorded_at = Column(DateTime, default=utcnow, nullable=False)
