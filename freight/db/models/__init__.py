"""
Database Models
"""
from freight.db.models.cargo_request import CargoRequest
from freight.db.models.bid import Bid
from freight.db.models.trip import Trip
from freight.db.models.trip_tracking import TripTrackingPoint
from freight.db.models.commission_rule import CommissionRule
from freight.db.models.payment import Payment
from freight.db.models.wallet import Wallet
from freight.db.models.wallet_transaction import WalletTransaction
from freight.db.models.lifecycle_event import LifecycleEvent
from freight.db.models.rating import Rating

__all__ = [
    "CargoRequest",
    "Bid",
    "Trip",
    "TripTrackingPoint",
    "CommissionRule",
    "Payment",
    "Wallet",
    "WalletTransaction",
    "LifecycleEvent",
    "Rating",
]
