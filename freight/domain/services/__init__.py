"""
Domain Services
"""
from freight.domain.services.event_sink import EventSink
from freight.domain.services.wallet_ledger_service import WalletLedgerService
from freight.domain.services.commission_calculator import CommissionCalculator
from freight.domain.services.commission_rule_service import CommissionRuleService
from freight.domain.services.cargo_request_service import CargoRequestService
from freight.domain.services.trip_service import TripService
from freight.domain.services.bidding_service import BiddingService
from freight.domain.services.payment_orchestrator import PaymentOrchestrator
from freight.domain.services.rating_service import RatingService

__all__ = [
    "EventSink",
    "WalletLedgerService",
    "CommissionCalculator",
    "CommissionRuleService",
    "CargoRequestService",
    "TripService",
    "BiddingService",
    "PaymentOrchestrator",
    "RatingService",
]
