"""
API Routes
"""
from fastapi import APIRouter

from freight.api.routes.cargo_requests import router as cargo_requests_router
from freight.api.routes.bids import router as bids_router
from freight.api.routes.trips import router as trips_router
from freight.api.routes.payments import router as payments_router
from freight.api.routes.wallets import router as wallets_router
from freight.api.routes.commission_rules import router as commission_rules_router
from freight.api.routes.ratings import router as ratings_router

router = APIRouter()

router.include_router(cargo_requests_router, prefix="/cargo-requests", tags=["cargo-requests"])
router.include_router(bids_router, prefix="/bids", tags=["bids"])
router.include_router(trips_router, prefix="/trips", tags=["trips"])
router.include_router(payments_router, prefix="/payments", tags=["payments"])
router.include_router(wallets_router, prefix="/wallets", tags=["wallets"])
router.include_router(commission_rules_router, prefix="/commission-rules", tags=["commission-rules"])
router.include_router(ratings_router, prefix="/ratings", tags=["ratings"])
