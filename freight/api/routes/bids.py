"""
Bid API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from freight.api.routes.cargo_requests import EngagementResponse
from freight.api.schemas import MoneyIn, MoneyOut
from freight.core.clock import utcnow
from freight.db.database import get_db
from freight.db.models.bid import Bid
from freight.domain.services.bidding_service import BiddingService

router = APIRouter()


class BidCreate(BaseModel):
    cargo_request_id: int
    driver_id: int
    amount: MoneyIn
    message: str | None = Field(default=None, max_length=1000)
    validity_hours: int | None = Field(default=None, ge=1)


class BidReject(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BidResponse(BaseModel):
    id: int
    cargo_request_id: int
    driver_id: int
    amount: MoneyOut
    message: str | None
    status: str
    expires_at: datetime
    accepted_at: datetime | None
    rejected_at: datetime | None
    rejection_reason: str | None
    created_at: datetime

    @classmethod
    def from_model(cls, bid: Bid, now: datetime | None = None) -> "BidResponse":
        return cls(
            id=bid.id,
            cargo_request_id=bid.cargo_request_id,
            driver_id=bid.driver_id,
            amount=MoneyOut.of(bid.amount, bid.currency),
            message=bid.message,
            status=bid.status_at(now or utcnow()),
            expires_at=bid.expires_at,
            accepted_at=bid.accepted_at,
            rejected_at=bid.rejected_at,
            rejection_reason=bid.rejection_reason,
            created_at=bid.created_at,
        )


@router.post("/", response_model=BidResponse, status_code=201, summary="Submit a bid on a pending request")
async def submit_bid(body: BidCreate, db: AsyncSession = Depends(get_db)):
    bid = (await BiddingService(db).submit_bid(
        body.cargo_request_id,
        body.driver_id,
        body.amount.to_money(),
        message=body.message,
        validity_hours=body.validity_hours,
    )).unwrap()
    return BidResponse.from_model(bid)


@router.get("/", response_model=List[BidResponse], summary="Bids on a request, cheapest first")
async def list_bids(cargo_request_id: int, include_expired: bool = True, db: AsyncSession = Depends(get_db)):
    bids = (await BiddingService(db).list_bids(cargo_request_id, include_expired=include_expired)).unwrap()
    return [BidResponse.from_model(b) for b in bids]


@router.get("/{bid_id}", response_model=BidResponse)
async def get_bid(bid_id: int, db: AsyncSession = Depends(get_db)):
    return BidResponse.from_model((await BiddingService(db).get_bid(bid_id)).unwrap())


@router.post("/{bid_id}/accept", response_model=EngagementResponse, summary="Accept a bid and create the trip")
async def accept_bid(bid_id: int, db: AsyncSession = Depends(get_db)):
    engagement = (await BiddingService(db).accept_bid(bid_id)).unwrap()
    return EngagementResponse.from_engagement(engagement)


@router.post("/{bid_id}/reject", response_model=BidResponse)
async def reject_bid(bid_id: int, body: BidReject, db: AsyncSession = Depends(get_db)):
    bid = (await BiddingService(db).reject_bid(bid_id, body.reason)).unwrap()
    return BidResponse.from_model(bid)
