"""
Bidding Service - time-limited driver offers on pending cargo requests

Expiry is derived from ``expires_at`` at read time; nothing sweeps bids.
Accepting a bid locks the cargo request row and then all of its bids in id
order, the same order every other writer uses, so two concurrent acceptances
serialize on PostgreSQL; on any backend the version columns turn a lost race
into a ConcurrencyConflictError.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.config import settings
from freight.core.exceptions import (
    BidAlreadyDecidedError,
    BidExpiredError,
    BidNotFoundError,
    DuplicateEntryError,
    InvalidStateTransitionError,
    RequestAlreadyAwardedError,
    ValidationException,
)
from freight.core.logging import get_logger
from freight.core.money import Money
from freight.core.result import service_operation
from freight.db.models.bid import Bid
from freight.db.models.cargo_request import CargoRequestStatus
from freight.domain.services.cargo_request_service import CargoRequestService, Engagement
from freight.domain.services.event_sink import EventSink

logger = get_logger(__name__)


class BiddingService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventSink(db)
        self.requests = CargoRequestService(db)

    async def _request_id_of(self, bid_id: int) -> int:
        """Unlocked read: which request to lock before the bid itself"""
        request_id = await self.db.scalar(select(Bid.cargo_request_id).where(Bid.id == bid_id))
        if request_id is None:
            raise BidNotFoundError(bid_id)
        return request_id

    async def _lock_bid(self, bid_id: int) -> Bid:
        """Request row first, then the bid (same order as accept_bid)"""
        await self.requests._lock(await self._request_id_of(bid_id))
        result = await self.db.execute(
            select(Bid)
            .where(Bid.id == bid_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        bid = result.scalar_one_or_none()
        if bid is None:
            raise BidNotFoundError(bid_id)
        return bid

    @staticmethod
    def _check_decidable(bid: Bid, now: datetime) -> None:
        if bid.is_accepted:
            raise BidAlreadyDecidedError(bid.id, "accepted")
        if bid.is_rejected:
            raise BidAlreadyDecidedError(bid.id, "rejected")
        if bid.is_expired(now):
            raise BidExpiredError(bid.id, bid.expires_at)

    @service_operation("bid.submit")
    async def submit_bid(
        self,
        cargo_request_id: int,
        driver_id: int,
        amount: Money,
        message: str | None = None,
        validity_hours: int | None = None,
        now: datetime | None = None,
    ) -> Bid:
        now = now or utcnow()
        validity_hours = settings.BID_VALIDITY_HOURS if validity_hours is None else validity_hours
        if validity_hours <= 0:
            raise ValidationException("Bid validity must be at least one hour", field="validity_hours")
        if not isinstance(amount, Money) or not amount.is_positive:
            raise ValidationException("Bid amount must be positive", field="amount")

        request = await self.requests._lock(cargo_request_id)
        if request.status != CargoRequestStatus.PENDING:
            raise InvalidStateTransitionError("CargoRequest", request.id, request.status.value, "bid")
        if amount.currency != request.currency:
            raise ValidationException("Bid currency differs from the request", field="amount")

        # נהג אחד - הצעה פתוחה אחת לכל בקשה
        existing = await self.db.execute(
            select(Bid).where(
                Bid.cargo_request_id == request.id,
                Bid.driver_id == driver_id,
                Bid.is_accepted.is_(False),
                Bid.is_rejected.is_(False),
                Bid.expires_at > now,
            )
        )
        open_bid = existing.scalars().first()
        if open_bid is not None:
            raise DuplicateEntryError("Open bid", {"bid_id": open_bid.id, "driver_id": driver_id})

        bid = Bid(
            cargo_request_id=request.id,
            driver_id=driver_id,
            amount=amount.amount,
            currency=amount.currency,
            message=message,
            expires_at=now + timedelta(hours=validity_hours),
            created_at=now,
        )
        self.db.add(bid)
        await self.db.flush()
        await self.events.emit("bid.submitted", "bid", bid.id, {
            "cargo_request_id": request.id,
            "driver_id": driver_id,
            "amount": amount.amount,
            "currency": amount.currency,
            "expires_at": bid.expires_at,
        })
        await self.db.commit()
        logger.info(
            "Bid submitted",
            extra_data={"bid_id": bid.id, "cargo_request_id": request.id, "driver_id": driver_id}
        )
        return bid

    @service_operation("bid.accept")
    async def accept_bid(self, bid_id: int, now: datetime | None = None) -> Engagement:
        """
        Accept one bid: request -> ACCEPTED, trip spawned at the bid amount,
        remaining pending bids rejected. All in one transaction.
        """
        now = now or utcnow()
        request = await self.requests._lock(await self._request_id_of(bid_id))
        bids = await self.requests._lock_bids(request.id)
        bid = next((b for b in bids if b.id == bid_id), None)
        if bid is None:
            raise BidNotFoundError(bid_id)
        self._check_decidable(bid, now)

        if request.accepted_bid_id is not None:
            raise RequestAlreadyAwardedError(request.id, request.accepted_bid_id)
        if request.status != CargoRequestStatus.PENDING:
            raise InvalidStateTransitionError("CargoRequest", request.id, request.status.value, "accept_bid")

        bid.is_accepted = True
        bid.accepted_at = now
        await self.events.emit("bid.accepted", "bid", bid.id, {
            "cargo_request_id": request.id,
            "driver_id": bid.driver_id,
            "amount": bid.amount,
        })

        engagement = await self.requests._engage(request, bid.driver_id, bid.amount_money, bid=bid, bids=bids)
        await self.db.commit()
        logger.info(
            "Bid accepted",
            extra_data={
                "bid_id": bid.id,
                "cargo_request_id": request.id,
                "trip_id": engagement.trip.id,
                "rejected_bids": engagement.rejected_bid_ids,
            }
        )
        return engagement

    @service_operation("bid.reject")
    async def reject_bid(self, bid_id: int, reason: str | None = None, now: datetime | None = None) -> Bid:
        now = now or utcnow()
        bid = await self._lock_bid(bid_id)
        self._check_decidable(bid, now)

        bid.is_rejected = True
        bid.rejected_at = now
        bid.rejection_reason = reason
        await self.events.emit("bid.rejected", "bid", bid.id, {
            "cargo_request_id": bid.cargo_request_id,
            "reason": reason,
        })
        await self.db.commit()
        return bid

    @service_operation("bid.list")
    async def list_bids(self, cargo_request_id: int, include_expired: bool = True,
                        now: datetime | None = None) -> list[Bid]:
        now = now or utcnow()
        query = select(Bid).where(Bid.cargo_request_id == cargo_request_id)
        if not include_expired:
            query = query.where(Bid.expires_at > now)
        result = await self.db.execute(query.order_by(Bid.amount, Bid.id))
        return list(result.scalars().all())

    @service_operation("bid.get")
    async def get_bid(self, bid_id: int) -> Bid:
        bid = await self.db.get(Bid, bid_id, populate_existing=True)
        if bid is None:
            raise BidNotFoundError(bid_id)
        return bid
