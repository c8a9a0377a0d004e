"""
Trip Service - operational execution of an engaged cargo request

    ASSIGNED -> ACCEPTED | REJECTED
    ACCEPTED -> STARTED -> LOADING -> LOADED -> IN_TRANSIT -> ARRIVED
             -> DELIVERED -> COMPLETED
    CANCELLED from anything before DELIVERED

Each transition has its own method and its own timestamp column and accepts
exactly one predecessor.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.exceptions import (
    AppException,
    InvalidStateTransitionError,
    TripNotFoundError,
    ValidationException,
)
from freight.core.logging import get_logger
from freight.core.money import Money
from freight.core.result import ServiceResult, service_operation
from freight.db.models.cargo_request import CargoRequest, CargoRequestStatus
from freight.db.models.payment import Payment, PaymentMethod
from freight.db.models.trip import (
    NON_CANCELLABLE_TRIP_STATUSES,
    TRACKABLE_TRIP_STATUSES,
    Trip,
    TripStatus,
)
from freight.db.models.trip_tracking import TripTrackingPoint
from freight.domain.services.event_sink import EventSink

logger = get_logger(__name__)


def generate_trip_number(now: datetime | None = None) -> str:
    """TRP + YYYYMMDD + 4 random digits; for humans, the primary key is the identity"""
    now = now or utcnow()
    return f"TRP{now:%Y%m%d}{secrets.randbelow(10000):04d}"


@dataclass
class TripCompletion:
    """
    Completion always sticks; the payment hand-off may fail independently
    and is reported here instead of undoing the completion.
    """
    trip: Trip
    payment: Payment | None = None
    payment_error: AppException | None = None

    @property
    def payment_created(self) -> bool:
        return self.payment is not None


class TripService:
    ENTITY = "Trip"

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventSink(db)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _lock(self, trip_id: int) -> Trip:
        result = await self.db.execute(
            select(Trip)
            .where(Trip.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        trip = result.scalar_one_or_none()
        if trip is None:
            raise TripNotFoundError(trip_id)
        return trip

    async def _lock_request_first(self, trip_id: int) -> Trip:
        """
        Lock the trip's cargo request, then the trip. Every writer that touches
        both rows takes them in this order (see CargoRequestService._close).
        """
        from freight.domain.services.cargo_request_service import CargoRequestService

        request_id = await self.db.scalar(select(Trip.cargo_request_id).where(Trip.id == trip_id))
        if request_id is None:
            raise TripNotFoundError(trip_id)
        await CargoRequestService(self.db)._lock(request_id)
        return await self._lock(trip_id)

    async def _move(
        self,
        trip: Trip,
        target: TripStatus,
        predecessor: TripStatus,
        stamp: str,
        payload: dict[str, Any] | None = None,
    ) -> Trip:
        if trip.status != predecessor:
            raise InvalidStateTransitionError(self.ENTITY, trip.id, trip.status.value, target.value)
        trip.status = target
        setattr(trip, stamp, utcnow())
        await self.events.emit(f"trip.{target.value}", "trip", trip.id, {
            "trip_number": trip.trip_number,
            "cargo_request_id": trip.cargo_request_id,
            "driver_id": trip.driver_id,
            **(payload or {}),
        })
        logger.info(
            f"Trip {target.value}",
            extra_data={"trip_id": trip.id, "trip_number": trip.trip_number, "from": predecessor.value}
        )
        return trip

    async def _step(self, trip_id: int, target: TripStatus, predecessor: TripStatus, stamp: str) -> Trip:
        trip = await self._lock(trip_id)
        await self._move(trip, target, predecessor, stamp)
        return trip

    # ------------------------------------------------------------------
    # internal (flush-only)
    # ------------------------------------------------------------------

    async def _create_trip(
        self,
        request: CargoRequest,
        driver_id: int,
        agreed_price: Money,
        bid_id: int | None = None,
    ) -> Trip:
        now = utcnow()
        trip = Trip(
            trip_number=generate_trip_number(now),
            cargo_request_id=request.id,
            driver_id=driver_id,
            bid_id=bid_id,
            status=TripStatus.ASSIGNED,
            agreed_price=agreed_price.amount,
            currency=agreed_price.currency,
            assigned_at=now,
            created_at=now,
        )
        self.db.add(trip)
        await self.db.flush()
        await self.events.emit("trip.assigned", "trip", trip.id, {
            "trip_number": trip.trip_number,
            "cargo_request_id": request.id,
            "driver_id": driver_id,
            "agreed_price": agreed_price.amount,
            "currency": agreed_price.currency,
            "bid_id": bid_id,
        })
        return trip

    async def _cancel_trip(self, trip: Trip, reason: str) -> Trip:
        if trip.status in NON_CANCELLABLE_TRIP_STATUSES:
            raise InvalidStateTransitionError(self.ENTITY, trip.id, trip.status.value, TripStatus.CANCELLED.value)
        previous = trip.status
        await self._move(trip, TripStatus.CANCELLED, previous, "cancelled_at", {"reason": reason})
        trip.cancellation_reason = reason
        return trip

    async def _cancel_if_open(self, trip_id: int, reason: str) -> bool:
        """Cascade from the cargo request side; a finished trip is left alone"""
        trip = await self._lock(trip_id)
        if trip.status in NON_CANCELLABLE_TRIP_STATUSES:
            return False
        await self._cancel_trip(trip, reason)
        return True

    async def _close_request(self, trip: Trip, reason: str) -> None:
        from freight.domain.services.cargo_request_service import CargoRequestService

        requests = CargoRequestService(self.db)
        request = await requests._lock(trip.cargo_request_id)
        if request.is_active:
            await requests._close(request, CargoRequestStatus.CANCELLED, reason, cascade_trip=False)

    async def _propagate(self, trip: Trip, target: CargoRequestStatus) -> None:
        from freight.domain.services.cargo_request_service import CargoRequestService

        await CargoRequestService(self.db)._advance_from_trip(trip.cargo_request_id, target, trip.id)

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    @service_operation("trip.accept")
    async def accept(self, trip_id: int) -> Trip:
        trip = await self._step(trip_id, TripStatus.ACCEPTED, TripStatus.ASSIGNED, "accepted_at")
        await self.db.commit()
        return trip

    @service_operation("trip.reject")
    async def reject(self, trip_id: int, reason: str) -> Trip:
        """Driver declines the assignment; the request is cancelled with it"""
        if not (reason or "").strip():
            raise ValidationException("Rejection reason is required", field="reason")
        trip = await self._lock_request_first(trip_id)
        await self._move(trip, TripStatus.REJECTED, TripStatus.ASSIGNED, "rejected_at", {"reason": reason})
        trip.rejection_reason = reason.strip()
        await self._close_request(trip, f"driver rejected trip {trip.trip_number}: {reason.strip()}")
        await self.db.commit()
        return trip

    @service_operation("trip.start")
    async def start(self, trip_id: int) -> Trip:
        trip = await self._step(trip_id, TripStatus.STARTED, TripStatus.ACCEPTED, "started_at")
        await self.db.commit()
        return trip

    @service_operation("trip.start_loading")
    async def start_loading(self, trip_id: int) -> Trip:
        trip = await self._step(trip_id, TripStatus.LOADING, TripStatus.STARTED, "loading_started_at")
        await self.db.commit()
        return trip

    @service_operation("trip.complete_loading")
    async def complete_loading(self, trip_id: int) -> Trip:
        trip = await self._lock_request_first(trip_id)
        await self._move(trip, TripStatus.LOADED, TripStatus.LOADING, "loading_completed_at")
        await self._propagate(trip, CargoRequestStatus.PICKED_UP)
        await self.db.commit()
        return trip

    @service_operation("trip.start_transit")
    async def start_transit(self, trip_id: int) -> Trip:
        trip = await self._step(trip_id, TripStatus.IN_TRANSIT, TripStatus.LOADED, "in_transit_at")
        await self.db.commit()
        return trip

    @service_operation("trip.arrive")
    async def arrive(self, trip_id: int) -> Trip:
        trip = await self._step(trip_id, TripStatus.ARRIVED, TripStatus.IN_TRANSIT, "arrived_at")
        await self.db.commit()
        return trip

    @service_operation("trip.deliver")
    async def deliver(self, trip_id: int) -> Trip:
        trip = await self._lock_request_first(trip_id)
        await self._move(trip, TripStatus.DELIVERED, TripStatus.ARRIVED, "delivered_at")
        await self._propagate(trip, CargoRequestStatus.DELIVERED)
        await self.db.commit()
        return trip

    @service_operation("trip.complete")
    async def _complete_trip(self, trip_id: int, actual_price: Money | None) -> Trip:
        trip = await self._lock(trip_id)
        if actual_price is not None:
            if actual_price.currency != trip.currency:
                raise ValidationException("Actual price currency differs from the trip", field="actual_price")
            if not actual_price.is_positive:
                raise ValidationException("Actual price must be positive", field="actual_price")
        price = actual_price or trip.agreed_money
        await self._move(trip, TripStatus.COMPLETED, TripStatus.DELIVERED, "completed_at", {
            "actual_price": price.amount,
            "currency": price.currency,
        })
        trip.actual_price = price.amount
        await self.db.commit()
        return trip

    async def complete(
        self,
        trip_id: int,
        actual_price: Money | None = None,
        method: PaymentMethod = PaymentMethod.GATEWAY,
    ) -> ServiceResult[TripCompletion]:
        """
        DELIVERED -> COMPLETED, committed on its own, then hand-off to
        PaymentOrchestrator.create_payment.
        """
        from freight.domain.services.payment_orchestrator import PaymentOrchestrator

        completed = await self._complete_trip(trip_id, actual_price)
        if not completed.success:
            return ServiceResult.fail(completed.error)

        trip = completed.value
        payment_result = await PaymentOrchestrator(self.db).create_payment(trip.id, method=method)
        if not payment_result.success:
            logger.warning(
                "Trip completed but payment could not be initiated",
                extra_data={
                    "trip_id": trip.id,
                    "error_code": payment_result.error.error_code.value,
                    "kind": payment_result.error.kind.value,
                }
            )
            # rollback של התשלום מפקיע את האובייקט - טוענים מחדש
            await self.db.refresh(trip)
        return ServiceResult.ok(TripCompletion(trip=trip, payment=payment_result.value, payment_error=payment_result.error))

    @service_operation("trip.cancel")
    async def cancel(self, trip_id: int, reason: str) -> Trip:
        if not (reason or "").strip():
            raise ValidationException("Cancellation reason is required", field="reason")
        trip = await self._lock_request_first(trip_id)
        await self._cancel_trip(trip, reason.strip())
        await self._close_request(trip, f"trip {trip.trip_number} cancelled: {reason.strip()}")
        await self.db.commit()
        return trip

    # ------------------------------------------------------------------
    # tracking / notes / queries
    # ------------------------------------------------------------------

    @service_operation("trip.add_tracking_point")
    async def add_tracking_point(
        self,
        trip_id: int,
        latitude: float,
        longitude: float,
        speed_kmh: float | None = None,
        heading: float | None = None,
        recorded_at: datetime | None = None,
    ) -> TripTrackingPoint:
        if not -90 <= latitude <= 90:
            raise ValidationException("Latitude must be within [-90, 90]", field="latitude")
        if not -180 <= longitude <= 180:
            raise ValidationException("Longitude must be within [-180, 180]", field="longitude")
        if speed_kmh is not None and speed_kmh < 0:
            raise ValidationException("Speed must not be negative", field="speed_kmh")
        if heading is not None and not 0 <= heading < 360:
            raise ValidationException("Heading must be within [0, 360)", field="heading")

        trip = await self.db.get(Trip, trip_id, populate_existing=True)
        if trip is None:
            raise TripNotFoundError(trip_id)
        if trip.status not in TRACKABLE_TRIP_STATUSES:
            raise InvalidStateTransitionError(self.ENTITY, trip.id, trip.status.value, "tracking")

        point = TripTrackingPoint(
            trip_id=trip.id,
            latitude=latitude,
            longitude=longitude,
            speed_kmh=speed_kmh,
            heading=heading,
            recorded_at=recorded_at or utcnow(),
        )
        self.db.add(point)
        await self.db.commit()
        return point

    @service_operation("trip.tracking_history")
    async def get_tracking(self, trip_id: int, limit: int = 500) -> list[TripTrackingPoint]:
        result = await self.db.execute(
            select(TripTrackingPoint)
            .where(TripTrackingPoint.trip_id == trip_id)
            .order_by(TripTrackingPoint.recorded_at, TripTrackingPoint.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    @service_operation("trip.add_notes")
    async def add_notes(self, trip_id: int, notes: str) -> Trip:
        trip = await self._lock(trip_id)
        trip.notes = f"{trip.notes}\n{notes}" if trip.notes else notes
        await self.db.commit()
        return trip

    @service_operation("trip.get")
    async def get(self, trip_id: int) -> Trip:
        trip = await self.db.get(Trip, trip_id, populate_existing=True)
        if trip is None:
            raise TripNotFoundError(trip_id)
        return trip

    @service_operation("trip.get_for_request")
    async def get_for_request(self, cargo_request_id: int) -> Trip:
        result = await self.db.execute(
            select(Trip).where(Trip.cargo_request_id == cargo_request_id).order_by(Trip.id.desc()).limit(1)
        )
        trip = result.scalar_one_or_none()
        if trip is None:
            raise TripNotFoundError(f"request:{cargo_request_id}")
        return trip
