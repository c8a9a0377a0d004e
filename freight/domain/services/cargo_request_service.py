"""
Cargo Request Service - lifecycle of a shipment request

    PENDING -> ACCEPTED -> PICKED_UP -> DELIVERED
    any active state -> CANCELLED | FAILED

ACCEPTED is reached through ``accept`` (direct assignment) or through
BiddingService.accept_bid; both go through ``_engage`` which also spawns the
Trip. PICKED_UP / DELIVERED are normally driven by the trip (see TripService).
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.exceptions import (
    CargoRequestNotFoundError,
    InvalidStateTransitionError,
    ValidationException,
)
from freight.core.logging import get_logger
from freight.core.money import Money, quantize
from freight.core.result import service_operation
from freight.db.models.bid import Bid
from freight.db.models.cargo_request import (
    ACTIVE_REQUEST_STATUSES,
    CargoRequest,
    CargoRequestStatus,
    CargoType,
    VehicleType,
)
from freight.db.models.trip import Trip
from freight.domain.services.event_sink import EventSink

logger = get_logger(__name__)


@dataclass
class CargoRequestDraft:
    owner_id: int
    cargo_name: str
    weight_kg: Decimal
    price: Money
    pickup_address: str
    pickup_latitude: float
    pickup_longitude: float
    pickup_time: datetime
    delivery_address: str
    delivery_latitude: float
    delivery_longitude: float
    delivery_time: datetime
    cargo_type: CargoType = CargoType.GENERAL
    vehicle_type: VehicleType = VehicleType.OTHER
    cargo_description: str | None = None
    volume_m3: Decimal | None = None
    special_instructions: str | None = None


# שדות שמותר לעדכן כל עוד הבקשה PENDING
UPDATABLE_FIELDS = frozenset(
    f.name for f in fields(CargoRequestDraft) if f.name not in ("owner_id",)
)


@dataclass
class Engagement:
    """Result of engaging a driver: the accepted request and its new trip"""
    request: CargoRequest
    trip: Trip
    bid: Bid | None = None
    rejected_bid_ids: list[int] = field(default_factory=list)


def _check_coordinates(prefix: str, latitude: float, longitude: float) -> None:
    if latitude is None or not -90 <= latitude <= 90:
        raise ValidationException(f"{prefix} latitude must be within [-90, 90]", field=f"{prefix}_latitude")
    if longitude is None or not -180 <= longitude <= 180:
        raise ValidationException(f"{prefix} longitude must be within [-180, 180]", field=f"{prefix}_longitude")


def validate_draft(values: dict[str, Any]) -> None:
    """Field rules shared by create and update_details"""
    if not (values.get("cargo_name") or "").strip():
        raise ValidationException("Cargo name is required", field="cargo_name")

    price = values["price"]
    if not isinstance(price, Money) or not price.is_positive:
        raise ValidationException("Price must be a positive amount", field="price")

    weight = values.get("weight_kg")
    if weight is None or Decimal(str(weight)) <= 0:
        raise ValidationException("Weight must be positive", field="weight_kg")
    volume = values.get("volume_m3")
    if volume is not None and Decimal(str(volume)) <= 0:
        raise ValidationException("Volume must be positive", field="volume_m3")

    for prefix in ("pickup", "delivery"):
        if not (values.get(f"{prefix}_address") or "").strip():
            raise ValidationException(f"{prefix.capitalize()} address is required", field=f"{prefix}_address")
        _check_coordinates(prefix, values.get(f"{prefix}_latitude"), values.get(f"{prefix}_longitude"))

    pickup_time, delivery_time = values.get("pickup_time"), values.get("delivery_time")
    if pickup_time is None or delivery_time is None:
        raise ValidationException("Pickup and delivery times are required", field="pickup_time")
    if delivery_time <= pickup_time:
        raise ValidationException("Delivery time must be after pickup time", field="delivery_time")


class CargoRequestService:
    ENTITY = "CargoRequest"

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventSink(db)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _lock(self, request_id: int) -> CargoRequest:
        result = await self.db.execute(
            select(CargoRequest)
            .where(CargoRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise CargoRequestNotFoundError(request_id)
        return request

    async def _lock_bids(self, request_id: int) -> list[Bid]:
        """
        Every bid on the request, locked in id order. Callers lock the request
        row first: request -> bids -> trip is the only lock order used.
        """
        result = await self.db.execute(
            select(Bid)
            .where(Bid.cargo_request_id == request_id)
            .order_by(Bid.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def _require(self, request: CargoRequest, allowed: set | frozenset, target: CargoRequestStatus) -> None:
        if request.status not in allowed:
            raise InvalidStateTransitionError(self.ENTITY, request.id, request.status.value, target.value)

    async def _move(
        self,
        request: CargoRequest,
        target: CargoRequestStatus,
        allowed_from: set | frozenset,
        stamp: str,
        payload: dict[str, Any] | None = None,
    ) -> CargoRequest:
        self._require(request, allowed_from, target)
        previous = request.status
        request.status = target
        setattr(request, stamp, utcnow())
        await self.events.emit(f"cargo_request.{target.value}", "cargo_request", request.id, {
            "from": previous,
            "to": target,
            "driver_id": request.driver_id,
            **(payload or {}),
        })
        logger.info(
            f"Cargo request {target.value}",
            extra_data={"request_id": request.id, "from": previous.value, "to": target.value}
        )
        return request

    # ------------------------------------------------------------------
    # internal transitions (flush-only, used by other services)
    # ------------------------------------------------------------------

    async def _engage(
        self,
        request: CargoRequest,
        driver_id: int,
        agreed_price: Money,
        bid: Bid | None = None,
        bids: list[Bid] | None = None,
    ) -> Engagement:
        """
        PENDING -> ACCEPTED for ``driver_id`` and a new Trip in ASSIGNED.

        ``request`` must already be locked by the caller; ``bids`` are the
        request's bids from ``_lock_bids`` when the caller already holds them.
        Other still-pending bids are rejected in the same transaction.
        """
        from freight.domain.services.trip_service import TripService

        if agreed_price.currency != request.currency:
            raise ValidationException("Agreed price currency differs from the request", field="currency")
        if not agreed_price.is_positive:
            raise ValidationException("Agreed price must be positive", field="agreed_price")
        if bids is None:
            bids = await self._lock_bids(request.id)

        await self._move(
            request,
            CargoRequestStatus.ACCEPTED,
            {CargoRequestStatus.PENDING},
            "accepted_at",
            {"bid_id": bid.id if bid else None, "agreed_price": agreed_price.amount},
        )
        request.driver_id = driver_id
        request.accepted_bid_id = bid.id if bid else None

        trip = await TripService(self.db)._create_trip(request, driver_id, agreed_price, bid_id=bid.id if bid else None)
        request.trip_id = trip.id

        rejected_ids = await self._reject_open_bids(request, bids, keep_bid_id=bid.id if bid else None)
        await self.db.flush()
        return Engagement(request=request, trip=trip, bid=bid, rejected_bid_ids=rejected_ids)

    async def _reject_open_bids(self, request: CargoRequest, bids: list[Bid], keep_bid_id: int | None) -> list[int]:
        now = utcnow()
        rejected = []
        for other in bids:
            if other.id == keep_bid_id or other.is_accepted or other.is_rejected or other.is_expired(now):
                continue
            other.is_rejected = True
            other.rejected_at = now
            other.rejection_reason = "Another driver was engaged"
            rejected.append(other.id)
            await self.events.emit("bid.rejected", "bid", other.id, {
                "cargo_request_id": request.id,
                "reason": other.rejection_reason,
            })
        return rejected

    async def _advance_from_trip(self, request_id: int, target: CargoRequestStatus, trip_id: int) -> bool:
        """
        Trip-driven propagation (ACCEPTED -> PICKED_UP, PICKED_UP -> DELIVERED).
        Only fires from the exact predecessor; otherwise logged and skipped.
        """
        predecessor = {
            CargoRequestStatus.PICKED_UP: CargoRequestStatus.ACCEPTED,
            CargoRequestStatus.DELIVERED: CargoRequestStatus.PICKED_UP,
        }[target]
        stamp = {CargoRequestStatus.PICKED_UP: "picked_up_at", CargoRequestStatus.DELIVERED: "delivered_at"}[target]

        request = await self._lock(request_id)
        if request.status != predecessor:
            logger.warning(
                "Skipping request propagation from trip",
                extra_data={
                    "request_id": request_id,
                    "trip_id": trip_id,
                    "status": request.status.value,
                    "target": target.value,
                }
            )
            return False
        await self._move(request, target, {predecessor}, stamp, {"trip_id": trip_id})
        return True

    async def _close(
        self,
        request: CargoRequest,
        target: CargoRequestStatus,
        reason: str,
        *,
        cascade_trip: bool = True,
    ) -> CargoRequest:
        stamp = "cancelled_at" if target == CargoRequestStatus.CANCELLED else "failed_at"
        await self._move(request, target, ACTIVE_REQUEST_STATUSES, stamp, {"reason": reason})
        if target == CargoRequestStatus.CANCELLED:
            request.cancellation_reason = reason
        else:
            request.failure_reason = reason

        if cascade_trip and request.trip_id:
            from freight.domain.services.trip_service import TripService
            await TripService(self.db)._cancel_if_open(request.trip_id, f"cargo request {target.value}: {reason}")
        return request

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    @service_operation("cargo_request.create")
    async def create(self, draft: CargoRequestDraft) -> CargoRequest:
        values = {f.name: getattr(draft, f.name) for f in fields(draft)}
        validate_draft(values)
        if draft.owner_id is None:
            raise ValidationException("Owner is required", field="owner_id")

        request = CargoRequest(
            owner_id=draft.owner_id,
            cargo_name=draft.cargo_name.strip(),
            cargo_description=draft.cargo_description,
            cargo_type=draft.cargo_type,
            vehicle_type=draft.vehicle_type,
            weight_kg=quantize(draft.weight_kg),
            volume_m3=quantize(draft.volume_m3) if draft.volume_m3 is not None else None,
            special_instructions=draft.special_instructions,
            pickup_address=draft.pickup_address.strip(),
            pickup_latitude=draft.pickup_latitude,
            pickup_longitude=draft.pickup_longitude,
            pickup_time=draft.pickup_time,
            delivery_address=draft.delivery_address.strip(),
            delivery_latitude=draft.delivery_latitude,
            delivery_longitude=draft.delivery_longitude,
            delivery_time=draft.delivery_time,
            price=draft.price.amount,
            currency=draft.price.currency,
            status=CargoRequestStatus.PENDING,
            created_at=utcnow(),
        )
        self.db.add(request)
        await self.db.flush()
        await self.events.emit("cargo_request.created", "cargo_request", request.id, {
            "owner_id": request.owner_id,
            "price": request.price,
            "currency": request.currency,
        })
        await self.db.commit()
        logger.info("Cargo request created", extra_data={"request_id": request.id, "owner_id": request.owner_id})
        return request

    @service_operation("cargo_request.update_details")
    async def update_details(self, request_id: int, **changes: Any) -> CargoRequest:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationException(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        request = await self._lock(request_id)
        if request.status != CargoRequestStatus.PENDING:
            raise InvalidStateTransitionError(self.ENTITY, request.id, request.status.value, "update_details")

        merged = {name: getattr(request, name) for name in UPDATABLE_FIELDS if name != "price"}
        merged["price"] = request.price_money
        merged.update(changes)
        validate_draft(merged)

        for name, value in changes.items():
            if name == "price":
                request.price = value.amount
                request.currency = value.currency
            elif name in ("weight_kg", "volume_m3") and value is not None:
                setattr(request, name, quantize(value))
            else:
                setattr(request, name, value)
        await self.events.emit("cargo_request.updated", "cargo_request", request.id, {"fields": sorted(changes)})
        await self.db.commit()
        return request

    @service_operation("cargo_request.accept")
    async def accept(self, request_id: int, driver_id: int, agreed_price: Money | None = None) -> Engagement:
        """Direct assignment of a driver, without bidding"""
        request = await self._lock(request_id)
        engagement = await self._engage(request, driver_id, agreed_price or request.price_money)
        await self.db.commit()
        return engagement

    @service_operation("cargo_request.pick_up")
    async def pick_up(self, request_id: int) -> CargoRequest:
        request = await self._lock(request_id)
        await self._move(request, CargoRequestStatus.PICKED_UP, {CargoRequestStatus.ACCEPTED}, "picked_up_at")
        await self.db.commit()
        return request

    @service_operation("cargo_request.deliver")
    async def deliver(self, request_id: int) -> CargoRequest:
        request = await self._lock(request_id)
        await self._move(request, CargoRequestStatus.DELIVERED, {CargoRequestStatus.PICKED_UP}, "delivered_at")
        await self.db.commit()
        return request

    @service_operation("cargo_request.cancel")
    async def cancel(self, request_id: int, reason: str) -> CargoRequest:
        if not (reason or "").strip():
            raise ValidationException("Cancellation reason is required", field="reason")
        request = await self._lock(request_id)
        await self._close(request, CargoRequestStatus.CANCELLED, reason.strip())
        await self.db.commit()
        return request

    @service_operation("cargo_request.fail")
    async def fail(self, request_id: int, reason: str) -> CargoRequest:
        if not (reason or "").strip():
            raise ValidationException("Failure reason is required", field="reason")
        request = await self._lock(request_id)
        await self._close(request, CargoRequestStatus.FAILED, reason.strip())
        await self.db.commit()
        return request

    @service_operation("cargo_request.get")
    async def get(self, request_id: int) -> CargoRequest:
        request = await self.db.get(CargoRequest, request_id, populate_existing=True)
        if request is None:
            raise CargoRequestNotFoundError(request_id)
        return request

    @service_operation("cargo_request.list_open")
    async def list_open(
        self,
        vehicle_type: VehicleType | None = None,
        cargo_type: CargoType | None = None,
        limit: int = 50,
    ) -> list[CargoRequest]:
        """Pending requests drivers can still bid on, newest first"""
        query = select(CargoRequest).where(CargoRequest.status == CargoRequestStatus.PENDING)
        if vehicle_type is not None:
            query = query.where(CargoRequest.vehicle_type == vehicle_type)
        if cargo_type is not None:
            query = query.where(CargoRequest.cargo_type == cargo_type)
        result = await self.db.execute(query.order_by(CargoRequest.created_at.desc()).limit(limit))
        return list(result.scalars().all())
