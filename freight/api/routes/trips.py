"""
Trip API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from freight.api.routes.payments import PaymentResponse
from freight.api.schemas import MoneyIn, MoneyOut, ReasonIn
from freight.db.database import get_db
from freight.db.models.payment import PaymentMethod
from freight.db.models.trip import Trip
from freight.domain.services.trip_service import TripService

router = APIRouter()


class TripResponse(BaseModel):
    id: int
    trip_number: str
    cargo_request_id: int
    driver_id: int
    bid_id: int | None
    status: str
    agreed_price: MoneyOut
    actual_price: MoneyOut | None
    assigned_at: datetime
    accepted_at: datetime | None
    started_at: datetime | None
    loading_started_at: datetime | None
    loading_completed_at: datetime | None
    in_transit_at: datetime | None
    arrived_at: datetime | None
    delivered_at: datetime | None
    completed_at: datetime | None
    rejected_at: datetime | None
    cancelled_at: datetime | None
    rejection_reason: str | None
    cancellation_reason: str | None
    notes: str | None

    @classmethod
    def from_model(cls, trip: Trip) -> "TripResponse":
        return cls(
            id=trip.id,
            trip_number=trip.trip_number,
            cargo_request_id=trip.cargo_request_id,
            driver_id=trip.driver_id,
            bid_id=trip.bid_id,
            status=trip.status.value,
            agreed_price=MoneyOut.of(trip.agreed_price, trip.currency),
            actual_price=MoneyOut.of(trip.actual_price, trip.currency),
            assigned_at=trip.assigned_at,
            accepted_at=trip.accepted_at,
            started_at=trip.started_at,
            loading_started_at=trip.loading_started_at,
            loading_completed_at=trip.loading_completed_at,
            in_transit_at=trip.in_transit_at,
            arrived_at=trip.arrived_at,
            delivered_at=trip.delivered_at,
            completed_at=trip.completed_at,
            rejected_at=trip.rejected_at,
            cancelled_at=trip.cancelled_at,
            rejection_reason=trip.rejection_reason,
            cancellation_reason=trip.cancellation_reason,
            notes=trip.notes,
        )


class TripCompleteRequest(BaseModel):
    actual_price: MoneyIn | None = None
    method: PaymentMethod = PaymentMethod.GATEWAY


class TripCompletionResponse(BaseModel):
    trip: TripResponse
    payment: PaymentResponse | None
    payment_error: dict | None


class TrackingPointIn(BaseModel):
    latitude: float
    longitude: float
    speed_kmh: float | None = None
    heading: float | None = None
    recorded_at: datetime | None = None


class TrackingPointResponse(BaseModel):
    id: int
    trip_id: int
    latitude: float
    longitude: float
    speed_kmh: float | None
    heading: float | None
    recorded_at: datetime

    model_config = {"from_attributes": True}


class NotesIn(BaseModel):
    notes: str = Field(min_length=1, max_length=2000)


@router.get("/{trip_id}", response_model=TripResponse)
async def get_trip(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).get(trip_id)).unwrap())


@router.get("/by-request/{cargo_request_id}", response_model=TripResponse)
async def get_trip_for_request(cargo_request_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).get_for_request(cargo_request_id)).unwrap())


@router.post("/{trip_id}/accept", response_model=TripResponse)
async def accept_trip(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).accept(trip_id)).unwrap())


@router.post("/{trip_id}/reject", response_model=TripResponse)
async def reject_trip(trip_id: int, body: ReasonIn, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).reject(trip_id, body.reason)).unwrap())


@router.post("/{trip_id}/start", response_model=TripResponse)
async def start_trip(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).start(trip_id)).unwrap())


@router.post("/{trip_id}/start-loading", response_model=TripResponse)
async def start_loading(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).start_loading(trip_id)).unwrap())


@router.post("/{trip_id}/complete-loading", response_model=TripResponse)
async def complete_loading(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).complete_loading(trip_id)).unwrap())


@router.post("/{trip_id}/start-transit", response_model=TripResponse)
async def start_transit(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).start_transit(trip_id)).unwrap())


@router.post("/{trip_id}/arrive", response_model=TripResponse)
async def arrive(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).arrive(trip_id)).unwrap())


@router.post("/{trip_id}/deliver", response_model=TripResponse)
async def deliver_trip(trip_id: int, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).deliver(trip_id)).unwrap())


@router.post(
    "/{trip_id}/complete",
    response_model=TripCompletionResponse,
    summary="Complete the trip and start settlement",
    description="The completion sticks even when the payment cannot be initiated; "
                "the payment error is returned next to the trip.",
)
async def complete_trip(trip_id: int, body: TripCompleteRequest, db: AsyncSession = Depends(get_db)):
    actual = body.actual_price.to_money() if body.actual_price else None
    completion = (await TripService(db).complete(trip_id, actual, method=body.method)).unwrap()
    return TripCompletionResponse(
        trip=TripResponse.from_model(completion.trip),
        payment=PaymentResponse.from_model(completion.payment) if completion.payment else None,
        payment_error=completion.payment_error.to_dict()["error"] if completion.payment_error else None,
    )


@router.post("/{trip_id}/cancel", response_model=TripResponse)
async def cancel_trip(trip_id: int, body: ReasonIn, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).cancel(trip_id, body.reason)).unwrap())


@router.post("/{trip_id}/notes", response_model=TripResponse)
async def add_trip_notes(trip_id: int, body: NotesIn, db: AsyncSession = Depends(get_db)):
    return TripResponse.from_model((await TripService(db).add_notes(trip_id, body.notes)).unwrap())


@router.post("/{trip_id}/tracking", response_model=TrackingPointResponse, status_code=201)
async def add_tracking_point(trip_id: int, body: TrackingPointIn, db: AsyncSession = Depends(get_db)):
    return (await TripService(db).add_tracking_point(trip_id, **body.model_dump())).unwrap()


@router.get("/{trip_id}/tracking", response_model=List[TrackingPointResponse])
async def get_tracking(trip_id: int, limit: int = 500, db: AsyncSession = Depends(get_db)):
    return (await TripService(db).get_tracking(trip_id, limit)).unwrap()
