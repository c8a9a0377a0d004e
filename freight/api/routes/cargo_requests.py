"""
Cargo Request API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from freight.api.schemas import MoneyIn, MoneyOut, ReasonIn
from freight.db.database import get_db
from freight.db.models.cargo_request import CargoRequest, CargoType, VehicleType
from freight.domain.services.cargo_request_service import CargoRequestDraft, CargoRequestService

router = APIRouter()


class CargoRequestCreate(BaseModel):
    owner_id: int
    cargo_name: str = Field(min_length=1, max_length=200)
    cargo_type: CargoType = CargoType.GENERAL
    vehicle_type: VehicleType = VehicleType.OTHER
    cargo_description: str | None = None
    weight_kg: Decimal
    volume_m3: Decimal | None = None
    special_instructions: str | None = None
    price: MoneyIn
    pickup_address: str
    pickup_latitude: float
    pickup_longitude: float
    pickup_time: datetime
    delivery_address: str
    delivery_latitude: float
    delivery_longitude: float
    delivery_time: datetime

    def to_draft(self) -> CargoRequestDraft:
        values = self.model_dump(exclude={"price"})
        return CargoRequestDraft(price=self.price.to_money(), **values)


class CargoRequestUpdate(BaseModel):
    """Only the fields sent are changed"""
    cargo_name: str | None = None
    cargo_type: CargoType | None = None
    vehicle_type: VehicleType | None = None
    cargo_description: str | None = None
    weight_kg: Decimal | None = None
    volume_m3: Decimal | None = None
    special_instructions: str | None = None
    price: MoneyIn | None = None
    pickup_address: str | None = None
    pickup_latitude: float | None = None
    pickup_longitude: float | None = None
    pickup_time: datetime | None = None
    delivery_address: str | None = None
    delivery_latitude: float | None = None
    delivery_longitude: float | None = None
    delivery_time: datetime | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True, exclude={"price"})
        if self.price is not None:
            changes["price"] = self.price.to_money()
        return changes


class AcceptRequest(BaseModel):
    driver_id: int
    agreed_price: MoneyIn | None = None


class CargoRequestResponse(BaseModel):
    id: int
    owner_id: int
    cargo_name: str
    cargo_type: CargoType
    vehicle_type: VehicleType
    weight_kg: str
    price: MoneyOut
    pickup_address: str
    delivery_address: str
    pickup_time: datetime
    delivery_time: datetime
    status: str
    driver_id: int | None
    trip_id: int | None
    accepted_bid_id: int | None
    cancellation_reason: str | None
    failure_reason: str | None
    created_at: datetime
    accepted_at: datetime | None
    picked_up_at: datetime | None
    delivered_at: datetime | None
    cancelled_at: datetime | None
    failed_at: datetime | None

    @classmethod
    def from_model(cls, request: CargoRequest) -> "CargoRequestResponse":
        return cls(
            id=request.id,
            owner_id=request.owner_id,
            cargo_name=request.cargo_name,
            cargo_type=request.cargo_type,
            vehicle_type=request.vehicle_type,
            weight_kg=f"{request.weight_kg:.2f}",
            price=MoneyOut.of(request.price, request.currency),
            pickup_address=request.pickup_address,
            delivery_address=request.delivery_address,
            pickup_time=request.pickup_time,
            delivery_time=request.delivery_time,
            status=request.status.value,
            driver_id=request.driver_id,
            trip_id=request.trip_id,
            accepted_bid_id=request.accepted_bid_id,
            cancellation_reason=request.cancellation_reason,
            failure_reason=request.failure_reason,
            created_at=request.created_at,
            accepted_at=request.accepted_at,
            picked_up_at=request.picked_up_at,
            delivered_at=request.delivered_at,
            cancelled_at=request.cancelled_at,
            failed_at=request.failed_at,
        )


class EngagementResponse(BaseModel):
    request: CargoRequestResponse
    trip_id: int
    trip_number: str
    agreed_price: MoneyOut
    bid_id: int | None
    rejected_bid_ids: List[int]

    @classmethod
    def from_engagement(cls, engagement) -> "EngagementResponse":
        return cls(
            request=CargoRequestResponse.from_model(engagement.request),
            trip_id=engagement.trip.id,
            trip_number=engagement.trip.trip_number,
            agreed_price=MoneyOut.from_money(engagement.trip.agreed_money),
            bid_id=engagement.bid.id if engagement.bid else None,
            rejected_bid_ids=engagement.rejected_bid_ids,
        )


@router.post("/", response_model=CargoRequestResponse, status_code=201, summary="Create a cargo request")
async def create_cargo_request(body: CargoRequestCreate, db: AsyncSession = Depends(get_db)):
    request = (await CargoRequestService(db).create(body.to_draft())).unwrap()
    return CargoRequestResponse.from_model(request)


@router.get("/", response_model=List[CargoRequestResponse], summary="Open cargo requests")
async def list_open_cargo_requests(
    vehicle_type: VehicleType | None = None,
    cargo_type: CargoType | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    requests = (await CargoRequestService(db).list_open(vehicle_type, cargo_type, limit)).unwrap()
    return [CargoRequestResponse.from_model(r) for r in requests]


@router.get("/{request_id}", response_model=CargoRequestResponse)
async def get_cargo_request(request_id: int, db: AsyncSession = Depends(get_db)):
    return CargoRequestResponse.from_model((await CargoRequestService(db).get(request_id)).unwrap())


@router.patch("/{request_id}", response_model=CargoRequestResponse, summary="Edit a pending request")
async def update_cargo_request(request_id: int, body: CargoRequestUpdate, db: AsyncSession = Depends(get_db)):
    request = (await CargoRequestService(db).update_details(request_id, **body.changes())).unwrap()
    return CargoRequestResponse.from_model(request)


@router.post("/{request_id}/accept", response_model=EngagementResponse, summary="Assign a driver directly")
async def accept_cargo_request(request_id: int, body: AcceptRequest, db: AsyncSession = Depends(get_db)):
    agreed = body.agreed_price.to_money() if body.agreed_price else None
    engagement = (await CargoRequestService(db).accept(request_id, body.driver_id, agreed)).unwrap()
    return EngagementResponse.from_engagement(engagement)


@router.post("/{request_id}/pick-up", response_model=CargoRequestResponse)
async def pick_up_cargo_request(request_id: int, db: AsyncSession = Depends(get_db)):
    return CargoRequestResponse.from_model((await CargoRequestService(db).pick_up(request_id)).unwrap())


@router.post("/{request_id}/deliver", response_model=CargoRequestResponse)
async def deliver_cargo_request(request_id: int, db: AsyncSession = Depends(get_db)):
    return CargoRequestResponse.from_model((await CargoRequestService(db).deliver(request_id)).unwrap())


@router.post("/{request_id}/cancel", response_model=CargoRequestResponse)
async def cancel_cargo_request(request_id: int, body: ReasonIn, db: AsyncSession = Depends(get_db)):
    request = (await CargoRequestService(db).cancel(request_id, body.reason)).unwrap()
    return CargoRequestResponse.from_model(request)


@router.post("/{request_id}/fail", response_model=CargoRequestResponse)
async def fail_cargo_request(request_id: int, body: ReasonIn, db: AsyncSession = Depends(get_db)):
    request = (await CargoRequestService(db).fail(request_id, body.reason)).unwrap()
    return CargoRequestResponse.from_model(request)
