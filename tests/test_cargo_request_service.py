"""
Tests for CargoRequestService - creation, editing and the request lifecycle
"""
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from freight.core.clock import utcnow
from freight.core.exceptions import ErrorCode, ErrorKind
from freight.db.models.cargo_request import CargoRequestStatus, CargoType, VehicleType
from freight.db.models.trip import TripStatus
from freight.domain.services.cargo_request_service import CargoRequestDraft, CargoRequestService
from freight.domain.services.event_sink import EventSink
from tests.factories import DRIVER_ID, OWNER_ID, irr


def _draft(**overrides) -> CargoRequestDraft:
    now = utcnow()
    draft = CargoRequestDraft(
        owner_id=OWNER_ID,
        cargo_name="Rice sacks",
        weight_kg=Decimal("1200"),
        price=irr("1000000"),
        pickup_address="Rasht, Golsar",
        pickup_latitude=37.2808,
        pickup_longitude=49.5832,
        pickup_time=now + timedelta(hours=6),
        delivery_address="Tehran, Tajrish",
        delivery_latitude=35.8044,
        delivery_longitude=51.4340,
        delivery_time=now + timedelta(hours=18),
        cargo_type=CargoType.FOOD,
        vehicle_type=VehicleType.BOX_TRUCK,
    )
    return replace(draft, **overrides)


@pytest.mark.unit
class TestCreate:
    async def test_new_request_is_pending(self, db_session):
        request = (await CargoRequestService(db_session).create(_draft())).unwrap()

        assert request.status == CargoRequestStatus.PENDING
        assert request.price_money == irr("1000000")
        assert request.driver_id is None
        events = await EventSink(db_session).get_events_for("cargo_request", request.id)
        assert [e.name for e in events] == ["cargo_request.created"]

    @pytest.mark.parametrize("overrides", [
        {"cargo_name": "  "},
        {"price": irr("0")},
        {"weight_kg": Decimal("0")},
        {"volume_m3": Decimal("-1")},
        {"pickup_latitude": 91.0},
        {"delivery_longitude": -181.0},
        {"delivery_address": ""},
    ])
    async def test_invalid_fields(self, db_session, overrides):
        result = await CargoRequestService(db_session).create(_draft(**overrides))

        assert result.error_kind == ErrorKind.VALIDATION

    async def test_delivery_must_follow_pickup(self, db_session):
        draft = _draft()
        draft.delivery_time = draft.pickup_time

        result = await CargoRequestService(db_session).create(draft)

        assert result.error_kind == ErrorKind.VALIDATION
        assert result.error.details["field"] == "delivery_time"


@pytest.mark.unit
class TestUpdateDetails:
    async def test_pending_request_can_be_edited(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()

        updated = (await CargoRequestService(db_session).update_details(
            request.id, price=irr("1200000"), special_instructions="Keep dry"
        )).unwrap()

        assert updated.price_money == irr("1200000")
        assert updated.special_instructions == "Keep dry"

    async def test_owner_cannot_be_changed(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()

        result = await CargoRequestService(db_session).update_details(request.id, owner_id=9)

        assert result.error_kind == ErrorKind.VALIDATION

    async def test_update_is_validated_against_the_merged_values(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()

        result = await CargoRequestService(db_session).update_details(
            request.id, delivery_time=request.pickup_time - timedelta(hours=1)
        )

        assert result.error_kind == ErrorKind.VALIDATION

    async def test_accepted_request_is_frozen(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = CargoRequestService(db_session)
        (await service.accept(request.id, DRIVER_ID)).unwrap()

        result = await service.update_details(request.id, cargo_name="Other")

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION


@pytest.mark.unit
class TestLifecycle:
    async def test_accept_spawns_an_assigned_trip(self, db_session, cargo_request_factory):
        request = await cargo_request_factory(price="1000000")

        engagement = (await CargoRequestService(db_session).accept(request.id, DRIVER_ID, irr("900000"))).unwrap()

        assert engagement.request.status == CargoRequestStatus.ACCEPTED
        assert engagement.request.driver_id == DRIVER_ID
        assert engagement.request.trip_id == engagement.trip.id
        assert engagement.trip.status == TripStatus.ASSIGNED
        assert engagement.trip.agreed_money == irr("900000")
        assert engagement.trip.trip_number.startswith("TRP")

    async def test_accept_defaults_to_the_request_price(self, db_session, cargo_request_factory):
        request = await cargo_request_factory(price="750000")

        engagement = (await CargoRequestService(db_session).accept(request.id, DRIVER_ID)).unwrap()

        assert engagement.trip.agreed_money == irr("750000")

    async def test_accept_twice_fails(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = CargoRequestService(db_session)
        (await service.accept(request.id, DRIVER_ID)).unwrap()

        result = await service.accept(request.id, DRIVER_ID + 1)

        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION
        assert (await service.get(request.id)).unwrap().driver_id == DRIVER_ID

    async def test_manual_pick_up_and_deliver(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = CargoRequestService(db_session)
        (await service.accept(request.id, DRIVER_ID)).unwrap()

        (await service.pick_up(request.id)).unwrap()
        delivered = (await service.deliver(request.id)).unwrap()

        assert delivered.status == CargoRequestStatus.DELIVERED
        assert delivered.accepted_at <= delivered.picked_up_at <= delivered.delivered_at

    async def test_deliver_requires_pick_up(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = CargoRequestService(db_session)
        (await service.accept(request.id, DRIVER_ID)).unwrap()

        result = await service.deliver(request.id)

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert result.error.details["current_state"] == "accepted"

    async def test_cancel_needs_a_reason(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        result = await CargoRequestService(db_session).cancel(request.id, "  ")
        assert result.error_kind == ErrorKind.VALIDATION

    async def test_cancel_cascades_to_the_open_trip(self, db_session, trip_factory):
        trip = await trip_factory(until="started")
        service = CargoRequestService(db_session)

        request = (await service.cancel(trip.cargo_request_id, "Owner changed plans")).unwrap()

        assert request.status == CargoRequestStatus.CANCELLED
        assert request.cancellation_reason == "Owner changed plans"
        await db_session.refresh(trip)
        assert trip.status == TripStatus.CANCELLED

    async def test_fail_records_the_reason(self, db_session, trip_factory):
        trip = await trip_factory(until="in_transit")

        request = (await CargoRequestService(db_session).fail(trip.cargo_request_id, "Road closed")).unwrap()

        assert request.status == CargoRequestStatus.FAILED
        assert request.failure_reason == "Road closed"
        assert request.failed_at is not None

    async def test_terminal_request_cannot_be_cancelled(self, db_session, trip_factory):
        trip = await trip_factory(until="delivered")

        result = await CargoRequestService(db_session).cancel(trip.cargo_request_id, "too late")

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION

    async def test_unknown_request(self, db_session):
        result = await CargoRequestService(db_session).get(424242)
        assert result.error_kind == ErrorKind.NOT_FOUND


@pytest.mark.unit
class TestListOpen:
    async def test_only_pending_requests_filtered_by_vehicle(self, db_session, cargo_request_factory):
        reefer = await cargo_request_factory(vehicle_type=VehicleType.REFRIGERATED_TRUCK, cargo_type=CargoType.FOOD)
        box = await cargo_request_factory(vehicle_type=VehicleType.BOX_TRUCK)
        taken = await cargo_request_factory(vehicle_type=VehicleType.BOX_TRUCK)
        service = CargoRequestService(db_session)
        (await service.accept(taken.id, DRIVER_ID)).unwrap()

        open_all = {r.id for r in (await service.list_open()).unwrap()}
        open_box = {r.id for r in (await service.list_open(vehicle_type=VehicleType.BOX_TRUCK)).unwrap()}
        open_food = {r.id for r in (await service.list_open(cargo_type=CargoType.FOOD)).unwrap()}

        assert open_all == {reefer.id, box.id}
        assert open_box == {box.id}
        assert open_food == {reefer.id}
