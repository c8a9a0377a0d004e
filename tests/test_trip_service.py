"""
Tests for TripService - phase transitions, cascades and tracking
"""
import re
from datetime import datetime

import pytest

from freight.core.exceptions import ErrorCode, ErrorKind, GatewayError
from freight.core.money import Money
from freight.db.models.cargo_request import CargoRequestStatus
from freight.db.models.payment import PaymentMethod, PaymentStatus
from freight.db.models.trip import TRIP_PHASE_TIMESTAMPS, TripStatus
from freight.domain.services.cargo_request_service import CargoRequestService
from freight.domain.services.trip_service import TripService, generate_trip_number
from freight.domain.services.wallet_ledger_service import WalletLedgerService
from tests.factories import OWNER_ID, irr


async def _request_status(db_session, trip) -> CargoRequestStatus:
    return (await CargoRequestService(db_session).get(trip.cargo_request_id)).unwrap().status


@pytest.mark.unit
def test_trip_number_format():
    number = generate_trip_number(datetime(2026, 3, 9, 12, 0))
    assert re.fullmatch(r"TRP20260309\d{4}", number)


@pytest.mark.unit
class TestHappyPath:
    async def test_phase_timestamps_are_ordered(self, db_session, trip_factory):
        trip = await trip_factory(until="delivered")
        completion = (await TripService(db_session).complete(trip.id)).unwrap()

        stamps = [getattr(completion.trip, name) for name in TRIP_PHASE_TIMESTAMPS]
        assert all(stamps)
        assert stamps == sorted(stamps)
        assert completion.trip.status == TripStatus.COMPLETED

    async def test_loading_and_delivery_drive_the_request(self, db_session, trip_factory):
        trip = await trip_factory(until="loading")
        service = TripService(db_session)
        assert await _request_status(db_session, trip) == CargoRequestStatus.ACCEPTED

        (await service.complete_loading(trip.id)).unwrap()
        assert await _request_status(db_session, trip) == CargoRequestStatus.PICKED_UP

        for step in (service.start_transit, service.arrive, service.deliver):
            (await step(trip.id)).unwrap()
        assert await _request_status(db_session, trip) == CargoRequestStatus.DELIVERED

    async def test_durations(self, db_session, trip_factory):
        trip = await trip_factory(until="delivered")
        completed = (await TripService(db_session).complete(trip.id)).unwrap().trip

        assert completed.loading_duration is not None
        assert completed.transit_duration is not None
        assert completed.total_duration >= completed.transit_duration


@pytest.mark.unit
class TestIllegalTransitions:
    @pytest.mark.parametrize("until, step", [
        ("assigned", "start"),
        ("accepted", "start_loading"),
        ("started", "complete_loading"),
        ("loading", "start_transit"),
        ("loaded", "arrive"),
        ("in_transit", "deliver"),
        ("arrived", "accept"),
    ])
    async def test_each_phase_has_one_predecessor(self, db_session, trip_factory, until, step):
        trip = await trip_factory(until=until)

        result = await getattr(TripService(db_session), step)(trip.id)

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert (await TripService(db_session).get(trip.id)).unwrap().status.value == until

    async def test_complete_requires_delivery(self, db_session, trip_factory):
        trip = await trip_factory(until="arrived")

        result = await TripService(db_session).complete(trip.id)

        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION

    async def test_actual_price_currency_must_match(self, db_session, trip_factory):
        trip = await trip_factory(until="delivered")

        result = await TripService(db_session).complete(trip.id, actual_price=Money.of("10", "USD"))

        assert result.error_kind == ErrorKind.VALIDATION
        assert (await TripService(db_session).get(trip.id)).unwrap().status == TripStatus.DELIVERED


@pytest.mark.unit
class TestRejectAndCancel:
    async def test_driver_rejection_cancels_the_request(self, db_session, trip_factory):
        trip = await trip_factory(until="assigned")

        rejected = (await TripService(db_session).reject(trip.id, "Truck broke down")).unwrap()

        assert rejected.status == TripStatus.REJECTED
        assert rejected.rejection_reason == "Truck broke down"
        assert await _request_status(db_session, trip) == CargoRequestStatus.CANCELLED

    async def test_reject_only_from_assigned(self, db_session, trip_factory):
        trip = await trip_factory(until="accepted")
        result = await TripService(db_session).reject(trip.id, "changed my mind")
        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION

    async def test_cancel_in_transit(self, db_session, trip_factory):
        trip = await trip_factory(until="in_transit")

        cancelled = (await TripService(db_session).cancel(trip.id, "Accident")).unwrap()

        assert cancelled.status == TripStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert await _request_status(db_session, trip) == CargoRequestStatus.CANCELLED

    async def test_delivered_trip_cannot_be_cancelled(self, db_session, trip_factory):
        trip = await trip_factory(until="delivered")

        result = await TripService(db_session).cancel(trip.id, "oops")

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert await _request_status(db_session, trip) == CargoRequestStatus.DELIVERED


@pytest.mark.unit
class TestCompletion:
    async def test_completion_hands_off_to_payment(self, db_session, trip_factory, fake_gateway):
        trip = await trip_factory(until="delivered", price="950000")

        completion = (await TripService(db_session).complete(trip.id)).unwrap()

        assert completion.payment_created
        assert completion.payment.status == PaymentStatus.PROCESSING
        assert completion.payment.gross_money == irr("950000")
        assert fake_gateway.calls_to("create_payment") == [completion.payment.payment_number]

    async def test_actual_price_overrides_agreed(self, db_session, trip_factory):
        trip = await trip_factory(until="delivered", price="950000")

        completion = (await TripService(db_session).complete(trip.id, actual_price=irr("1000000"))).unwrap()

        assert completion.trip.actual_price == irr("1000000").amount
        assert completion.payment.gross_money == irr("1000000")

    async def test_completion_sticks_when_payment_fails(self, db_session, trip_factory, fake_gateway):
        fake_gateway.create_error = GatewayError("zarinpal", "merchant suspended", retryable=False, gateway_code=-11)
        trip = await trip_factory(until="delivered")

        completion = (await TripService(db_session).complete(trip.id)).unwrap()

        assert completion.trip.status == TripStatus.COMPLETED
        assert completion.payment is None
        assert completion.payment_error.error_code == ErrorCode.GATEWAY_DECLINED

    async def test_wallet_method_settles_immediately(self, db_session, trip_factory, fake_gateway):
        trip = await trip_factory(until="delivered", price="950000")
        (await WalletLedgerService(db_session).deposit(OWNER_ID, irr("950000"))).unwrap()

        completion = (await TripService(db_session).complete(trip.id, method=PaymentMethod.WALLET)).unwrap()

        assert completion.payment.status == PaymentStatus.COMPLETED
        assert fake_gateway.calls == []


@pytest.mark.unit
class TestTracking:
    async def test_points_come_back_in_time_order(self, db_session, trip_factory):
        trip = await trip_factory(until="in_transit")
        service = TripService(db_session)

        (await service.add_tracking_point(trip.id, 35.70, 51.40, speed_kmh=62.5, heading=180)).unwrap()
        (await service.add_tracking_point(trip.id, 35.10, 51.55, speed_kmh=80)).unwrap()

        points = (await service.get_tracking(trip.id)).unwrap()
        assert [p.latitude for p in points] == [35.70, 35.10]

    @pytest.mark.parametrize("until", ["assigned", "accepted", "delivered"])
    async def test_only_while_on_the_road(self, db_session, trip_factory, until):
        trip = await trip_factory(until=until)

        result = await TripService(db_session).add_tracking_point(trip.id, 35.7, 51.4)

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION

    @pytest.mark.parametrize("kwargs", [
        {"latitude": 95.0, "longitude": 51.4},
        {"latitude": 35.7, "longitude": 200.0},
        {"latitude": 35.7, "longitude": 51.4, "speed_kmh": -1},
        {"latitude": 35.7, "longitude": 51.4, "heading": 360},
    ])
    async def test_point_validation(self, db_session, trip_factory, kwargs):
        trip = await trip_factory(until="started")

        result = await TripService(db_session).add_tracking_point(trip.id, **kwargs)

        assert result.error_kind == ErrorKind.VALIDATION

    async def test_notes_are_appended(self, db_session, trip_factory):
        trip = await trip_factory(until="started")
        service = TripService(db_session)

        (await service.add_notes(trip.id, "Gate 3")).unwrap()
        updated = (await service.add_notes(trip.id, "Ask for Reza")).unwrap()

        assert updated.notes == "Gate 3\nAsk for Reza"

    async def test_trip_for_request(self, db_session, trip_factory):
        trip = await trip_factory(until="assigned")
        found = (await TripService(db_session).get_for_request(trip.cargo_request_id)).unwrap()
        assert found.id == trip.id
