"""
בדיקות להצעות מחיר של נהגים
"""
from datetime import timedelta

import pytest

from freight.core.clock import utcnow
from freight.core.exceptions import ErrorCode, ErrorKind
from freight.core.money import Money
from freight.db.models.cargo_request import CargoRequestStatus
from freight.db.models.trip import TripStatus
from freight.domain.services.bidding_service import BiddingService
from freight.domain.services.cargo_request_service import CargoRequestService
from freight.domain.services.event_sink import EventSink
from tests.factories import DRIVER_ID, OTHER_DRIVER_ID, irr


@pytest.mark.unit
class TestSubmitBid:
    async def test_bid_expires_after_validity_window(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        now = utcnow()

        bid = (await BiddingService(db_session).submit_bid(
            request.id, DRIVER_ID, irr("950000"), message="Available tomorrow", validity_hours=24, now=now
        )).unwrap()

        assert bid.expires_at == now + timedelta(hours=24)
        assert bid.status_at(now) == "pending"
        assert bid.status_at(now + timedelta(hours=24)) == "expired"

    async def test_default_validity_from_settings(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        now = utcnow()

        bid = (await BiddingService(db_session).submit_bid(request.id, DRIVER_ID, irr("950000"), now=now)).unwrap()

        assert bid.expires_at - now == timedelta(hours=24)

    async def test_one_open_bid_per_driver(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        (await service.submit_bid(request.id, DRIVER_ID, irr("950000"))).unwrap()

        result = await service.submit_bid(request.id, DRIVER_ID, irr("940000"))

        assert result.error.error_code == ErrorCode.ALREADY_EXISTS
        assert (await service.submit_bid(request.id, OTHER_DRIVER_ID, irr("940000"))).success

    async def test_driver_may_bid_again_after_expiry(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        earlier = utcnow() - timedelta(hours=3)
        (await service.submit_bid(request.id, DRIVER_ID, irr("950000"), validity_hours=1, now=earlier)).unwrap()

        assert (await service.submit_bid(request.id, DRIVER_ID, irr("930000"))).success

    @pytest.mark.parametrize("amount, validity", [
        (irr("0"), 24),
        (irr("950000"), 0),
        (Money.of("950000", "USD"), 24),
    ])
    async def test_invalid_bids(self, db_session, cargo_request_factory, amount, validity):
        request = await cargo_request_factory()

        result = await BiddingService(db_session).submit_bid(request.id, DRIVER_ID, amount, validity_hours=validity)

        assert result.error_kind == ErrorKind.VALIDATION

    async def test_no_bids_on_accepted_request(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        (await CargoRequestService(db_session).accept(request.id, DRIVER_ID)).unwrap()

        result = await BiddingService(db_session).submit_bid(request.id, OTHER_DRIVER_ID, irr("900000"))

        assert result.error.error_code == ErrorCode.INVALID_STATE_TRANSITION


@pytest.mark.unit
class TestDecideBid:
    async def test_accept_engages_the_driver_at_the_bid_amount(self, db_session, cargo_request_factory):
        request = await cargo_request_factory(price="1000000")
        service = BiddingService(db_session)
        winner = (await service.submit_bid(request.id, DRIVER_ID, irr("950000"))).unwrap()
        loser = (await service.submit_bid(request.id, OTHER_DRIVER_ID, irr("980000"))).unwrap()

        engagement = (await service.accept_bid(winner.id)).unwrap()

        assert engagement.bid.is_accepted
        assert engagement.request.status == CargoRequestStatus.ACCEPTED
        assert engagement.request.accepted_bid_id == winner.id
        assert engagement.trip.status == TripStatus.ASSIGNED
        assert engagement.trip.driver_id == DRIVER_ID
        assert engagement.trip.agreed_money == irr("950000")
        assert engagement.trip.bid_id == winner.id
        assert engagement.rejected_bid_ids == [loser.id]
        assert (await service.get_bid(loser.id)).unwrap().is_rejected

    async def test_auto_rejected_bid_cannot_be_accepted(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        first = (await service.submit_bid(request.id, DRIVER_ID, irr("950000"))).unwrap()
        second = (await service.submit_bid(request.id, OTHER_DRIVER_ID, irr("960000"))).unwrap()
        (await service.accept_bid(first.id)).unwrap()

        result = await service.accept_bid(second.id)

        assert result.error.error_code == ErrorCode.BID_ALREADY_DECIDED

    async def test_expired_bid_is_left_alone_on_engagement(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        stale = (await service.submit_bid(
            request.id, OTHER_DRIVER_ID, irr("900000"), validity_hours=1, now=utcnow() - timedelta(hours=2)
        )).unwrap()
        fresh = (await service.submit_bid(request.id, DRIVER_ID, irr("950000"))).unwrap()

        engagement = (await service.accept_bid(fresh.id)).unwrap()

        assert engagement.rejected_bid_ids == []
        assert (await service.get_bid(stale.id)).unwrap().status_at() == "expired"

    async def test_reject_bid(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        bid = (await service.submit_bid(request.id, DRIVER_ID, irr("950000"))).unwrap()

        rejected = (await service.reject_bid(bid.id, reason="Too expensive")).unwrap()

        assert rejected.is_rejected
        assert rejected.rejection_reason == "Too expensive"
        assert (await service.accept_bid(bid.id)).error.error_code == ErrorCode.BID_ALREADY_DECIDED
        assert (await CargoRequestService(db_session).get(request.id)).unwrap().status == CargoRequestStatus.PENDING

    async def test_decisions_are_recorded_as_events(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        bid = (await service.submit_bid(request.id, DRIVER_ID, irr("950000"))).unwrap()
        (await service.accept_bid(bid.id)).unwrap()

        names = [e.name for e in await EventSink(db_session).get_events_for("bid", bid.id)]

        assert names == ["bid.submitted", "bid.accepted"]

    async def test_unknown_bid(self, db_session):
        result = await BiddingService(db_session).accept_bid(31337)
        assert result.error_kind == ErrorKind.NOT_FOUND


@pytest.mark.unit
class TestExpiredBid:
    """הצעה שפג תוקפה - אי אפשר לקבל או לדחות"""

    @pytest.fixture
    async def expired_bid(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        return (await BiddingService(db_session).submit_bid(
            request.id, DRIVER_ID, irr("950000"), validity_hours=1, now=utcnow() - timedelta(hours=2)
        )).unwrap()

    async def test_cannot_be_accepted(self, db_session, expired_bid):
        result = await BiddingService(db_session).accept_bid(expired_bid.id)

        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION
        assert result.error.error_code == ErrorCode.BID_EXPIRED
        request = (await CargoRequestService(db_session).get(expired_bid.cargo_request_id)).unwrap()
        assert request.status == CargoRequestStatus.PENDING

    async def test_cannot_be_rejected(self, db_session, expired_bid):
        result = await BiddingService(db_session).reject_bid(expired_bid.id, reason="late")

        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION
        assert result.error.error_code == ErrorCode.BID_EXPIRED

    async def test_expiry_boundary_is_inclusive(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        now = utcnow()
        bid = (await service.submit_bid(request.id, DRIVER_ID, irr("950000"), validity_hours=1, now=now)).unwrap()

        result = await service.accept_bid(bid.id, now=now + timedelta(hours=1))

        assert result.error.error_code == ErrorCode.BID_EXPIRED


@pytest.mark.unit
class TestListBids:
    async def test_cheapest_first_and_expired_filter(self, db_session, cargo_request_factory):
        request = await cargo_request_factory()
        service = BiddingService(db_session)
        expired = (await service.submit_bid(
            request.id, 3001, irr("800000"), validity_hours=1, now=utcnow() - timedelta(hours=2)
        )).unwrap()
        high = (await service.submit_bid(request.id, DRIVER_ID, irr("990000"))).unwrap()
        low = (await service.submit_bid(request.id, OTHER_DRIVER_ID, irr("910000"))).unwrap()

        everything = (await service.list_bids(request.id)).unwrap()
        live = (await service.list_bids(request.id, include_expired=False)).unwrap()

        assert [b.id for b in everything] == [expired.id, low.id, high.id]
        assert [b.id for b in live] == [low.id, high.id]
