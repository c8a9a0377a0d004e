"""
Rating Service - feedback after a completed trip.

The cargo owner rates the driver (RatingKind.DRIVER) and the driver rates the
cargo owner (RatingKind.CARGO_OWNER). Who rates whom comes from the trip, not
from the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.exceptions import (
    CargoRequestNotFoundError,
    DuplicateEntryError,
    ErrorCode,
    InvariantViolationError,
    NotFoundException,
    ValidationException,
)
from freight.core.logging import get_logger
from freight.core.result import service_operation
from freight.db.models.cargo_request import CargoRequest
from freight.db.models.rating import RATING_DIMENSIONS, Rating, RatingKind
from freight.db.models.trip import Trip, TripStatus
from freight.domain.services.event_sink import EventSink
from freight.domain.services.trip_service import TripService

logger = get_logger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5


@dataclass(frozen=True)
class RatingSummary:
    user_id: int
    kind: RatingKind
    count: int
    average: Optional[Decimal]
    dimensions: dict[str, Decimal] = field(default_factory=dict)


def _check_score(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not MIN_SCORE <= value <= MAX_SCORE:
        raise ValidationException(
            f"{field_name} must be an integer between {MIN_SCORE} and {MAX_SCORE}", field=field_name
        )
    return value


def _check_dimensions(kind: RatingKind, dimension_scores: dict[str, Any] | None) -> dict[str, int]:
    dimension_scores = dimension_scores or {}
    unknown = set(dimension_scores) - RATING_DIMENSIONS[kind]
    if unknown:
        raise ValidationException(
            f"Unknown rating dimensions for {kind.value}: {', '.join(sorted(unknown))}",
            field="dimension_scores",
        )
    return {name: _check_score(score, name) for name, score in dimension_scores.items()}


def _mean(values: list[int]) -> Decimal:
    return (Decimal(sum(values)) / Decimal(len(values))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class RatingService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventSink(db)

    async def _parties(self, trip: Trip, kind: RatingKind) -> tuple[int, int]:
        """(rater, rated) for ``kind`` on this trip"""
        request = await self.db.get(CargoRequest, trip.cargo_request_id)
        if request is None:
            raise CargoRequestNotFoundError(trip.cargo_request_id)
        if kind == RatingKind.DRIVER:
            return request.owner_id, trip.driver_id
        return trip.driver_id, request.owner_id

    async def _get_rating(self, rating_id: int) -> Rating:
        rating = await self.db.get(Rating, rating_id, populate_existing=True)
        if rating is None:
            raise NotFoundException("Rating", rating_id)
        return rating

    @service_operation("rating.create")
    async def create_rating(
        self,
        trip_id: int,
        rater_id: int,
        kind: RatingKind,
        score: int,
        dimension_scores: dict[str, int] | None = None,
        comment: str | None = None,
    ) -> Rating:
        score = _check_score(score, "score")
        dimensions = _check_dimensions(kind, dimension_scores)

        trip = await TripService(self.db)._lock(trip_id)
        if trip.status != TripStatus.COMPLETED:
            raise InvariantViolationError(
                f"Trip {trip.trip_number} is {trip.status.value}; only completed trips can be rated",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                details={"trip_id": trip.id, "status": trip.status.value},
            )

        expected_rater, rated_user_id = await self._parties(trip, kind)
        if rater_id != expected_rater:
            raise ValidationException(
                f"User {rater_id} cannot leave a {kind.value} rating on trip {trip.trip_number}",
                field="rater_id",
            )

        existing = await self.db.execute(
            select(Rating.id).where(Rating.trip_id == trip.id, Rating.rater_id == rater_id, Rating.kind == kind)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateEntryError("Rating", {"trip_id": trip.id, "rater_id": rater_id, "kind": kind.value})

        rating = Rating(
            trip_id=trip.id,
            rater_id=rater_id,
            rated_user_id=rated_user_id,
            kind=kind,
            score=score,
            dimension_scores=dimensions,
            comment=(comment or "").strip() or None,
            created_at=utcnow(),
        )
        self.db.add(rating)
        await self.db.flush()
        await self.events.emit("rating.created", "rating", rating.id, {
            "trip_id": trip.id,
            "rated_user_id": rated_user_id,
            "kind": kind,
            "score": score,
        })
        await self.db.commit()
        logger.info(
            "Rating recorded",
            extra_data={"rating_id": rating.id, "trip_id": trip.id, "kind": kind.value, "score": score}
        )
        return rating

    @service_operation("rating.update")
    async def update_rating(
        self,
        rating_id: int,
        rater_id: int,
        score: int | None = None,
        dimension_scores: dict[str, int] | None = None,
        comment: str | None = None,
    ) -> Rating:
        rating = await self._get_rating(rating_id)
        if rating.rater_id != rater_id:
            raise ValidationException("Only the author can change a rating", field="rater_id")
        if score is not None:
            rating.score = _check_score(score, "score")
        if dimension_scores is not None:
            rating.dimension_scores = _check_dimensions(rating.kind, dimension_scores)
        if comment is not None:
            rating.comment = comment.strip() or None
        rating.updated_at = utcnow()
        await self.db.commit()
        return rating

    @service_operation("rating.get")
    async def get_rating(self, rating_id: int) -> Rating:
        return await self._get_rating(rating_id)

    @service_operation("rating.list")
    async def list_ratings(self, user_id: int, kind: RatingKind | None = None, limit: int = 50) -> list[Rating]:
        """Ratings received by ``user_id``, newest first"""
        query = select(Rating).where(Rating.rated_user_id == user_id)
        if kind is not None:
            query = query.where(Rating.kind == kind)
        result = await self.db.execute(query.order_by(Rating.id.desc()).limit(limit))
        return list(result.scalars().all())

    @service_operation("rating.summary")
    async def summarize(self, user_id: int, kind: RatingKind) -> RatingSummary:
        result = await self.db.execute(
            select(Rating).where(Rating.rated_user_id == user_id, Rating.kind == kind)
        )
        ratings = list(result.scalars().all())
        if not ratings:
            return RatingSummary(user_id=user_id, kind=kind, count=0, average=None)

        per_dimension: dict[str, list[int]] = {}
        for rating in ratings:
            for name, value in (rating.dimension_scores or {}).items():
                per_dimension.setdefault(name, []).append(value)

        return RatingSummary(
            user_id=user_id,
            kind=kind,
            count=len(ratings),
            average=_mean([r.score for r in ratings]),
            dimensions={name: _mean(values) for name, values in sorted(per_dimension.items())},
        )
