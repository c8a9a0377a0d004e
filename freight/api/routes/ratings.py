"""
Rating API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from freight.db.database import get_db
from freight.db.models.rating import RatingKind
from freight.domain.services.rating_service import RatingService

router = APIRouter()


class RatingCreate(BaseModel):
    trip_id: int
    rater_id: int
    kind: RatingKind
    score: int = Field(ge=1, le=5)
    dimension_scores: dict[str, int] | None = None
    comment: str | None = Field(default=None, max_length=1000)


class RatingResponse(BaseModel):
    id: int
    trip_id: int
    rater_id: int
    rated_user_id: int
    kind: RatingKind
    score: int
    dimension_scores: dict[str, int]
    comment: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RatingSummaryResponse(BaseModel):
    user_id: int
    kind: RatingKind
    count: int
    average: str | None
    dimensions: dict[str, str]


@router.post("/", response_model=RatingResponse, status_code=201)
async def create_rating(body: RatingCreate, db: AsyncSession = Depends(get_db)):
    return (await RatingService(db).create_rating(**body.model_dump())).unwrap()


@router.get("/users/{user_id}", response_model=List[RatingResponse], summary="Ratings a user received")
async def list_ratings(
    user_id: int,
    kind: RatingKind | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    return (await RatingService(db).list_ratings(user_id, kind, limit)).unwrap()


@router.get("/users/{user_id}/summary", response_model=RatingSummaryResponse)
async def rating_summary(user_id: int, kind: RatingKind, db: AsyncSession = Depends(get_db)):
    summary = (await RatingService(db).summarize(user_id, kind)).unwrap()
    return RatingSummaryResponse(
        user_id=summary.user_id,
        kind=summary.kind,
        count=summary.count,
        average=str(summary.average) if summary.average is not None else None,
        dimensions={name: str(value) for name, value in summary.dimensions.items()},
    )
