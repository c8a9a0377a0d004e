"""
Commission Rule API Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from freight.api.schemas import MoneyIn, MoneyOut
from freight.db.database import get_db
from freight.db.models.cargo_request import CargoType, VehicleType
from freight.db.models.commission_rule import CommissionApplicability, CommissionRule, CommissionType
from freight.domain.services.commission_rule_service import CommissionRuleDraft, CommissionRuleService

router = APIRouter()


class CommissionRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    commission_type: CommissionType
    applicability: CommissionApplicability = CommissionApplicability.DRIVER
    rate: Decimal | None = None
    flat_amount: Decimal | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    threshold_amount: Decimal | None = None
    tier_configuration: list[dict[str, Any]] | None = None
    vehicle_type: VehicleType | None = None
    cargo_type: CargoType | None = None
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    def to_draft(self) -> CommissionRuleDraft:
        return CommissionRuleDraft(**self.model_dump())


class QuoteRequest(BaseModel):
    amount: MoneyIn
    vehicle_type: VehicleType | None = None
    cargo_type: CargoType | None = None
    as_of: datetime | None = None


class QuoteResponse(BaseModel):
    gross: MoneyOut
    commission: MoneyOut
    net: MoneyOut
    rule_id: int | None
    commission_type: CommissionType | None


class CommissionRuleResponse(BaseModel):
    id: int
    name: str
    commission_type: CommissionType
    applicability: CommissionApplicability
    rate: str | None
    flat_amount: MoneyOut | None
    min_amount: MoneyOut | None
    max_amount: MoneyOut | None
    threshold_amount: MoneyOut | None
    tier_configuration: list[dict[str, Any]] | None
    vehicle_type: VehicleType | None
    cargo_type: CargoType | None
    effective_from: datetime
    effective_to: datetime | None
    is_active: bool
    superseded_by_id: int | None

    @classmethod
    def from_model(cls, rule: CommissionRule) -> "CommissionRuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            commission_type=rule.commission_type,
            applicability=rule.applicability,
            rate=str(rule.rate) if rule.rate is not None else None,
            flat_amount=MoneyOut.of(rule.flat_amount, rule.currency),
            min_amount=MoneyOut.of(rule.min_amount, rule.currency),
            max_amount=MoneyOut.of(rule.max_amount, rule.currency),
            threshold_amount=MoneyOut.of(rule.threshold_amount, rule.currency),
            tier_configuration=rule.tier_configuration,
            vehicle_type=rule.vehicle_type,
            cargo_type=rule.cargo_type,
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
            is_active=rule.is_active,
            superseded_by_id=rule.superseded_by_id,
        )


@router.post("/", response_model=CommissionRuleResponse, status_code=201)
async def create_rule(body: CommissionRuleCreate, db: AsyncSession = Depends(get_db)):
    return CommissionRuleResponse.from_model((await CommissionRuleService(db).create_rule(body.to_draft())).unwrap())


@router.post("/quote", response_model=QuoteResponse, summary="Commission for an amount under the active rules")
async def quote(body: QuoteRequest, db: AsyncSession = Depends(get_db)):
    result = (await CommissionRuleService(db).quote(
        body.amount.to_money(), body.vehicle_type, body.cargo_type, body.as_of
    )).unwrap()
    return QuoteResponse(
        gross=MoneyOut.from_money(result.gross),
        commission=MoneyOut.from_money(result.commission),
        net=MoneyOut.from_money(result.net),
        rule_id=result.rule_id,
        commission_type=result.commission_type,
    )


@router.get("/{rule_id}", response_model=CommissionRuleResponse)
async def get_rule(rule_id: int, db: AsyncSession = Depends(get_db)):
    return CommissionRuleResponse.from_model((await CommissionRuleService(db).get_rule(rule_id)).unwrap())


@router.post("/{rule_id}/deactivate", response_model=CommissionRuleResponse)
async def deactivate_rule(rule_id: int, db: AsyncSession = Depends(get_db)):
    return CommissionRuleResponse.from_model((await CommissionRuleService(db).deactivate_rule(rule_id)).unwrap())


@router.post("/{rule_id}/supersede", response_model=CommissionRuleResponse, status_code=201)
async def supersede_rule(rule_id: int, body: CommissionRuleCreate, db: AsyncSession = Depends(get_db)):
    rule = (await CommissionRuleService(db).supersede_rule(rule_id, body.to_draft())).unwrap()
    return CommissionRuleResponse.from_model(rule)
