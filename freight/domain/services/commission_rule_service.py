"""
Commission Rule Service - administration of commission rules and quoting
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from freight.core.clock import utcnow
from freight.core.config import settings
from freight.core.exceptions import CommissionRuleNotFoundError, InvalidCommissionRuleError
from freight.core.logging import get_logger
from freight.core.money import Money, quantize
from freight.core.result import service_operation
from freight.db.models.cargo_request import CargoType, VehicleType
from freight.db.models.commission_rule import CommissionApplicability, CommissionRule, CommissionType
from freight.domain.services.commission_calculator import (
    CommissionCalculator,
    CommissionQuote,
    CommissionRuleSnapshot,
    parse_tiers,
)
from freight.domain.services.event_sink import EventSink

logger = get_logger(__name__)


@dataclass
class CommissionRuleDraft:
    name: str
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
    currency: str | None = None
    description: str | None = None


def _validate_draft(draft: CommissionRuleDraft) -> None:
    if not draft.name or not draft.name.strip():
        raise InvalidCommissionRuleError("Rule name is required", field="name")

    if draft.commission_type == CommissionType.PERCENTAGE:
        if draft.rate is None:
            raise InvalidCommissionRuleError("Percentage rule needs a rate", field="rate")
    if draft.rate is not None and not Decimal("0") <= Decimal(draft.rate) <= Decimal("1"):
        raise InvalidCommissionRuleError("Rate must be within [0, 1]", field="rate")

    if draft.commission_type in (CommissionType.FIXED_AMOUNT, CommissionType.PER_TRANSACTION):
        if draft.flat_amount is None or Decimal(draft.flat_amount) < 0:
            raise InvalidCommissionRuleError("Flat rule needs a non-negative flat_amount", field="flat_amount")

    if draft.commission_type == CommissionType.TIERED_PERCENTAGE:
        parse_tiers(draft.tier_configuration)

    for field in ("min_amount", "max_amount", "threshold_amount"):
        value = getattr(draft, field)
        if value is not None and Decimal(value) < 0:
            raise InvalidCommissionRuleError(f"{field} must not be negative", field=field)
    if draft.min_amount is not None and draft.max_amount is not None and draft.min_amount > draft.max_amount:
        raise InvalidCommissionRuleError("min_amount must not exceed max_amount", field="min_amount")

    if draft.effective_from and draft.effective_to and draft.effective_to <= draft.effective_from:
        raise InvalidCommissionRuleError("effective_to must be after effective_from", field="effective_to")


def _opt_money(value: Any) -> Decimal | None:
    return quantize(value) if value is not None else None


class CommissionRuleService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventSink(db)

    async def _get_rule(self, rule_id: int, *, for_update: bool = False) -> CommissionRule:
        query = select(CommissionRule).where(CommissionRule.id == rule_id)
        if for_update:
            query = query.with_for_update()
        rule = (await self.db.execute(query)).scalar_one_or_none()
        if rule is None:
            raise CommissionRuleNotFoundError(rule_id)
        return rule

    async def _add_rule(self, draft: CommissionRuleDraft) -> CommissionRule:
        _validate_draft(draft)
        rule = CommissionRule(
            name=draft.name.strip(),
            description=draft.description,
            commission_type=draft.commission_type,
            applicability=draft.applicability,
            rate=Decimal(draft.rate) if draft.rate is not None else None,
            flat_amount=_opt_money(draft.flat_amount),
            min_amount=_opt_money(draft.min_amount),
            max_amount=_opt_money(draft.max_amount),
            threshold_amount=_opt_money(draft.threshold_amount),
            tier_configuration=[
                {"up_to": str(t["up_to"]) if t.get("up_to") is not None else None, "rate": str(t["rate"])}
                for t in draft.tier_configuration
            ] if draft.tier_configuration else None,
            vehicle_type=draft.vehicle_type,
            cargo_type=draft.cargo_type,
            effective_from=draft.effective_from or utcnow(),
            effective_to=draft.effective_to,
            currency=(draft.currency or settings.DEFAULT_CURRENCY).upper(),
            is_active=True,
        )
        self.db.add(rule)
        await self.db.flush()
        await self.events.emit("commission_rule.created", "commission_rule", rule.id, {
            "name": rule.name,
            "commission_type": rule.commission_type,
        })
        return rule

    @service_operation("commission.create_rule")
    async def create_rule(self, draft: CommissionRuleDraft) -> CommissionRule:
        rule = await self._add_rule(draft)
        await self.db.commit()
        logger.info("Commission rule created", extra_data={"rule_id": rule.id, "type": rule.commission_type.value})
        return rule

    @service_operation("commission.deactivate_rule")
    async def deactivate_rule(self, rule_id: int) -> CommissionRule:
        rule = await self._get_rule(rule_id, for_update=True)
        if rule.is_active:
            rule.is_active = False
            rule.deactivated_at = utcnow()
            await self.events.emit("commission_rule.deactivated", "commission_rule", rule.id, {})
        await self.db.commit()
        return rule

    @service_operation("commission.supersede_rule")
    async def supersede_rule(self, rule_id: int, draft: CommissionRuleDraft) -> CommissionRule:
        """Close the old rule at the new rule's start and link the two"""
        old = await self._get_rule(rule_id, for_update=True)
        if draft.effective_from is None:
            draft.effective_from = utcnow()
        if draft.effective_from <= old.effective_from:
            raise InvalidCommissionRuleError(
                "Replacement must start after the rule it supersedes", field="effective_from"
            )
        new_rule = await self._add_rule(draft)
        old.effective_to = draft.effective_from
        old.superseded_by_id = new_rule.id
        await self.db.commit()
        return new_rule

    @service_operation("commission.get_rule")
    async def get_rule(self, rule_id: int) -> CommissionRule:
        return await self._get_rule(rule_id)

    async def load_calculator(self) -> CommissionCalculator:
        """Calculator over every active rule; date filtering happens in compute()"""
        result = await self.db.execute(
            select(CommissionRule).where(CommissionRule.is_active.is_(True)).order_by(CommissionRule.id)
        )
        return CommissionCalculator(CommissionRuleSnapshot.from_model(r) for r in result.scalars().all())

    async def load_snapshot(self, rule_id: int) -> CommissionRuleSnapshot:
        return CommissionRuleSnapshot.from_model(await self._get_rule(rule_id))

    @service_operation("commission.quote")
    async def quote(
        self,
        amount: Money,
        vehicle_type: VehicleType | None = None,
        cargo_type: CargoType | None = None,
        as_of: datetime | None = None,
    ) -> CommissionQuote:
        calculator = await self.load_calculator()
        return calculator.compute(amount, vehicle_type, cargo_type, as_of)
