"""
Commission Calculator - pure computation of the platform's cut

No I/O: it works on immutable rule snapshots, so the same amount, scope,
date and rule set always produce the same quote. Loading the rules is
CommissionRuleService's job.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Sequence

from freight.core.clock import utcnow
from freight.core.exceptions import InvalidCommissionRuleError
from freight.core.logging import get_logger
from freight.core.money import Money, quantize
from freight.db.models.cargo_request import CargoType, VehicleType
from freight.db.models.commission_rule import CommissionApplicability, CommissionRule, CommissionType

logger = get_logger(__name__)

# כללים שחלים על תשלום לנהג (צד המקבל)
PAYOUT_APPLICABILITIES = frozenset({
    CommissionApplicability.DRIVER,
    CommissionApplicability.BOTH,
    CommissionApplicability.PLATFORM,
})


@dataclass(frozen=True)
class Tier:
    up_to: Decimal | None
    rate: Decimal


def parse_tiers(raw: Any) -> tuple[Tier, ...]:
    """
    Validate a tier table: ascending ``up_to`` bounds, rates within [0, 1],
    only the last tier may be open-ended (``up_to`` null).
    """
    if not raw:
        raise InvalidCommissionRuleError("Tiered rule needs at least one tier", field="tier_configuration")
    tiers: list[Tier] = []
    for index, item in enumerate(raw):
        try:
            up_to = item.get("up_to")
            tier = Tier(
                up_to=quantize(up_to) if up_to is not None else None,
                rate=Decimal(str(item["rate"])),
            )
        except (KeyError, AttributeError, ArithmeticError) as e:
            raise InvalidCommissionRuleError(f"Malformed tier #{index}: {e}", field="tier_configuration")
        if not Decimal("0") <= tier.rate <= Decimal("1"):
            raise InvalidCommissionRuleError(f"Tier #{index} rate must be within [0, 1]", field="tier_configuration")
        if tiers:
            previous = tiers[-1]
            if previous.up_to is None:
                raise InvalidCommissionRuleError("Only the last tier may be open-ended", field="tier_configuration")
            if tier.up_to is not None and tier.up_to <= previous.up_to:
                raise InvalidCommissionRuleError("Tier bounds must be strictly ascending", field="tier_configuration")
        tiers.append(tier)
    return tuple(tiers)


@dataclass(frozen=True)
class CommissionRuleSnapshot:
    id: int
    commission_type: CommissionType
    applicability: CommissionApplicability
    currency: str
    effective_from: datetime
    effective_to: datetime | None = None
    is_active: bool = True
    rate: Decimal | None = None
    flat_amount: Decimal | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    threshold_amount: Decimal | None = None
    vehicle_type: VehicleType | None = None
    cargo_type: CargoType | None = None
    tiers: tuple[Tier, ...] = ()

    @classmethod
    def from_model(cls, rule: CommissionRule) -> "CommissionRuleSnapshot":
        return cls(
            id=rule.id,
            commission_type=rule.commission_type,
            applicability=rule.applicability,
            currency=rule.currency,
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
            is_active=bool(rule.is_active),
            rate=rule.rate,
            flat_amount=rule.flat_amount,
            min_amount=rule.min_amount,
            max_amount=rule.max_amount,
            threshold_amount=rule.threshold_amount,
            vehicle_type=rule.vehicle_type,
            cargo_type=rule.cargo_type,
            tiers=parse_tiers(rule.tier_configuration)
            if rule.commission_type == CommissionType.TIERED_PERCENTAGE else (),
        )

    @property
    def specificity(self) -> int:
        """vehicle+cargo (3) > vehicle (2) > cargo (1) > global (0)"""
        return (2 if self.vehicle_type is not None else 0) + (1 if self.cargo_type is not None else 0)

    def is_effective(self, as_of: datetime) -> bool:
        if not self.is_active or self.effective_from > as_of:
            return False
        return self.effective_to is None or as_of < self.effective_to

    def matches(
        self,
        amount: Money,
        vehicle_type: VehicleType | None,
        cargo_type: CargoType | None,
        as_of: datetime,
    ) -> bool:
        if self.applicability not in PAYOUT_APPLICABILITIES:
            return False
        if self.currency != amount.currency or not self.is_effective(as_of):
            return False
        if self.vehicle_type is not None and self.vehicle_type != vehicle_type:
            return False
        if self.cargo_type is not None and self.cargo_type != cargo_type:
            return False
        if self.threshold_amount is not None and amount.amount < self.threshold_amount:
            return False
        return True


@dataclass(frozen=True)
class CommissionQuote:
    gross: Money
    commission: Money
    rule_id: int | None
    commission_type: CommissionType | None

    @property
    def net(self) -> Money:
        return self.gross - self.commission


def _clamp(value: Decimal, rule: CommissionRuleSnapshot) -> Decimal:
    if rule.min_amount is not None and value < rule.min_amount:
        value = rule.min_amount
    if rule.max_amount is not None and value > rule.max_amount:
        value = rule.max_amount
    return value


def _tier_rate(tiers: Sequence[Tier], amount: Decimal) -> Decimal:
    for tier in tiers:
        if tier.up_to is None or amount <= tier.up_to:
            return tier.rate
    # מעבר לכל המדרגות - המדרגה האחרונה
    return tiers[-1].rate


def apply_rule(rule: CommissionRuleSnapshot, amount: Money) -> Money:
    """Commission for ``amount`` under one rule, rounded and capped to [0, amount]"""
    if rule.commission_type == CommissionType.PERCENTAGE:
        raw = _clamp(amount.amount * (rule.rate or Decimal("0")), rule)
    elif rule.commission_type == CommissionType.TIERED_PERCENTAGE:
        raw = _clamp(amount.amount * _tier_rate(rule.tiers, amount.amount), rule)
    elif rule.commission_type in (CommissionType.FIXED_AMOUNT, CommissionType.PER_TRANSACTION):
        raw = rule.flat_amount or Decimal("0")
    else:
        raise InvalidCommissionRuleError(f"Unknown commission type {rule.commission_type!r}")

    value = quantize(raw)
    value = max(Decimal("0"), min(value, amount.amount))
    return Money(value, amount.currency)


class CommissionCalculator:
    def __init__(self, rules: Iterable[CommissionRuleSnapshot]):
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[CommissionRuleSnapshot, ...]:
        return self._rules

    def select_rule(
        self,
        amount: Money,
        vehicle_type: VehicleType | None = None,
        cargo_type: CargoType | None = None,
        as_of: datetime | None = None,
    ) -> CommissionRuleSnapshot | None:
        """Most specific scope, then latest effective_from, then highest id"""
        as_of = as_of or utcnow()
        candidates = [r for r in self._rules if r.matches(amount, vehicle_type, cargo_type, as_of)]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (r.specificity, r.effective_from, r.id))

    def compute(
        self,
        amount: Money,
        vehicle_type: VehicleType | None = None,
        cargo_type: CargoType | None = None,
        as_of: datetime | None = None,
    ) -> CommissionQuote:
        rule = self.select_rule(amount, vehicle_type, cargo_type, as_of)
        if rule is None:
            logger.warning(
                "No commission rule matched, charging zero commission",
                extra_data={
                    "amount": str(amount),
                    "vehicle_type": getattr(vehicle_type, "value", vehicle_type),
                    "cargo_type": getattr(cargo_type, "value", cargo_type),
                }
            )
            return CommissionQuote(gross=amount, commission=Money.zero(amount.currency), rule_id=None,
                                   commission_type=None)
        return CommissionQuote(
            gross=amount,
            commission=apply_rule(rule, amount),
            rule_id=rule.id,
            commission_type=rule.commission_type,
        )
