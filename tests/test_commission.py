"""
בדיקות לחישוב עמלות ולניהול כללי עמלה
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from freight.core.clock import utcnow
from freight.core.exceptions import ErrorCode, ErrorKind, InvalidCommissionRuleError
from freight.db.models.cargo_request import CargoType, VehicleType
from freight.db.models.commission_rule import CommissionApplicability, CommissionType
from freight.domain.services.commission_calculator import (
    CommissionCalculator,
    CommissionRuleSnapshot,
    Tier,
    apply_rule,
    parse_tiers,
)
from freight.domain.services.commission_rule_service import CommissionRuleDraft, CommissionRuleService
from tests.factories import irr

JAN_1 = datetime(2026, 1, 1)
JUNE_1 = datetime(2026, 6, 1)


def _rule(rule_id: int = 1, **overrides) -> CommissionRuleSnapshot:
    fields = dict(
        id=rule_id,
        commission_type=CommissionType.PERCENTAGE,
        applicability=CommissionApplicability.DRIVER,
        currency="IRR",
        effective_from=JAN_1,
        rate=Decimal("0.10"),
    )
    fields.update(overrides)
    return CommissionRuleSnapshot(**fields)


@pytest.mark.unit
class TestApplyRule:
    def test_percentage(self):
        assert apply_rule(_rule(), irr("950000")) == irr("95000")

    def test_percentage_rounds_half_up(self):
        rule = _rule(rate=Decimal("0.015"))
        # 0.015 * 100.30 = 1.5045
        assert apply_rule(rule, irr("100.30")) == irr("1.50")
        assert apply_rule(rule, irr("100.70")) == irr("1.51")

    def test_min_and_max_clamp(self):
        rule = _rule(min_amount=Decimal("50000"), max_amount=Decimal("200000"))
        assert apply_rule(rule, irr("100000")) == irr("50000")
        assert apply_rule(rule, irr("1000000")) == irr("100000")
        assert apply_rule(rule, irr("5000000")) == irr("200000")

    def test_fixed_amount(self):
        rule = _rule(commission_type=CommissionType.FIXED_AMOUNT, rate=None, flat_amount=Decimal("25000"))
        assert apply_rule(rule, irr("950000")) == irr("25000")

    def test_commission_never_exceeds_the_amount(self):
        rule = _rule(commission_type=CommissionType.PER_TRANSACTION, rate=None, flat_amount=Decimal("25000"))
        assert apply_rule(rule, irr("10000")) == irr("10000")

    def test_tiered_percentage(self):
        rule = _rule(
            commission_type=CommissionType.TIERED_PERCENTAGE,
            rate=None,
            tiers=(Tier(up_to=Decimal("5000000"), rate=Decimal("0.10")), Tier(up_to=None, rate=Decimal("0.07"))),
        )
        assert apply_rule(rule, irr("1000000")) == irr("100000")
        assert apply_rule(rule, irr("5000000")) == irr("500000")
        assert apply_rule(rule, irr("6000000")) == irr("420000")

    def test_tiered_beyond_last_bounded_tier_uses_last_rate(self):
        rule = _rule(
            commission_type=CommissionType.TIERED_PERCENTAGE,
            rate=None,
            tiers=(Tier(up_to=Decimal("1000"), rate=Decimal("0.20")), Tier(up_to=Decimal("2000"), rate=Decimal("0.05"))),
        )
        assert apply_rule(rule, irr("3000")) == irr("150")


@pytest.mark.unit
class TestParseTiers:
    def test_valid_table(self):
        tiers = parse_tiers([{"up_to": "5000000", "rate": "0.10"}, {"up_to": None, "rate": "0.07"}])
        assert tiers[0].up_to == Decimal("5000000.00")
        assert tiers[1].up_to is None

    @pytest.mark.parametrize("raw", [
        [],
        [{"up_to": "100"}],
        [{"up_to": "100", "rate": "1.5"}],
        [{"up_to": "200", "rate": "0.1"}, {"up_to": "100", "rate": "0.05"}],
        [{"up_to": None, "rate": "0.1"}, {"up_to": "100", "rate": "0.05"}],
    ])
    def test_invalid_tables(self, raw):
        with pytest.raises(InvalidCommissionRuleError):
            parse_tiers(raw)


@pytest.mark.unit
class TestCommissionCalculator:
    def test_no_rule_means_zero_commission(self):
        quote = CommissionCalculator([]).compute(irr("950000"), as_of=JUNE_1)
        assert quote.commission == irr("0")
        assert quote.net == irr("950000")
        assert quote.rule_id is None

    def test_net_is_gross_minus_commission(self):
        quote = CommissionCalculator([_rule()]).compute(irr("950000"), as_of=JUNE_1)
        assert quote.commission + quote.net == quote.gross
        assert quote.net == irr("855000")
        assert quote.rule_id == 1

    def test_most_specific_scope_wins(self):
        calculator = CommissionCalculator([
            _rule(1),
            _rule(2, rate=Decimal("0.08"), cargo_type=CargoType.FOOD),
            _rule(3, rate=Decimal("0.06"), vehicle_type=VehicleType.REFRIGERATED_TRUCK),
            _rule(4, rate=Decimal("0.05"), vehicle_type=VehicleType.REFRIGERATED_TRUCK, cargo_type=CargoType.FOOD),
        ])
        amount = irr("1000000")

        assert calculator.compute(amount, VehicleType.REFRIGERATED_TRUCK, CargoType.FOOD, JUNE_1).rule_id == 4
        assert calculator.compute(amount, VehicleType.REFRIGERATED_TRUCK, CargoType.GENERAL, JUNE_1).rule_id == 3
        assert calculator.compute(amount, VehicleType.BOX_TRUCK, CargoType.FOOD, JUNE_1).rule_id == 2
        assert calculator.compute(amount, VehicleType.BOX_TRUCK, CargoType.GENERAL, JUNE_1).rule_id == 1

    def test_latest_effective_from_then_highest_id(self):
        calculator = CommissionCalculator([
            _rule(1, effective_from=JAN_1),
            _rule(2, effective_from=JAN_1 + timedelta(days=10)),
            _rule(3, effective_from=JAN_1),
        ])
        assert calculator.compute(irr("100"), as_of=JUNE_1).rule_id == 2

        tied = CommissionCalculator([_rule(5), _rule(9), _rule(7)])
        assert tied.compute(irr("100"), as_of=JUNE_1).rule_id == 9

    def test_effective_window_is_half_open(self):
        rule = _rule(effective_from=JAN_1, effective_to=JUNE_1)
        calculator = CommissionCalculator([rule])

        assert calculator.select_rule(irr("100"), as_of=JAN_1) is rule
        assert calculator.select_rule(irr("100"), as_of=JUNE_1) is None
        assert calculator.select_rule(irr("100"), as_of=JAN_1 - timedelta(seconds=1)) is None

    def test_inactive_and_owner_side_rules_are_ignored(self):
        calculator = CommissionCalculator([
            _rule(1, is_active=False),
            _rule(2, applicability=CommissionApplicability.CARGO_OWNER),
        ])
        assert calculator.select_rule(irr("100"), as_of=JUNE_1) is None

    def test_threshold_and_currency(self):
        calculator = CommissionCalculator([
            _rule(1, rate=Decimal("0.10")),
            _rule(2, rate=Decimal("0.05"), threshold_amount=Decimal("10000000")),
            _rule(3, currency="USD"),
        ])
        # שני הכללים 1 ו-2 גלובליים; 2 חדש יותר רק בזכות ה-id
        assert calculator.compute(irr("20000000"), as_of=JUNE_1).rule_id == 2
        assert calculator.compute(irr("9000000"), as_of=JUNE_1).rule_id == 1

    def test_same_inputs_same_quote(self):
        calculator = CommissionCalculator([_rule(1), _rule(2, cargo_type=CargoType.CHEMICAL)])
        quotes = {calculator.compute(irr("123456.78"), None, CargoType.CHEMICAL, JUNE_1) for _ in range(5)}
        assert len(quotes) == 1


@pytest.mark.unit
class TestCommissionRuleService:
    async def test_create_and_quote(self, db_session, commission_rule_factory):
        rule = await commission_rule_factory(rate="0.10")

        quote = (await CommissionRuleService(db_session).quote(irr("950000"))).unwrap()

        assert quote.rule_id == rule.id
        assert quote.commission == irr("95000")

    async def test_percentage_rule_needs_rate(self, db_session):
        draft = CommissionRuleDraft(name="broken", commission_type=CommissionType.PERCENTAGE)

        result = await CommissionRuleService(db_session).create_rule(draft)

        assert not result.success
        assert result.error_kind == ErrorKind.VALIDATION
        assert result.error.error_code == ErrorCode.INVALID_COMMISSION_RULE

    @pytest.mark.parametrize("overrides", [
        {"rate": Decimal("1.2")},
        {"min_amount": Decimal("500"), "max_amount": Decimal("100")},
        {"threshold_amount": Decimal("-1")},
        {"name": "  "},
    ])
    async def test_invalid_drafts_are_rejected(self, db_session, overrides):
        fields = dict(name="rule", commission_type=CommissionType.PERCENTAGE, rate=Decimal("0.1"))
        fields.update(overrides)

        result = await CommissionRuleService(db_session).create_rule(CommissionRuleDraft(**fields))

        assert result.error_kind == ErrorKind.VALIDATION

    async def test_tiered_rule_roundtrips_through_the_database(self, db_session, commission_rule_factory):
        rule = await commission_rule_factory(
            rate=None,
            commission_type=CommissionType.TIERED_PERCENTAGE,
            tier_configuration=[{"up_to": Decimal("5000000"), "rate": Decimal("0.10")},
                                {"up_to": None, "rate": Decimal("0.07")}],
        )

        snapshot = await CommissionRuleService(db_session).load_snapshot(rule.id)

        assert snapshot.tiers[-1] == Tier(up_to=None, rate=Decimal("0.07"))
        assert apply_rule(snapshot, irr("6000000")) == irr("420000")

    async def test_deactivated_rule_no_longer_quotes(self, db_session, commission_rule_factory):
        rule = await commission_rule_factory()
        service = CommissionRuleService(db_session)

        deactivated = (await service.deactivate_rule(rule.id)).unwrap()
        quote = (await service.quote(irr("950000"))).unwrap()

        assert deactivated.is_active is False
        assert deactivated.deactivated_at is not None
        assert quote.rule_id is None

    async def test_supersede_closes_the_old_rule(self, db_session, commission_rule_factory):
        old = await commission_rule_factory(rate="0.10")
        service = CommissionRuleService(db_session)
        starts = utcnow()

        new = (await service.supersede_rule(old.id, CommissionRuleDraft(
            name="Lower commission",
            commission_type=CommissionType.PERCENTAGE,
            rate=Decimal("0.08"),
            effective_from=starts,
        ))).unwrap()

        assert old.effective_to == starts
        assert old.superseded_by_id == new.id
        before = (await service.quote(irr("1000000"), as_of=starts - timedelta(days=1))).unwrap()
        after = (await service.quote(irr("1000000"), as_of=starts + timedelta(seconds=1))).unwrap()
        assert (before.rule_id, before.commission) == (old.id, irr("100000"))
        assert (after.rule_id, after.commission) == (new.id, irr("80000"))

    async def test_supersede_must_start_later(self, db_session, commission_rule_factory):
        old = await commission_rule_factory()

        result = await CommissionRuleService(db_session).supersede_rule(old.id, CommissionRuleDraft(
            name="Backdated",
            commission_type=CommissionType.PERCENTAGE,
            rate=Decimal("0.05"),
            effective_from=old.effective_from - timedelta(days=1),
        ))

        assert result.error_kind == ErrorKind.VALIDATION
        assert (await CommissionRuleService(db_session).get_rule(old.id)).unwrap().effective_to is None

    async def test_unknown_rule(self, db_session):
        result = await CommissionRuleService(db_session).get_rule(999)
        assert result.error_kind == ErrorKind.NOT_FOUND
