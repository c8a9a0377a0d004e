"""
בדיקות ל-Money - עיגול, מטבע והשוואות
"""
from decimal import Decimal

import pytest

from freight.core.exceptions import CurrencyMismatchError, ValidationException
from freight.core.money import Money, quantize
from freight.api.schemas import MoneyIn


@pytest.mark.unit
class TestQuantize:
    def test_rounds_half_up_to_cents(self):
        assert quantize("10.005") == Decimal("10.01")
        assert quantize("10.004") == Decimal("10.00")
        assert quantize("-0.005") == Decimal("-0.01")

    def test_float_goes_through_str(self):
        # 0.1 + 0.2 כ-float הוא 0.30000000000000004
        assert quantize(0.1 + 0.2) == Decimal("0.30")

    def test_garbage_is_a_validation_error(self):
        with pytest.raises(ValidationException):
            quantize("ten rials")


@pytest.mark.unit
class TestMoney:
    def test_default_currency_from_settings(self):
        assert Money(Decimal("5")).currency == "IRR"

    def test_currency_is_upper_cased(self):
        assert Money(Decimal("5"), "usd").currency == "USD"

    def test_equality_ignores_trailing_zeros(self):
        assert Money(Decimal("950000"), "IRR") == Money(Decimal("950000.00"), "IRR")

    def test_arithmetic(self):
        total = Money(Decimal("100.10"), "IRR") + Money(Decimal("0.95"), "IRR")
        assert total == Money(Decimal("101.05"), "IRR")
        assert (total - Money(Decimal("1.05"), "IRR")).amount == Decimal("100.00")

    def test_mixed_currencies_are_refused(self):
        with pytest.raises(CurrencyMismatchError):
            Money(Decimal("1"), "IRR") + Money(Decimal("1"), "USD")
        with pytest.raises(CurrencyMismatchError):
            Money(Decimal("1"), "IRR") < Money(Decimal("1"), "USD")

    def test_multiply_rounds(self):
        assert Money(Decimal("333.33"), "IRR").multiply(Decimal("0.1")).amount == Decimal("33.33")

    def test_to_dict_uses_a_decimal_string(self):
        assert Money(Decimal("950000"), "IRR").to_dict() == {"amount": "950000.00", "currency": "IRR"}

    def test_flags(self):
        assert Money.zero().is_zero
        assert Money.of("0.01").is_positive
        assert not Money.of("-1").is_positive


@pytest.mark.unit
class TestMoneyIn:
    def test_accepts_decimal_string(self):
        assert MoneyIn(amount="950000.00", currency="IRR").to_money() == Money(Decimal("950000"), "IRR")

    def test_rejects_float(self):
        with pytest.raises(ValueError):
            MoneyIn(amount=950000.5, currency="IRR")
