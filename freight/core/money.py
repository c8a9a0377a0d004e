"""
Money value object - fixed-point amount with a currency tag.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from freight.core.config import settings
from freight.core.exceptions import CurrencyMismatchError, ValidationException

CENT = Decimal("0.01")


def quantize(value: Any) -> Decimal:
    """Decimal rounded half-up to two places. Floats go through str() first."""
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationException(f"Invalid money amount: {value!r}", field="amount")


@dataclass(frozen=True, order=False)
class Money:
    amount: Decimal
    currency: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", quantize(self.amount))
        object.__setattr__(self, "currency", (self.currency or settings.DEFAULT_CURRENCY).upper())

    @classmethod
    def zero(cls, currency: str | None = None) -> "Money":
        return cls(Decimal("0"), currency or settings.DEFAULT_CURRENCY)

    @classmethod
    def of(cls, amount: Any, currency: str | None = None) -> "Money":
        return cls(quantize(amount), currency or settings.DEFAULT_CURRENCY)

    def _check(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check(other)
        return self.amount >= other.amount

    def multiply(self, rate: Decimal) -> "Money":
        return Money(self.amount * Decimal(rate), self.currency)

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    def to_dict(self) -> dict[str, str]:
        return {"amount": f"{self.amount:.2f}", "currency": self.currency}

    def __str__(self) -> str:
        return f"{self.amount:.2f} {self.currency}"
