"""
Shared API schemas

Money travels as {"amount": "950000.00", "currency": "IRR"} with the amount
as a decimal string, never a float.
"""
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from freight.core.money import Money


class MoneyIn(BaseModel):
    amount: Decimal
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    @field_validator("amount", mode="before")
    @classmethod
    def reject_float(cls, v: Any) -> Any:
        # float מאבד דיוק - דורשים מחרוזת או מספר שלם
        if isinstance(v, float):
            raise ValueError("amount must be a decimal string, not a float")
        return v

    def to_money(self) -> Money:
        return Money(self.amount, self.currency or "")


class MoneyOut(BaseModel):
    amount: str
    currency: str

    @classmethod
    def of(cls, amount: Decimal | None, currency: str) -> "MoneyOut | None":
        if amount is None:
            return None
        return cls(**Money(amount, currency).to_dict())

    @classmethod
    def from_money(cls, money: Money) -> "MoneyOut":
        return cls(**money.to_dict())


class ReasonIn(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
