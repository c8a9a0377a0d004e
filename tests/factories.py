"""
Test doubles and constants shared by the test modules.
"""
import itertools
from decimal import Decimal

from freight.core.circuit_breaker import CircuitBreaker
from freight.core.clock import utcnow
from freight.core.exceptions import GatewayError
from freight.core.money import Money
from freight.domain.services.gateways import (
    BasePaymentGateway,
    GatewayPaymentInit,
    GatewayPaymentState,
    GatewayPaymentStatus,
    GatewayVerification,
)

OWNER_ID = 1001
DRIVER_ID = 2001
OTHER_DRIVER_ID = 2002


def irr(amount) -> Money:
    return Money(Decimal(str(amount)), "IRR")


class FakeGateway(BasePaymentGateway):
    """
    In-memory gateway. Tests script failures through ``create_error`` /
    ``verify_error`` / ``refund_error`` and the payer's action through
    ``mark_paid`` / ``mark_failed``.
    """

    def __init__(self, name: str = "zarinpal"):
        super().__init__(
            CircuitBreaker(f"gateway:{name}:fake"),
            base_url="https://gateway.test",
            callback_url="https://freight.test/api/payments/callback",
        )
        self._name = name
        self._counter = itertools.count(1)
        self.payments: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.create_error: Exception | None = None
        self.verify_error: Exception | None = None
        self.refund_error: Exception | None = None

    @property
    def name(self) -> str:
        return self._name

    def calls_to(self, operation: str) -> list[str]:
        return [ref for op, ref in self.calls if op == operation]

    def mark_paid(self, authority: str) -> None:
        self.payments[authority]["state"] = GatewayPaymentState.PAID

    def mark_failed(self, authority: str) -> None:
        self.payments[authority]["state"] = GatewayPaymentState.FAILED

    async def create_payment(self, amount, description, callback_ref):
        self.calls.append(("create_payment", callback_ref))
        if self.create_error is not None:
            raise self.create_error
        authority = f"A{next(self._counter):09d}"
        self.payments[authority] = {"amount": amount, "state": GatewayPaymentState.PENDING, "ref": callback_ref}
        return GatewayPaymentInit(authority=authority, redirect_url=f"https://gateway.test/StartPay/{authority}")

    async def verify_payment(self, authority, amount):
        self.calls.append(("verify_payment", authority))
        if self.verify_error is not None:
            raise self.verify_error
        entry = self.payments.get(authority)
        if entry is None or entry["amount"] != amount:
            raise GatewayError(self.name, "verify_payment declined: unknown authority", retryable=False,
                               gateway_code=-51)
        entry["state"] = GatewayPaymentState.PAID
        return GatewayVerification(reference_id=f"REF-{authority}", paid_at=utcnow())

    async def refund(self, payment_ref, amount):
        self.calls.append(("refund", payment_ref))
        if self.refund_error is not None:
            raise self.refund_error
        self.payments[payment_ref]["state"] = GatewayPaymentState.REFUNDED

    async def status(self, payment_ref):
        self.calls.append(("status", payment_ref))
        entry = self.payments[payment_ref]
        return GatewayPaymentStatus(
            state=entry["state"],
            reference_id=f"REF-{payment_ref}" if entry["state"] == GatewayPaymentState.PAID else None,
            amount=entry["amount"].amount,
            raw_status=entry["state"].value.upper(),
        )


class FakeRedis:
    """תחליף ל-Redis לבדיקות - שומר את ההודעות שפורסמו לפי ערוץ"""

    def __init__(self) -> None:
        self.published: dict[str, list[str]] = {}
        self.fail_publish = False

    async def ping(self) -> bool:
        return True

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            from redis.exceptions import ConnectionError as RedisConnectionError
            raise RedisConnectionError("redis is down")
        self.published.setdefault(channel, []).append(message)
        return 1

    async def aclose(self) -> None:
        self.published.clear()
