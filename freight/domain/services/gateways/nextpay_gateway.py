"""
NextPay adapter. ``code == 0`` is success; ``trans_id`` is the authority.
"""
from __future__ import annotations

from freight.core.logging import get_logger
from freight.core.money import Money
from freight.domain.services.gateways.base_gateway import (
    BasePaymentGateway,
    GatewayPaymentInit,
    GatewayPaymentState,
    GatewayPaymentStatus,
    GatewayVerification,
    parse_gateway_amount,
    parse_gateway_timestamp,
)

logger = get_logger(__name__)

CODE_OK = 0


class NextPayGateway(BasePaymentGateway):
    STATUS_MAP = {
        "PAID": GatewayPaymentState.PAID,
        "SUCCESS": GatewayPaymentState.PAID,
        "PENDING": GatewayPaymentState.PENDING,
        "WAITING": GatewayPaymentState.PENDING,
        "FAILED": GatewayPaymentState.FAILED,
        "CANCELED": GatewayPaymentState.FAILED,
        "REFUNDED": GatewayPaymentState.REFUNDED,
    }

    def __init__(self, circuit_breaker, *, api_key: str, base_url: str, **kwargs):
        super().__init__(circuit_breaker, base_url=base_url, **kwargs)
        self._api_key = api_key

    @property
    def name(self) -> str:
        return "nextpay"

    def _check(self, operation: str, body: dict) -> dict:
        code = body.get("code")
        if code != CODE_OK:
            raise self.decline(operation, code, body.get("message"))
        return body

    async def create_payment(self, amount: Money, description: str, callback_ref: str) -> GatewayPaymentInit:
        body = self._check(
            "create_payment",
            await self._call(
                "POST",
                "/api/v1/payment/request",
                "create_payment",
                json={
                    "api_key": self._api_key,
                    "order_id": callback_ref,
                    "amount": self.whole_units(amount),
                    "callback_uri": self.callback_url_for(callback_ref),
                    "customer_description": description,
                },
            ),
        )
        if not body.get("trans_id") or not body.get("code_uri"):
            raise self.decline("create_payment", body.get("code"), "missing trans_id")

        logger.info(
            "NextPay payment opened",
            extra_data={"trans_id": body["trans_id"], "callback_ref": callback_ref},
        )
        return GatewayPaymentInit(authority=body["trans_id"], redirect_url=body["code_uri"])

    async def verify_payment(self, authority: str, amount: Money) -> GatewayVerification:
        body = self._check(
            "verify_payment",
            await self._call(
                "POST",
                "/api/v1/payment/verify",
                "verify_payment",
                json={"api_key": self._api_key, "trans_id": authority, "amount": self.whole_units(amount)},
            ),
        )
        return GatewayVerification(
            reference_id=str(body.get("shaparak_ref_id", "")),
            paid_at=parse_gateway_timestamp(body.get("paid_at")),
            card_pan=body.get("card_holder"),
        )

    async def refund(self, payment_ref: str, amount: Money) -> None:
        self._check(
            "refund",
            await self._call(
                "POST",
                "/api/v1/payment/refund",
                "refund",
                retry=False,
                json={"api_key": self._api_key, "trans_id": payment_ref, "amount": self.whole_units(amount)},
            ),
        )

    async def status(self, payment_ref: str) -> GatewayPaymentStatus:
        body = self._check(
            "status",
            await self._call(
                "GET",
                "/api/v1/payment/status",
                "status",
                params={"api_key": self._api_key, "trans_id": payment_ref},
            ),
        )
        ref = body.get("shaparak_ref_id")
        return GatewayPaymentStatus(
            state=self.map_status(body.get("status")),
            reference_id=str(ref) if ref is not None else None,
            amount=parse_gateway_amount(body.get("amount")),
            paid_at=parse_gateway_timestamp(body["paid_at"]) if body.get("paid_at") else None,
            raw_status=body.get("status"),
        )
