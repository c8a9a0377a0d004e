"""
Zarinpal adapter (REST v4).

Success is ``data.code == 100``; ``101`` on verify means the authority was
already verified, which is still a success for us.
"""
from __future__ import annotations

from typing import Any, Optional

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

ZARINPAL_LIVE_URL = "https://payment.zarinpal.com/pg"
ZARINPAL_SANDBOX_URL = "https://sandbox.zarinpal.com/pg"

CODE_OK = 100
CODE_ALREADY_VERIFIED = 101


class ZarinpalGateway(BasePaymentGateway):
    STATUS_MAP = {
        "PAID": GatewayPaymentState.PAID,
        "VERIFIED": GatewayPaymentState.PAID,
        "IN_BANK": GatewayPaymentState.PENDING,
        "PENDING": GatewayPaymentState.PENDING,
        "FAILED": GatewayPaymentState.FAILED,
        "REVERSED": GatewayPaymentState.REFUNDED,
        "REFUNDED": GatewayPaymentState.REFUNDED,
    }

    def __init__(self, circuit_breaker, *, merchant_id: str, base_url: str = ZARINPAL_LIVE_URL, **kwargs):
        super().__init__(circuit_breaker, base_url=base_url, **kwargs)
        self._merchant_id = merchant_id

    @property
    def name(self) -> str:
        return "zarinpal"

    @staticmethod
    def _unpack(body: dict) -> tuple[Optional[int], dict, Optional[str]]:
        """Zarinpal puts success under ``data`` and failures under ``errors``"""
        data = body.get("data")
        if isinstance(data, dict) and "code" in data:
            return data.get("code"), data, data.get("message")
        errors = body.get("errors")
        if isinstance(errors, dict):
            return errors.get("code"), {}, errors.get("message")
        return None, {}, "malformed response"

    def start_pay_url(self, authority: str) -> str:
        return f"{self._base_url}/StartPay/{authority}"

    async def create_payment(self, amount: Money, description: str, callback_ref: str) -> GatewayPaymentInit:
        body = await self._call(
            "POST",
            "/v4/payment/request.json",
            "create_payment",
            json={
                "merchant_id": self._merchant_id,
                "amount": self.whole_units(amount),
                "callback_url": self.callback_url_for(callback_ref),
                "description": description,
                "metadata": {"order_id": callback_ref},
            },
        )
        code, data, message = self._unpack(body)
        if code != CODE_OK or not data.get("authority"):
            raise self.decline("create_payment", code, message)

        authority = data["authority"]
        logger.info(
            "Zarinpal payment opened",
            extra_data={"authority": authority, "callback_ref": callback_ref},
        )
        return GatewayPaymentInit(authority=authority, redirect_url=self.start_pay_url(authority))

    async def verify_payment(self, authority: str, amount: Money) -> GatewayVerification:
        body = await self._call(
            "POST",
            "/v4/payment/verify.json",
            "verify_payment",
            json={
                "merchant_id": self._merchant_id,
                "amount": self.whole_units(amount),
                "authority": authority,
            },
        )
        code, data, message = self._unpack(body)
        if code not in (CODE_OK, CODE_ALREADY_VERIFIED):
            raise self.decline("verify_payment", code, message)

        return GatewayVerification(
            reference_id=str(data.get("ref_id", "")),
            paid_at=parse_gateway_timestamp(data.get("paid_at")),
            card_pan=data.get("card_pan"),
        )

    async def refund(self, payment_ref: str, amount: Money) -> None:
        body = await self._call(
            "POST",
            "/v4/payment/refund.json",
            "refund",
            retry=False,
            json={
                "merchant_id": self._merchant_id,
                "authority": payment_ref,
                "amount": self.whole_units(amount),
            },
        )
        code, _, message = self._unpack(body)
        if code != CODE_OK:
            raise self.decline("refund", code, message)

    async def status(self, payment_ref: str) -> GatewayPaymentStatus:
        body = await self._call(
            "GET",
            "/v4/payment/status.json",
            "status",
            params={"merchant_id": self._merchant_id, "authority": payment_ref},
        )
        code, data, message = self._unpack(body)
        if code != CODE_OK:
            raise self.decline("status", code, message)

        raw_status: Any = data.get("status")
        return GatewayPaymentStatus(
            state=self.map_status(raw_status),
            reference_id=str(data["ref_id"]) if data.get("ref_id") is not None else None,
            amount=parse_gateway_amount(data.get("amount")),
            paid_at=parse_gateway_timestamp(data["paid_at"]) if data.get("paid_at") else None,
            raw_status=raw_status,
        )
