"""
Mellat (Behpardakht) adapter over its JSON channel.

Requests carry terminal credentials; ``resultCode == 0`` is success. The
issued ``token`` is our authority and the payer is redirected with it.
"""
from __future__ import annotations

from freight.core.clock import utcnow
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

RESULT_OK = 0


class MellatGateway(BasePaymentGateway):
    STATUS_MAP = {
        "SETTLED": GatewayPaymentState.PAID,
        "VERIFIED": GatewayPaymentState.PAID,
        "PAID": GatewayPaymentState.PAID,
        "PENDING": GatewayPaymentState.PENDING,
        "INITIATED": GatewayPaymentState.PENDING,
        "FAILED": GatewayPaymentState.FAILED,
        "REVERSED": GatewayPaymentState.REFUNDED,
        "REFUNDED": GatewayPaymentState.REFUNDED,
    }

    def __init__(
        self,
        circuit_breaker,
        *,
        terminal_id: str,
        username: str,
        password: str,
        base_url: str,
        **kwargs,
    ):
        super().__init__(circuit_breaker, base_url=base_url, **kwargs)
        self._terminal_id = terminal_id
        self._username = username
        self._password = password

    @property
    def name(self) -> str:
        return "mellat"

    def _credentials(self) -> dict:
        return {
            "terminalId": self._terminal_id,
            "userName": self._username,
            "userPassword": self._password,
        }

    def _check(self, operation: str, body: dict) -> dict:
        code = body.get("resultCode")
        if code != RESULT_OK:
            raise self.decline(operation, code, body.get("message"))
        return body

    async def create_payment(self, amount: Money, description: str, callback_ref: str) -> GatewayPaymentInit:
        now = utcnow()
        body = self._check(
            "create_payment",
            await self._call(
                "POST",
                "/api/v1/payment/request",
                "create_payment",
                json={
                    **self._credentials(),
                    "orderId": callback_ref,
                    "amount": self.whole_units(amount),
                    "localDate": now.strftime("%Y%m%d"),
                    "localTime": now.strftime("%H%M%S"),
                    "additionalData": description,
                    "callBackUrl": self.callback_url_for(callback_ref),
                    "payerId": 0,
                },
            ),
        )
        token = body.get("token")
        if not token:
            raise self.decline("create_payment", body.get("resultCode"), "missing token")

        logger.info("Mellat payment opened", extra_data={"callback_ref": callback_ref})
        return GatewayPaymentInit(
            authority=token,
            redirect_url=f"{self._base_url}/payment/gateway?token={token}",
        )

    async def verify_payment(self, authority: str, amount: Money) -> GatewayVerification:
        body = self._check(
            "verify_payment",
            await self._call(
                "POST",
                "/api/v1/payment/verify",
                "verify_payment",
                json={**self._credentials(), "token": authority, "amount": self.whole_units(amount)},
            ),
        )
        return GatewayVerification(
            reference_id=str(body.get("refId", "")),
            paid_at=parse_gateway_timestamp(body.get("paidAt")),
            card_pan=body.get("cardNumber"),
        )

    async def refund(self, payment_ref: str, amount: Money) -> None:
        self._check(
            "refund",
            await self._call(
                "POST",
                "/api/v1/payment/refund",
                "refund",
                retry=False,
                json={**self._credentials(), "token": payment_ref, "amount": self.whole_units(amount)},
            ),
        )

    async def status(self, payment_ref: str) -> GatewayPaymentStatus:
        # Mellat מקבל גם שאילתת סטטוס ב-POST, בגלל פרטי הטרמינל בגוף
        body = self._check(
            "status",
            await self._call(
                "POST",
                "/api/v1/payment/status",
                "status",
                json={**self._credentials(), "token": payment_ref},
            ),
        )
        ref = body.get("refId")
        return GatewayPaymentStatus(
            state=self.map_status(body.get("status")),
            reference_id=str(ref) if ref is not None else None,
            amount=parse_gateway_amount(body.get("amount")),
            paid_at=parse_gateway_timestamp(body["paidAt"]) if body.get("paidAt") else None,
            raw_status=body.get("status"),
        )
