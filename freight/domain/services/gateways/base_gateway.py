"""
Payment gateway interface.

Each adapter (Zarinpal, NextPay, Mellat) implements this interface. The
orchestrator depends only on it, never on a concrete provider.

Every adapter call goes through ``_call``:
- the per-gateway circuit breaker
- an httpx client with a timeout
- retry with exponential backoff on network errors, timeouts and 5xx
  (one attempt only for calls that move money back, e.g. refund)

Failures surface as ``GatewayError``; ``retryable`` tells outages apart from
explicit declines.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from freight.core.circuit_breaker import CircuitBreaker
from freight.core.clock import utcnow
from freight.core.exceptions import GatewayError
from freight.core.logging import get_logger
from freight.core.money import Money

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayPaymentInit:
    """Authority issued by the gateway plus the URL the payer is sent to"""
    authority: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayVerification:
    reference_id: str
    paid_at: datetime
    card_pan: Optional[str] = None


class GatewayPaymentState(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GatewayPaymentStatus:
    state: GatewayPaymentState
    reference_id: Optional[str] = None
    amount: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    raw_status: Optional[str] = None


def parse_gateway_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


def parse_gateway_timestamp(value: Any) -> datetime:
    """ISO timestamp from a gateway -> naive UTC. Missing/garbled -> now."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable gateway timestamp", extra_data={"value": value})
            return utcnow()
    else:
        return utcnow()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class BasePaymentGateway(ABC):
    """Shared HTTP plumbing for the gateway adapters"""

    # מיפוי סטטוס גולמי של הספק -> GatewayPaymentState
    STATUS_MAP: dict[str, GatewayPaymentState] = {}

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: str,
        callback_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        transient_status_codes: Optional[set[int]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base_seconds: float = 1.0,
    ):
        self._circuit_breaker = circuit_breaker
        self._base_url = base_url.rstrip("/")
        self._callback_url = callback_url
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._transient_status_codes = transient_status_codes or {429, 502, 503, 504}
        self._transport = transport
        self._backoff_base_seconds = backoff_base_seconds

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name as stored on Payment.gateway"""

    # ── contract ──

    @abstractmethod
    async def create_payment(
        self, amount: Money, description: str, callback_ref: str
    ) -> GatewayPaymentInit:
        """
        Open a payment at the gateway.

        Args:
            amount: gross amount to charge
            description: text shown to the payer
            callback_ref: our payment number, echoed back on the callback

        Raises:
            GatewayError: retryable on outage, terminal on decline
        """

    @abstractmethod
    async def verify_payment(self, authority: str, amount: Money) -> GatewayVerification:
        """Confirm with the gateway that ``authority`` was paid for ``amount``"""

    @abstractmethod
    async def refund(self, payment_ref: str, amount: Money) -> None:
        """Return ``amount`` of a verified payment to the payer"""

    @abstractmethod
    async def status(self, payment_ref: str) -> GatewayPaymentStatus:
        """Current state of a payment as the gateway sees it"""

    # ── helpers ──

    def callback_url_for(self, callback_ref: str) -> str:
        separator = "&" if "?" in self._callback_url else "?"
        return f"{self._callback_url}{separator}payment={callback_ref}"

    def map_status(self, raw_status: Any) -> GatewayPaymentState:
        if raw_status is None:
            return GatewayPaymentState.UNKNOWN
        return self.STATUS_MAP.get(str(raw_status).upper(), GatewayPaymentState.UNKNOWN)

    def whole_units(self, amount: Money) -> int:
        """
        Gateways take whole units (rial). A fraction is refused, not rounded,
        as a terminal decline.
        """
        if amount.amount != amount.amount.to_integral_value():
            raise GatewayError(
                self.name,
                f"{self.name} accepts whole {amount.currency} amounts only, got {amount.amount}",
                retryable=False,
                details={"amount": str(amount.amount), "currency": amount.currency},
            )
        return int(amount.amount)

    def decline(self, operation: str, code: Any, message: Optional[str]) -> GatewayError:
        logger.warning(
            f"{self.name} declined {operation}",
            extra_data={"gateway": self.name, "operation": operation, "code": code, "message": message},
        )
        return GatewayError(
            self.name,
            f"{operation} declined: {message or 'no message'}",
            retryable=False,
            gateway_code=code,
            details={"operation": operation},
        )

    async def _call(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> dict:
        """
        HTTP call under the circuit breaker, returns the decoded JSON body.

        ``retry=False`` for calls that are not idempotent at the provider
        (refund): a timed-out attempt may still have gone through.
        """
        attempts = self._max_retries if retry else 1

        async def _do() -> dict:
            return await self._request_with_retry(
                method, path, operation, json=json, params=params, attempts=attempts
            )

        return await self._circuit_breaker.execute(_do)

    async def _backoff(self, operation: str, attempt: int, **extra: Any) -> None:
        backoff = self._backoff_base_seconds * (2 ** attempt)
        logger.warning(
            f"{self.name} {operation} failed transiently, retrying",
            extra_data={
                "gateway": self.name,
                "attempt": attempt + 1,
                "max_retries": self._max_retries,
                "backoff_seconds": backoff,
                **extra,
            },
        )
        await asyncio.sleep(backoff)

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        attempts: Optional[int] = None,
    ) -> dict:
        """
        Request with retry and exponential backoff.

        Raises GatewayError once the attempts are exhausted or the gateway
        answers with a non-retryable status.
        """
        url = f"{self._base_url}{path}"
        attempts = attempts or self._max_retries
        last_attempt = attempts - 1

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for attempt in range(attempts):
                try:
                    response = await client.request(method, url, json=json, params=params)
                except httpx.TimeoutException:
                    if attempt < last_attempt:
                        await self._backoff(operation, attempt, timeout=True)
                        continue
                    raise GatewayError(
                        self.name,
                        f"{operation} timed out after {attempts} attempt(s)",
                        retryable=True,
                        details={"operation": operation, "timeout": True, "attempts": attempts},
                    )
                except httpx.RequestError as exc:
                    if attempt < last_attempt:
                        await self._backoff(operation, attempt, error=str(exc))
                        continue
                    raise GatewayError(
                        self.name,
                        f"{operation} network error: {exc}",
                        retryable=True,
                        details={"operation": operation, "attempts": attempts},
                    )

                status_code = response.status_code
                transient = status_code >= 500 or status_code in self._transient_status_codes
                if transient:
                    if attempt < last_attempt:
                        await self._backoff(operation, attempt, status_code=status_code)
                        continue
                    raise GatewayError.from_response(self.name, operation, response, retryable=True)

                try:
                    body = response.json()
                except ValueError:
                    body = None

                if not isinstance(body, dict):
                    # 2xx בלי JSON: מצב לא ידוע, עדיף לנסות שוב מאשר לסמן כנכשל
                    raise GatewayError.from_response(
                        self.name, operation, response, retryable=status_code < 400
                    )

                # 4xx עם גוף JSON מחזיר קוד עסקי; המתאם מפרש אותו
                return body

        raise GatewayError(self.name, f"{operation} exhausted retries", retryable=True)
