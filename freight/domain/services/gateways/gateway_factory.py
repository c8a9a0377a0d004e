"""
Gateway factory - one adapter instance per gateway name, built from settings.
"""
from __future__ import annotations

import threading
from typing import Optional

from freight.core.circuit_breaker import get_gateway_circuit_breaker
from freight.core.config import settings
from freight.core.logging import get_logger
from freight.domain.services.gateways.base_gateway import BasePaymentGateway

logger = get_logger(__name__)

_gateways: dict[str, BasePaymentGateway] = {}
_lock = threading.Lock()


def _common_kwargs() -> dict:
    return {
        "callback_url": settings.PAYMENT_CALLBACK_URL,
        "timeout": settings.GATEWAY_TIMEOUT_SECONDS,
        "max_retries": settings.GATEWAY_MAX_RETRIES,
        "transient_status_codes": settings.transient_status_codes,
    }


def _create_gateway(name: str) -> BasePaymentGateway:
    circuit_breaker = get_gateway_circuit_breaker(name)

    if name == "zarinpal":
        from freight.domain.services.gateways.zarinpal_gateway import (
            ZARINPAL_LIVE_URL,
            ZARINPAL_SANDBOX_URL,
            ZarinpalGateway,
        )

        base_url = settings.ZARINPAL_BASE_URL or (
            ZARINPAL_SANDBOX_URL if settings.ZARINPAL_SANDBOX else ZARINPAL_LIVE_URL
        )
        return ZarinpalGateway(
            circuit_breaker,
            merchant_id=settings.ZARINPAL_MERCHANT_ID,
            base_url=base_url,
            **_common_kwargs(),
        )

    if name == "nextpay":
        from freight.domain.services.gateways.nextpay_gateway import NextPayGateway

        return NextPayGateway(
            circuit_breaker,
            api_key=settings.NEXTPAY_API_KEY,
            base_url=settings.NEXTPAY_BASE_URL,
            **_common_kwargs(),
        )

    if name == "mellat":
        from freight.domain.services.gateways.mellat_gateway import MellatGateway

        return MellatGateway(
            circuit_breaker,
            terminal_id=settings.MELLAT_TERMINAL_ID,
            username=settings.MELLAT_USERNAME,
            password=settings.MELLAT_PASSWORD,
            base_url=settings.MELLAT_BASE_URL,
            **_common_kwargs(),
        )

    raise ValueError(f"Unknown payment gateway: {name}")


def get_payment_gateway(name: Optional[str] = None) -> BasePaymentGateway:
    """Adapter for ``name``; defaults to the configured PAYMENT_GATEWAY"""
    name = name or settings.PAYMENT_GATEWAY
    gateway = _gateways.get(name)
    if gateway is None:
        with _lock:
            gateway = _gateways.get(name)
            if gateway is None:
                gateway = _create_gateway(name)
                _gateways[name] = gateway
                logger.info("Payment gateway initialized", extra_data={"gateway": name})
    return gateway


def register_gateway(gateway: BasePaymentGateway) -> None:
    """Install a prebuilt adapter under its name (tests, custom transports)"""
    with _lock:
        _gateways[gateway.name] = gateway


def reset_gateways() -> None:
    with _lock:
        _gateways.clear()
