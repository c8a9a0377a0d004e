"""
Payment gateway adapters

Zarinpal / NextPay / Mellat behind one interface; the orchestrator picks one
by name through the factory.
"""
from freight.domain.services.gateways.base_gateway import (
    BasePaymentGateway,
    GatewayPaymentInit,
    GatewayPaymentState,
    GatewayPaymentStatus,
    GatewayVerification,
)
from freight.domain.services.gateways.gateway_factory import (
    get_payment_gateway,
    register_gateway,
    reset_gateways,
)

__all__ = [
    "BasePaymentGateway",
    "GatewayPaymentInit",
    "GatewayPaymentState",
    "GatewayPaymentStatus",
    "GatewayVerification",
    "get_payment_gateway",
    "register_gateway",
    "reset_gateways",
]
