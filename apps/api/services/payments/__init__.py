"""Public payment gateway utilities."""

from services.payments.providers import BasePaymentGateway, gateway_capabilities, get_payment_gateway
from services.payments.types import (
    CheckoutSession,
    GatewayNotification,
    GatewayVerdict,
    ProviderKey,
)

__all__ = [
    "BasePaymentGateway",
    "CheckoutSession",
    "GatewayNotification",
    "GatewayVerdict",
    "ProviderKey",
    "gateway_capabilities",
    "get_payment_gateway",
]
