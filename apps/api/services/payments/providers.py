"""Payment gateway abstraction and provider factory."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from config import settings
from services.billing_errors import PaymentGatewayNotConfigured
from services.credit_plans import CreditPlan
from services.payments.types import CheckoutSession, GatewayNotification, ProviderKey


class BasePaymentGateway(ABC):
    provider_name: ProviderKey
    enabled: bool

    def ensure_enabled(self) -> None:
        if not self.enabled:
            raise PaymentGatewayNotConfigured(self.provider_name)

    @abstractmethod
    async def create_checkout(self, *, purchase_id: str, user_id: str, plan: CreditPlan) -> CheckoutSession:
        """Start a hosted checkout whose completion will reference ``purchase_id``."""
        raise NotImplementedError

    @abstractmethod
    def parse_notification(
        self,
        *,
        payload: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> Optional[GatewayNotification]:
        """Verify an inbound notification. Returns None when it carries no verdict."""
        raise NotImplementedError


def gateway_capabilities() -> Dict[str, bool]:
    billing_enabled = bool(settings.BILLING_ENABLED)
    return {
        "stripe_available": billing_enabled and bool(settings.STRIPE_SECRET_KEY),
        "payhere_available": billing_enabled
        and bool(settings.PAYHERE_MERCHANT_ID)
        and bool(settings.PAYHERE_MERCHANT_SECRET),
    }


def get_payment_gateway(provider: ProviderKey) -> BasePaymentGateway:
    capabilities = gateway_capabilities()
    if provider == "payhere":
        from services.payments.payhere import PayHereGateway

        return PayHereGateway(
            merchant_id=settings.PAYHERE_MERCHANT_ID,
            merchant_secret=settings.PAYHERE_MERCHANT_SECRET,
            sandbox=bool(settings.PAYHERE_SANDBOX),
            enabled=capabilities["payhere_available"],
        )

    from services.payments.stripe_gateway import StripeGateway

    return StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
        enabled=capabilities["stripe_available"],
    )
