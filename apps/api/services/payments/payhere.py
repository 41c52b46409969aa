"""PayHere hosted checkout adapter with md5 notify verification."""

from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from config import checkout_return_urls, settings
from services.billing_errors import WebhookVerificationError
from services.credit_plans import CreditPlan, to_minor_units
from services.payments.providers import BasePaymentGateway
from services.payments.types import CheckoutSession, GatewayNotification

logger = logging.getLogger(__name__)

SANDBOX_CHECKOUT_URL = "https://sandbox.payhere.lk/pay/checkout"
LIVE_CHECKOUT_URL = "https://www.payhere.lk/pay/checkout"

STATUS_SUCCESS = "2"
STATUS_PENDING = "0"
FAILED_STATUSES = {"-1": "canceled", "-2": "failed", "-3": "chargedback"}


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def format_amount(amount: Decimal) -> str:
    return f"{Decimal(str(amount)).quantize(Decimal('0.01')):.2f}"


class PayHereGateway(BasePaymentGateway):
    provider_name = "payhere"

    def __init__(self, *, merchant_id: str, merchant_secret: str, sandbox: bool = True, enabled: bool = True) -> None:
        self.merchant_id = merchant_id
        self.merchant_secret = merchant_secret
        self.sandbox = sandbox
        self.enabled = enabled and bool(merchant_id) and bool(merchant_secret)

    @property
    def checkout_url(self) -> str:
        return SANDBOX_CHECKOUT_URL if self.sandbox else LIVE_CHECKOUT_URL

    def _secret_digest(self) -> str:
        return _md5_upper(self.merchant_secret)

    def checkout_hash(self, order_id: str, amount: str, currency: str) -> str:
        return _md5_upper(f"{self.merchant_id}{order_id}{amount}{currency}{self._secret_digest()}")

    def notification_signature(
        self,
        *,
        merchant_id: str,
        order_id: str,
        amount: str,
        currency: str,
        status_code: str,
    ) -> str:
        return _md5_upper(f"{merchant_id}{order_id}{amount}{currency}{status_code}{self._secret_digest()}")

    async def create_checkout(self, *, purchase_id: str, user_id: str, plan: CreditPlan) -> CheckoutSession:
        self.ensure_enabled()
        urls = checkout_return_urls(purchase_id)
        amount = format_amount(plan.price)
        fields = {
            "merchant_id": self.merchant_id,
            "return_url": urls["success_url"],
            "cancel_url": urls["cancel_url"],
            "notify_url": f"{settings.PUBLIC_APP_URL.rstrip('/')}/webhooks/payhere",
            "order_id": purchase_id,
            "items": f"{plan.name} - {plan.credits} Credits",
            "currency": plan.currency,
            "amount": amount,
            "custom_1": user_id,
            "custom_2": plan.id,
            "hash": self.checkout_hash(purchase_id, amount, plan.currency),
        }
        return CheckoutSession(
            provider="payhere",
            payment_reference=purchase_id,
            redirect_url=self.checkout_url,
            form_fields=fields,
        )

    def parse_notification(
        self,
        *,
        payload: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> Optional[GatewayNotification]:
        self.ensure_enabled()
        data = form or {}
        merchant_id = str(data.get("merchant_id") or "")
        order_id = str(data.get("order_id") or "")
        amount = str(data.get("payhere_amount") or "")
        currency = str(data.get("payhere_currency") or "")
        status_code = str(data.get("status_code") or "").strip()
        signature = str(data.get("md5sig") or "").strip().upper()

        if not order_id or not signature:
            raise WebhookVerificationError("Missing order_id or md5sig", provider=self.provider_name)
        if merchant_id != self.merchant_id:
            raise WebhookVerificationError("Merchant id mismatch", provider=self.provider_name)

        expected = self.notification_signature(
            merchant_id=merchant_id,
            order_id=order_id,
            amount=amount,
            currency=currency,
            status_code=status_code,
        )
        if not hmac.compare_digest(expected, signature):
            raise WebhookVerificationError("Invalid md5sig", provider=self.provider_name)

        if status_code == STATUS_SUCCESS:
            verdict = "completed"
        elif status_code in FAILED_STATUSES:
            verdict = "failed"
        else:
            if status_code != STATUS_PENDING:
                logger.warning("PayHere order %s reported unknown status_code=%s", order_id, status_code)
            return None

        try:
            amount_minor: Optional[int] = to_minor_units(Decimal(amount))
        except (InvalidOperation, ValueError):
            amount_minor = None

        return GatewayNotification(
            provider="payhere",
            verdict=verdict,
            purchase_id=order_id,
            payment_reference=str(data.get("payment_id") or "") or order_id,
            event_id=str(data.get("payment_id") or "") or None,
            raw_status=FAILED_STATUSES.get(status_code, "success"),
            amount_minor=amount_minor,
            currency=currency.upper() or None,
        )
