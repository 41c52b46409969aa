"""Stripe Checkout adapter for one-time credit bundle purchases."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import stripe

from config import checkout_return_urls
from services.billing_errors import PaymentGatewayError, WebhookVerificationError
from services.credit_plans import CreditPlan
from services.payments.providers import BasePaymentGateway
from services.payments.types import CheckoutSession, GatewayNotification

logger = logging.getLogger(__name__)

COMPLETED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
FAILED_EVENTS = ("checkout.session.async_payment_failed", "checkout.session.expired")


def _field(obj: Any, key: str) -> Any:
    """Optional field lookup that works for StripeObject values and plain mappings alike."""
    if obj is None:
        return None
    try:
        return obj[key]
    except KeyError:
        return None


class StripeGateway(BasePaymentGateway):
    provider_name = "stripe"

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        enabled: bool = True,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.enabled = enabled and bool(secret_key)

    async def create_checkout(self, *, purchase_id: str, user_id: str, plan: CreditPlan) -> CheckoutSession:
        self.ensure_enabled()
        urls = checkout_return_urls(purchase_id)
        metadata = {"purchase_id": purchase_id, "user_id": user_id, "plan_id": plan.id}
        try:
            session = await stripe.checkout.Session.create_async(
                api_key=self.secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": plan.currency.lower(),
                            "unit_amount": plan.price_minor,
                            "product_data": {
                                "name": f"{plan.name} - {plan.credits} Credits",
                                "description": plan.description,
                            },
                        },
                        "quantity": 1,
                    }
                ],
                client_reference_id=purchase_id,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=urls["success_url"],
                cancel_url=urls["cancel_url"],
                idempotency_key=f"credit-checkout:{purchase_id}",
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe checkout creation failed for purchase %s: %s", purchase_id, exc)
            raise PaymentGatewayError(f"Stripe checkout failed: {exc}", provider=self.provider_name) from exc

        return CheckoutSession(
            provider="stripe",
            payment_reference=str(session["id"]),
            redirect_url=str(_field(session, "url") or ""),
        )

    def parse_notification(
        self,
        *,
        payload: bytes,
        headers: Mapping[str, str],
        form: Optional[Mapping[str, Any]] = None,
    ) -> Optional[GatewayNotification]:
        self.ensure_enabled()
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header", provider=self.provider_name)
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            raise WebhookVerificationError("Webhook secret not configured", provider=self.provider_name)

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid webhook signature", provider=self.provider_name) from exc
        except ValueError as exc:
            raise WebhookVerificationError("Invalid webhook payload", provider=self.provider_name) from exc

        event_type = str(event["type"])
        session = event["data"]["object"]
        if event_type in COMPLETED_EVENTS:
            # Delayed payment methods report completion before funds settle.
            if event_type == "checkout.session.completed" and _field(session, "payment_status") != "paid":
                logger.info("Stripe session %s completed with payment_status=%s; awaiting settlement",
                            _field(session, "id"), _field(session, "payment_status"))
                return None
            verdict = "completed"
        elif event_type in FAILED_EVENTS:
            verdict = "failed"
        else:
            logger.debug("Ignoring Stripe event type %s", event_type)
            return None

        metadata = _field(session, "metadata")
        amount_total = _field(session, "amount_total")
        currency = _field(session, "currency")
        return GatewayNotification(
            provider="stripe",
            verdict=verdict,
            purchase_id=_field(session, "client_reference_id") or _field(metadata, "purchase_id"),
            payment_reference=_field(session, "id"),
            event_id=_field(event, "id"),
            raw_status=event_type,
            amount_minor=int(amount_total) if amount_total is not None else None,
            currency=str(currency).upper() if currency else None,
        )
