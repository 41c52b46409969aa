"""Inbound payment gateway notifications."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from services.credits import CreditsManager, PurchaseOutcome, PurchaseResult, get_credits_manager
from services.payments import BasePaymentGateway, GatewayNotification, get_payment_gateway

router = APIRouter()
logger = logging.getLogger(__name__)


def get_stripe_gateway() -> BasePaymentGateway:
    return get_payment_gateway("stripe")


def get_payhere_gateway() -> BasePaymentGateway:
    return get_payment_gateway("payhere")


async def _apply(
    manager: CreditsManager,
    notification: Optional[GatewayNotification],
    provider: str,
) -> dict:
    if notification is None:
        return {"received": True, "handled": False}

    result: PurchaseResult = await manager.apply_gateway_notification(notification)
    if result.outcome == PurchaseOutcome.NOT_FOUND:
        # 404 makes the gateway redeliver, covering notifications that beat the purchase commit.
        raise HTTPException(status_code=404, detail="Purchase not found for notification.")
    if result.outcome == PurchaseOutcome.PROVIDER_MISMATCH:
        # Redelivery can never match; acknowledge so the gateway stops retrying.
        return {"received": True, "handled": False, "outcome": result.outcome.value}

    logger.info(
        "Webhook %s event=%s purchase=%s outcome=%s",
        provider,
        notification.event_id,
        result.purchase.id if result.purchase else notification.purchase_id,
        result.outcome.value,
    )
    payload = result.to_dict()
    payload.update({"received": True, "handled": True})
    return payload


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    gateway: BasePaymentGateway = Depends(get_stripe_gateway),
    manager: CreditsManager = Depends(get_credits_manager),
):
    payload = await request.body()
    notification = gateway.parse_notification(payload=payload, headers=request.headers)
    return await _apply(manager, notification, "stripe")


@router.post("/payhere")
async def payhere_webhook(
    request: Request,
    gateway: BasePaymentGateway = Depends(get_payhere_gateway),
    manager: CreditsManager = Depends(get_credits_manager),
):
    form = await request.form()
    notification = gateway.parse_notification(
        payload=b"",
        headers=request.headers,
        form={key: value for key, value in form.items() if isinstance(value, str)},
    )
    return await _apply(manager, notification, "payhere")
