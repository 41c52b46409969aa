"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Callable, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context, get_scoped_user_id
from routers.rate_limit import rate_limit
from services.credits import CreditsManager, DeductionOutcome, PurchaseOutcome, get_credits_manager
from services.payments import BasePaymentGateway, get_payment_gateway

router = APIRouter()
logger = logging.getLogger(__name__)


class DeductRequest(BaseModel):
    user_id: Optional[str] = None
    model_id: str = Field(min_length=1, max_length=100)
    tokens_used: int = Field(default=0, ge=0)
    request_type: str = Field(default="chat", min_length=1, max_length=50)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    plan_id: str = Field(min_length=1, max_length=50)
    provider: Literal["stripe", "payhere"] = "stripe"


def get_gateway_factory() -> Callable[[str], BasePaymentGateway]:
    return get_payment_gateway


@router.get("/plans")
async def list_plans(manager: CreditsManager = Depends(get_credits_manager)):
    catalog = manager.catalog
    return {
        "plans": [plan.to_dict() for plan in catalog.list_plans()],
        "model_costs": catalog.model_costs(),
        "default_model_cost": catalog.default_model_cost,
    }


@router.get("/credits")
async def credits_summary(
    limit: int = Query(default=20, ge=1, le=100),
    scoped_user_id: str = Depends(get_scoped_user_id),
    manager: CreditsManager = Depends(get_credits_manager),
):
    return await manager.get_credit_summary(scoped_user_id, limit=limit)


@router.get("/usage")
async def usage_history(
    limit: Optional[int] = Query(default=None, ge=1),
    scoped_user_id: str = Depends(get_scoped_user_id),
    manager: CreditsManager = Depends(get_credits_manager),
):
    events = await manager.get_usage_history(scoped_user_id, limit)
    return {"user_id": scoped_user_id, "events": [event.to_dict() for event in events]}


@router.get("/purchases")
async def purchase_history(
    limit: Optional[int] = Query(default=None, ge=1),
    scoped_user_id: str = Depends(get_scoped_user_id),
    manager: CreditsManager = Depends(get_credits_manager),
):
    purchases = await manager.get_purchase_history(scoped_user_id, limit)
    return {"user_id": scoped_user_id, "purchases": [purchase.to_dict() for purchase in purchases]}


@router.post("/deduct")
async def deduct_credits(
    request: DeductRequest,
    _rate_limit: None = Depends(rate_limit("billing_deduct", limit=600, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    manager: CreditsManager = Depends(get_credits_manager),
):
    scoped_user_id = auth.scope(request.user_id)
    result = await manager.deduct(
        scoped_user_id,
        request.model_id,
        tokens_used=request.tokens_used,
        request_type=request.request_type,
    )
    if result.outcome == DeductionOutcome.INSUFFICIENT_CREDITS:
        raise HTTPException(
            status_code=402,
            detail={
                "message": "Insufficient credits.",
                "credits_required": result.credits_required,
                "remaining_credits": result.balance.remaining_credits if result.balance else 0,
            },
        )
    return result.to_dict()


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    manager: CreditsManager = Depends(get_credits_manager),
    gateway_factory: Callable[[str], BasePaymentGateway] = Depends(get_gateway_factory),
):
    scoped_user_id = auth.scope(request.user_id)
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")

    result = await manager.start_checkout(scoped_user_id, request.plan_id, gateway_factory(request.provider))
    if result.outcome == PurchaseOutcome.PLAN_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Unknown credit plan: {request.plan_id}")

    logger.info(
        "Checkout opened purchase=%s user=%s plan=%s provider=%s",
        result.purchase.id if result.purchase else None,
        scoped_user_id,
        request.plan_id,
        request.provider,
    )
    return {
        "purchase_id": result.purchase.id if result.purchase else None,
        "purchase": result.purchase.to_dict() if result.purchase else None,
        "checkout": result.checkout.to_dict() if result.checkout else None,
    }
