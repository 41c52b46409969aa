"""Credit balance, usage and purchase accounting."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker
from models.credit_purchase import PURCHASE_FAILED, PURCHASE_PENDING
from services.billing_errors import BillingError
from services.billing_queue import enqueue_usage_event_replay, usage_event_payload
from services.credit_plans import PlanCatalog, default_catalog, to_minor_units
from services.ledger_store import (
    BalanceSnapshot,
    DeductStatus,
    LedgerStore,
    PurchaseRecord,
    TransitionStatus,
    UsageEventRecord,
)
from services.payments.providers import BasePaymentGateway
from services.payments.types import CheckoutSession, GatewayNotification

logger = logging.getLogger(__name__)

UsageRetryHook = Callable[[UsageEventRecord], Any]


class DeductionOutcome(str, Enum):
    CHARGED = "charged"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class PurchaseOutcome(str, Enum):
    RECORDED = "recorded"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    ALREADY_FINALIZED = "already_finalized"
    PLAN_NOT_FOUND = "plan_not_found"
    PROVIDER_MISMATCH = "provider_mismatch"


@dataclass(frozen=True)
class DeductionResult:
    outcome: DeductionOutcome
    model_id: str
    credits_required: int
    balance: Optional[BalanceSnapshot]
    usage_event_id: Optional[str] = None
    usage_logged: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == DeductionOutcome.CHARGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.success,
            "outcome": self.outcome.value,
            "model_id": self.model_id,
            "credits_required": self.credits_required,
            "credits_charged": self.credits_required if self.success else 0,
            "balance": self.balance.to_dict() if self.balance else None,
            "usage_event_id": self.usage_event_id,
        }


@dataclass(frozen=True)
class PurchaseResult:
    outcome: PurchaseOutcome
    purchase: Optional[PurchaseRecord] = None
    balance: Optional[BalanceSnapshot] = None
    checkout: Optional[CheckoutSession] = None

    @property
    def success(self) -> bool:
        return self.outcome in (PurchaseOutcome.RECORDED, PurchaseOutcome.COMPLETED, PurchaseOutcome.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.success,
            "outcome": self.outcome.value,
            "duplicate": self.outcome == PurchaseOutcome.ALREADY_FINALIZED,
            "purchase": self.purchase.to_dict() if self.purchase else None,
            "balance": self.balance.to_dict() if self.balance else None,
            "checkout": self.checkout.to_dict() if self.checkout else None,
        }


def _require_user_id(user_id: str) -> str:
    normalized = str(user_id or "").strip()
    if not normalized:
        raise ValueError("user_id is required")
    return normalized


class CreditsManager:
    """Sole authority over user credit balances and their audit trails.

    Balance invariants are enforced by the ledger store's conditional
    writes; this class sequences those writes, applies catalog pricing and
    decides which outcomes are expected results versus failures.
    """

    def __init__(
        self,
        store: LedgerStore,
        catalog: PlanCatalog,
        *,
        free_tier_credits: int = 10,
        usage_retry_hook: Optional[UsageRetryHook] = None,
        history_default_limit: int = 50,
        history_max_limit: int = 500,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.free_tier_credits = max(int(free_tier_credits), 0)
        self.usage_retry_hook = usage_retry_hook
        self.history_default_limit = max(int(history_default_limit), 1)
        self.history_max_limit = max(int(history_max_limit), self.history_default_limit)

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.history_default_limit
        return max(1, min(int(limit), self.history_max_limit))

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance(self, user_id: str) -> BalanceSnapshot:
        """Return the user's balance, seeding the free-tier grant on first access."""
        user_id = _require_user_id(user_id)
        existing = await self.store.get_balance_row(user_id)
        if existing is not None:
            return existing

        snapshot, created = await self.store.insert_balance_if_absent(user_id, self.free_tier_credits)
        if created:
            logger.info("credit_balance_initialized user=%s credits=%s", user_id, self.free_tier_credits)
        return snapshot

    async def deduct(
        self,
        user_id: str,
        model_id: str,
        tokens_used: int = 0,
        request_type: str = "chat",
    ) -> DeductionResult:
        """Charge one invocation of ``model_id``.

        Insufficient credits is returned as an outcome, not raised.
        """
        user_id = _require_user_id(user_id)
        tokens_used = int(tokens_used or 0)
        if tokens_used < 0:
            raise ValueError("tokens_used must not be negative")
        model_id = str(model_id or "").strip()
        credits_required = self.catalog.get_model_cost(model_id)

        balance = await self.get_balance(user_id)
        if balance.remaining_credits < credits_required:
            logger.info(
                "credit_deduction_declined user=%s model=%s required=%s remaining=%s",
                user_id,
                model_id,
                credits_required,
                balance.remaining_credits,
            )
            return DeductionResult(DeductionOutcome.INSUFFICIENT_CREDITS, model_id, credits_required, balance)

        result = await self.store.atomic_deduct(user_id, credits_required)
        if result.status != DeductStatus.APPLIED:
            logger.info(
                "credit_deduction_declined user=%s model=%s required=%s status=%s",
                user_id,
                model_id,
                credits_required,
                result.status.value,
            )
            return DeductionResult(
                DeductionOutcome.INSUFFICIENT_CREDITS,
                model_id,
                credits_required,
                result.balance or balance,
            )

        event = UsageEventRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            model_id=model_id,
            credits_used=credits_required,
            tokens_used=tokens_used,
            request_type=str(request_type or "chat").strip() or "chat",
            created_at=datetime.now(timezone.utc),
        )
        usage_logged = await self._log_usage(event)
        return DeductionResult(
            DeductionOutcome.CHARGED,
            model_id,
            credits_required,
            result.balance,
            usage_event_id=event.id,
            usage_logged=usage_logged,
        )

    async def _log_usage(self, event: UsageEventRecord) -> bool:
        # The deduction has committed; a failed audit append must never reverse it.
        try:
            await self.store.append_usage_event(event)
            return True
        except Exception as exc:
            logger.warning(
                "credit_usage_reconciliation append failed after committed deduction: %s payload=%s",
                exc,
                usage_event_payload(event),
            )

        if self.usage_retry_hook is not None:
            try:
                await asyncio.to_thread(self.usage_retry_hook, event)
            except Exception as exc:
                logger.warning("credit_usage_reconciliation could not queue replay for %s: %s", event.id, exc)
        return False

    async def add_credits(
        self,
        user_id: str,
        credits: int,
        purchase_reference: Optional[str] = None,
    ) -> BalanceSnapshot:
        """Top up a balance. Callers are responsible for not applying the same grant twice."""
        user_id = _require_user_id(user_id)
        credits = int(credits)
        if credits <= 0:
            raise ValueError("credits must be greater than 0")

        await self.get_balance(user_id)
        snapshot = await self.store.atomic_top_up(user_id, credits)
        if snapshot is None:
            raise BillingError(
                message="Balance row missing during top-up",
                code="BALANCE_ROW_MISSING",
                details={"user_id": user_id},
            )
        logger.info(
            "credit_top_up user=%s credits=%s reference=%s total=%s",
            user_id,
            credits,
            purchase_reference,
            snapshot.total_credits,
        )
        return snapshot

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def get_usage_history(self, user_id: str, limit: Optional[int] = None) -> List[UsageEventRecord]:
        return await self.store.get_usage_history(_require_user_id(user_id), self._clamp_limit(limit))

    async def get_purchase_history(self, user_id: str, limit: Optional[int] = None) -> List[PurchaseRecord]:
        return await self.store.get_purchase_history(_require_user_id(user_id), self._clamp_limit(limit))

    async def get_credit_summary(self, user_id: str, limit: int = 20) -> Dict[str, Any]:
        balance = await self.get_balance(user_id)
        usage = await self.get_usage_history(user_id, limit)
        purchases = await self.get_purchase_history(user_id, limit)
        return {
            "credits": balance.to_dict(),
            "free_tier_credits": self.free_tier_credits,
            "model_costs": self.catalog.model_costs(),
            "default_model_cost": self.catalog.default_model_cost,
            "history": [event.to_dict() for event in usage],
            "purchases": [purchase.to_dict() for purchase in purchases],
        }

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def record_purchase(
        self,
        user_id: str,
        plan_id: str,
        credits: int,
        amount: Decimal,
        currency: str,
        payment_reference: Optional[str],
        *,
        provider: str = "manual",
        purchase_id: Optional[str] = None,
    ) -> str:
        """Create a pending purchase and return its id.

        ``credits`` and ``amount`` are copied onto the row so later catalog
        edits never change what this purchase grants.
        """
        user_id = _require_user_id(user_id)
        credits = int(credits)
        if credits <= 0:
            raise ValueError("credits must be greater than 0")

        record = PurchaseRecord(
            id=purchase_id or str(uuid.uuid4()),
            user_id=user_id,
            plan_id=str(plan_id),
            credits=credits,
            amount_minor=to_minor_units(amount),
            currency=str(currency or "USD").upper(),
            provider=provider,
            payment_reference=payment_reference,
            status=PURCHASE_PENDING,
            created_at=datetime.now(timezone.utc),
        )
        stored = await self.store.insert_purchase(record)
        logger.info(
            "credit_purchase_recorded purchase=%s user=%s plan=%s credits=%s provider=%s",
            stored.id,
            user_id,
            stored.plan_id,
            credits,
            provider,
        )
        return stored.id

    def _warn_if_paid_after_failure(self, purchase: Optional[PurchaseRecord], payment_reference: Optional[str]) -> None:
        if purchase is None or purchase.status != PURCHASE_FAILED:
            return
        logger.warning(
            "credit_purchase_reconciliation purchase=%s user=%s credits=%s reference=%s failure_reason=%s "
            "received a completed payment after being marked failed; no credits were granted",
            purchase.id,
            purchase.user_id,
            purchase.credits,
            payment_reference or purchase.payment_reference,
            purchase.failure_reason,
        )

    async def complete_purchase(self, purchase_id: str, payment_reference: Optional[str] = None) -> PurchaseResult:
        """Finalize a pending purchase and grant its snapshotted credits exactly once.

        A completion for a purchase already marked failed grants nothing and
        is logged for manual reconciliation.
        """
        purchase = await self.store.get_purchase(purchase_id)
        if purchase is None:
            logger.warning("credit_purchase_completion purchase=%s not found", purchase_id)
            return PurchaseResult(PurchaseOutcome.NOT_FOUND)
        if purchase.status != PURCHASE_PENDING:
            if purchase.status == PURCHASE_FAILED:
                self._warn_if_paid_after_failure(purchase, payment_reference)
            else:
                logger.info(
                    "credit_purchase_completion purchase=%s already %s; ignoring duplicate",
                    purchase_id,
                    purchase.status,
                )
            return PurchaseResult(PurchaseOutcome.ALREADY_FINALIZED, purchase)

        await self.get_balance(purchase.user_id)
        result = await self.store.complete_purchase_with_top_up(purchase_id)
        if result.status == TransitionStatus.NOT_FOUND:
            return PurchaseResult(PurchaseOutcome.NOT_FOUND)
        if result.status == TransitionStatus.WRONG_STATE:
            logger.info("credit_purchase_completion purchase=%s lost race to another delivery", purchase_id)
            self._warn_if_paid_after_failure(result.purchase, payment_reference)
            return PurchaseResult(PurchaseOutcome.ALREADY_FINALIZED, result.purchase)

        logger.info(
            "credit_purchase_completed purchase=%s user=%s credits=%s total=%s",
            purchase_id,
            purchase.user_id,
            purchase.credits,
            result.balance.total_credits if result.balance else None,
        )
        return PurchaseResult(PurchaseOutcome.COMPLETED, result.purchase, result.balance)

    async def fail_purchase(self, purchase_id: str, reason: str = "payment_failed") -> PurchaseResult:
        result = await self.store.atomic_transition_purchase(
            purchase_id,
            PURCHASE_PENDING,
            PURCHASE_FAILED,
            failure_reason=reason,
        )
        if result.status == TransitionStatus.NOT_FOUND:
            logger.warning("credit_purchase_failure purchase=%s not found", purchase_id)
            return PurchaseResult(PurchaseOutcome.NOT_FOUND)
        if result.status == TransitionStatus.WRONG_STATE:
            logger.info(
                "credit_purchase_failure purchase=%s already %s; ignoring",
                purchase_id,
                result.purchase.status if result.purchase else "finalized",
            )
            return PurchaseResult(PurchaseOutcome.ALREADY_FINALIZED, result.purchase)

        logger.info("credit_purchase_failed purchase=%s reason=%s", purchase_id, reason)
        return PurchaseResult(PurchaseOutcome.FAILED, result.purchase)

    async def start_checkout(self, user_id: str, plan_id: str, gateway: BasePaymentGateway) -> PurchaseResult:
        """Record a pending purchase for ``plan_id`` and open a gateway checkout for it."""
        user_id = _require_user_id(user_id)
        plan = self.catalog.get_plan(plan_id)
        if plan is None:
            return PurchaseResult(PurchaseOutcome.PLAN_NOT_FOUND)
        gateway.ensure_enabled()

        purchase_id = await self.record_purchase(
            user_id,
            plan.id,
            plan.credits,
            plan.price,
            plan.currency,
            None,
            provider=gateway.provider_name,
        )
        try:
            checkout = await gateway.create_checkout(purchase_id=purchase_id, user_id=user_id, plan=plan)
        except Exception:
            # Any checkout failure, including a malformed gateway response, ends the pending row.
            await self.fail_purchase(purchase_id, reason="checkout_creation_failed")
            raise

        await self.store.attach_payment_reference(purchase_id, checkout.payment_reference)
        purchase = await self.store.get_purchase(purchase_id)
        return PurchaseResult(PurchaseOutcome.RECORDED, purchase, checkout=checkout)

    async def apply_gateway_notification(self, notification: GatewayNotification) -> PurchaseResult:
        """Route a verified gateway verdict to completion or failure."""
        purchase: Optional[PurchaseRecord] = None
        if notification.purchase_id:
            purchase = await self.store.get_purchase(notification.purchase_id)
        if purchase is None and notification.payment_reference:
            purchase = await self.store.find_purchase_by_reference(
                notification.provider,
                notification.payment_reference,
            )
        if purchase is None:
            logger.warning(
                "gateway_notification provider=%s purchase=%s reference=%s did not match a purchase",
                notification.provider,
                notification.purchase_id,
                notification.payment_reference,
            )
            return PurchaseResult(PurchaseOutcome.NOT_FOUND)

        if purchase.provider != notification.provider:
            logger.warning(
                "gateway_notification purchase=%s belongs to %s, not %s",
                purchase.id,
                purchase.provider,
                notification.provider,
            )
            return PurchaseResult(PurchaseOutcome.PROVIDER_MISMATCH, purchase)

        if notification.verdict == "completed":
            amount_mismatch = notification.amount_minor is not None and notification.amount_minor != purchase.amount_minor
            currency_mismatch = notification.currency is not None and notification.currency != purchase.currency
            if amount_mismatch or currency_mismatch:
                logger.warning(
                    "gateway_notification purchase=%s paid %s %s, expected %s %s",
                    purchase.id,
                    notification.amount_minor,
                    notification.currency,
                    purchase.amount_minor,
                    purchase.currency,
                )
                return await self.fail_purchase(purchase.id, reason="amount_mismatch")
            return await self.complete_purchase(purchase.id, payment_reference=notification.payment_reference)

        reason = f"{notification.provider}:{notification.raw_status or 'failed'}"
        return await self.fail_purchase(purchase.id, reason=reason)

    async def expire_stale_purchases(self, max_age_minutes: int) -> int:
        """Fail pending purchases whose gateway never reported back."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(int(max_age_minutes), 1))
        stale = await self.store.list_stale_pending_purchases(cutoff)
        expired = 0
        for purchase in stale:
            result = await self.fail_purchase(purchase.id, reason="checkout_timeout")
            if result.outcome == PurchaseOutcome.FAILED:
                expired += 1
        return expired


def build_credits_manager(
    session_factory: async_sessionmaker,
    catalog: Optional[PlanCatalog] = None,
) -> CreditsManager:
    store = LedgerStore(session_factory, timeout_seconds=settings.LEDGER_OPERATION_TIMEOUT_SECONDS)
    return CreditsManager(
        store,
        catalog or default_catalog(),
        free_tier_credits=settings.FREE_TIER_CREDITS,
        usage_retry_hook=enqueue_usage_event_replay if settings.USAGE_RETRY_QUEUE_ENABLED else None,
        history_default_limit=settings.USAGE_HISTORY_DEFAULT_LIMIT,
        history_max_limit=settings.USAGE_HISTORY_MAX_LIMIT,
    )


@lru_cache(maxsize=1)
def get_credits_manager() -> CreditsManager:
    """FastAPI dependency returning the process-wide credits manager."""
    return build_credits_manager(async_session_maker)
