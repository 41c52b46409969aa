import asyncio
import logging
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from models.credit_balance import CreditBalance
from models.credit_purchase import PURCHASE_COMPLETED, PURCHASE_FAILED, PURCHASE_PENDING
from services.billing_errors import PaymentGatewayError, StorageUnavailable
from services.credit_plans import CREDIT_PLANS, MODEL_CREDIT_COSTS, PlanCatalog
from services.credits import CreditsManager, DeductionOutcome, PurchaseOutcome
from services.payments.types import CheckoutSession, GatewayNotification


@pytest.mark.asyncio
async def test_first_balance_read_seeds_free_tier_once(manager):
    first = await manager.get_balance("new-user")
    second = await manager.get_balance("new-user")

    assert (first.total_credits, first.used_credits, first.remaining_credits) == (10, 0, 10)
    assert second == first


@pytest.mark.asyncio
async def test_concurrent_first_reads_create_one_row(manager, session_maker):
    snapshots = await asyncio.gather(*(manager.get_balance("racing-user") for _ in range(8)))

    assert {snapshot.total_credits for snapshot in snapshots} == {10}
    async with session_maker() as session:
        count = await session.scalar(
            select(func.count()).select_from(CreditBalance).where(CreditBalance.user_id == "racing-user")
        )
    assert count == 1


@pytest.mark.asyncio
async def test_deduct_charges_model_cost_and_logs_usage(manager):
    result = await manager.deduct("chat-user", "claude", tokens_used=850, request_type="chat")

    assert result.success is True
    assert result.credits_required == 4
    assert result.balance.remaining_credits == 6
    assert result.usage_logged is True

    history = await manager.get_usage_history("chat-user")
    assert len(history) == 1
    assert history[0].id == result.usage_event_id
    assert (history[0].model_id, history[0].credits_used, history[0].tokens_used) == ("claude", 4, 850)


@pytest.mark.asyncio
async def test_unknown_model_always_costs_one_credit(manager):
    results = [await manager.deduct("unknown-user", "unknown-model-xyz") for _ in range(3)]

    assert [result.credits_required for result in results] == [1, 1, 1]
    balance = await manager.get_balance("unknown-user")
    assert balance.used_credits == 3


@pytest.mark.asyncio
async def test_insufficient_credits_is_a_declined_result(manager):
    await manager.deduct("poor-user", "devin")
    await manager.deduct("poor-user", "devin")
    declined = await manager.deduct("poor-user", "devin")

    assert declined.outcome == DeductionOutcome.INSUFFICIENT_CREDITS
    assert declined.success is False
    assert declined.to_dict()["credits_charged"] == 0
    assert declined.balance.remaining_credits == 0
    assert len(await manager.get_usage_history("poor-user")) == 2


@pytest.mark.asyncio
async def test_concurrent_deductions_never_both_succeed(store, catalog):
    manager = CreditsManager(store, catalog, free_tier_credits=3)
    await manager.get_balance("tabs-user")

    results = await asyncio.gather(
        manager.deduct("tabs-user", "v0"),
        manager.deduct("tabs-user", "v0"),
    )
    outcomes = sorted(result.outcome.value for result in results)
    balance = await manager.get_balance("tabs-user")

    assert outcomes == ["charged", "insufficient_credits"]
    assert balance.used_credits == 2
    assert balance.remaining_credits == 1


@pytest.mark.asyncio
async def test_used_never_exceeds_total_under_load(manager):
    await manager.get_balance("burst-user")
    await manager.add_credits("burst-user", 15)

    results = await asyncio.gather(*(manager.deduct("burst-user", "replit") for _ in range(20)))
    balance = await manager.get_balance("burst-user")

    assert sum(1 for result in results if result.success) == 12
    assert balance.used_credits == 24
    assert balance.used_credits <= balance.total_credits


@pytest.mark.asyncio
async def test_usage_log_failure_keeps_the_deduction(store, catalog, caplog):
    replayed = []
    manager = CreditsManager(store, catalog, free_tier_credits=10, usage_retry_hook=replayed.append)
    store.append_usage_event = AsyncMock(side_effect=StorageUnavailable(operation="append_usage_event"))

    with caplog.at_level(logging.WARNING, logger="services.credits"):
        result = await manager.deduct("audit-gap-user", "cursor", tokens_used=10)

    assert result.success is True
    assert result.usage_logged is False
    assert (await manager.get_balance("audit-gap-user")).used_credits == 3
    assert [event.id for event in replayed] == [result.usage_event_id]
    assert "credit_usage_reconciliation" in caplog.text


@pytest.mark.asyncio
async def test_storage_unavailable_propagates_instead_of_zero_balance(store, catalog):
    manager = CreditsManager(store, catalog)
    store.get_balance_row = AsyncMock(side_effect=StorageUnavailable(operation="get_balance_row"))

    with pytest.raises(StorageUnavailable):
        await manager.get_balance("offline-user")
    with pytest.raises(StorageUnavailable):
        await manager.deduct("offline-user", "claude")


@pytest.mark.asyncio
async def test_add_credits_creates_row_and_rejects_non_positive(manager):
    snapshot = await manager.add_credits("gift-user", 25, purchase_reference="promo")
    assert snapshot.total_credits == 35

    with pytest.raises(ValueError):
        await manager.add_credits("gift-user", 0)


@pytest.mark.asyncio
async def test_complete_purchase_is_idempotent(manager):
    purchase_id = await manager.record_purchase(
        "buyer", "professional", 500, Decimal("29.99"), "USD", "cs_test_dup"
    )

    first = await manager.complete_purchase(purchase_id)
    second = await manager.complete_purchase(purchase_id)
    balance = await manager.get_balance("buyer")

    assert first.outcome == PurchaseOutcome.COMPLETED
    assert first.purchase.status == PURCHASE_COMPLETED
    assert second.outcome == PurchaseOutcome.ALREADY_FINALIZED
    assert second.to_dict()["duplicate"] is True
    assert balance.total_credits == 510


@pytest.mark.asyncio
async def test_concurrent_duplicate_completions_grant_once(manager):
    purchase_id = await manager.record_purchase("race-buyer", "starter", 100, Decimal("9.99"), "USD", None)

    results = await asyncio.gather(*(manager.complete_purchase(purchase_id) for _ in range(4)))
    balance = await manager.get_balance("race-buyer")

    assert sum(1 for result in results if result.outcome == PurchaseOutcome.COMPLETED) == 1
    assert balance.total_credits == 110


@pytest.mark.asyncio
async def test_complete_unknown_purchase_is_not_found(manager):
    result = await manager.complete_purchase("does-not-exist")
    assert result.outcome == PurchaseOutcome.NOT_FOUND
    assert result.success is False


@pytest.mark.asyncio
async def test_purchase_grants_snapshotted_credits_after_catalog_change(store):
    original = PlanCatalog(CREDIT_PLANS, MODEL_CREDIT_COSTS)
    plan = original.get_plan("professional")
    purchase_id = await CreditsManager(store, original).record_purchase(
        "snapshot-user", plan.id, plan.credits, plan.price, plan.currency, None
    )

    repriced = tuple(replace(p, credits=750) if p.id == "professional" else p for p in CREDIT_PLANS)
    manager = CreditsManager(store, PlanCatalog(repriced, MODEL_CREDIT_COSTS))
    result = await manager.complete_purchase(purchase_id)

    assert result.purchase.credits == 500
    assert result.balance.total_credits == 510


@pytest.mark.asyncio
async def test_failed_purchase_cannot_be_completed(manager):
    purchase_id = await manager.record_purchase("declined-user", "starter", 100, Decimal("9.99"), "USD", None)

    failed = await manager.fail_purchase(purchase_id, reason="card_declined")
    completed = await manager.complete_purchase(purchase_id)

    assert failed.outcome == PurchaseOutcome.FAILED
    assert completed.outcome == PurchaseOutcome.ALREADY_FINALIZED
    assert (await manager.get_balance("declined-user")).total_credits == 10


class _FakeGateway:
    provider_name = "stripe"
    enabled = True

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def ensure_enabled(self):
        return None

    async def create_checkout(self, *, purchase_id, user_id, plan):
        self.calls.append((purchase_id, user_id, plan.id))
        if self.error:
            raise self.error
        return CheckoutSession(
            provider="stripe",
            payment_reference=f"cs_test_{purchase_id[:8]}",
            redirect_url="https://checkout.stripe.test/session",
        )


@pytest.mark.asyncio
async def test_start_checkout_records_pending_purchase_with_reference(manager):
    gateway = _FakeGateway()
    result = await manager.start_checkout("checkout-user", "enterprise", gateway)

    assert result.outcome == PurchaseOutcome.RECORDED
    assert result.purchase.status == PURCHASE_PENDING
    assert result.purchase.credits == 2000
    assert result.purchase.amount_minor == 9999
    assert result.purchase.payment_reference == result.checkout.payment_reference
    assert gateway.calls == [(result.purchase.id, "checkout-user", "enterprise")]


@pytest.mark.asyncio
async def test_start_checkout_unknown_plan(manager):
    gateway = _FakeGateway()
    result = await manager.start_checkout("checkout-user", "platinum", gateway)

    assert result.outcome == PurchaseOutcome.PLAN_NOT_FOUND
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_start_checkout_gateway_error_fails_the_purchase(manager):
    gateway = _FakeGateway(error=PaymentGatewayError("boom", provider="stripe"))

    with pytest.raises(PaymentGatewayError):
        await manager.start_checkout("gateway-down-user", "starter", gateway)

    purchases = await manager.get_purchase_history("gateway-down-user")
    assert [purchase.status for purchase in purchases] == [PURCHASE_FAILED]
    assert purchases[0].failure_reason == "checkout_creation_failed"


@pytest.mark.asyncio
async def test_start_checkout_malformed_gateway_response_fails_the_purchase(manager):
    gateway = _FakeGateway(error=AttributeError("get"))

    with pytest.raises(AttributeError):
        await manager.start_checkout("malformed-user", "starter", gateway)

    purchases = await manager.get_purchase_history("malformed-user")
    assert [purchase.status for purchase in purchases] == [PURCHASE_FAILED]
    assert purchases[0].failure_reason == "checkout_creation_failed"


@pytest.mark.asyncio
async def test_gateway_notification_completes_by_reference(manager):
    result = await manager.start_checkout("notify-user", "starter", _FakeGateway())
    notification = GatewayNotification(
        provider="stripe",
        verdict="completed",
        purchase_id=None,
        payment_reference=result.checkout.payment_reference,
        amount_minor=999,
        currency="USD",
    )

    applied = await manager.apply_gateway_notification(notification)
    duplicate = await manager.apply_gateway_notification(notification)

    assert applied.outcome == PurchaseOutcome.COMPLETED
    assert duplicate.outcome == PurchaseOutcome.ALREADY_FINALIZED
    assert (await manager.get_balance("notify-user")).total_credits == 110


@pytest.mark.asyncio
async def test_gateway_notification_amount_mismatch_fails_purchase(manager):
    result = await manager.start_checkout("tamper-user", "enterprise", _FakeGateway())
    notification = GatewayNotification(
        provider="stripe",
        verdict="completed",
        purchase_id=result.purchase.id,
        payment_reference=result.checkout.payment_reference,
        amount_minor=100,
        currency="USD",
    )

    applied = await manager.apply_gateway_notification(notification)

    assert applied.outcome == PurchaseOutcome.FAILED
    assert applied.purchase.failure_reason == "amount_mismatch"
    assert (await manager.get_balance("tamper-user")).total_credits == 10


@pytest.mark.asyncio
async def test_gateway_notification_from_wrong_provider_is_ignored(manager):
    result = await manager.start_checkout("provider-user", "starter", _FakeGateway())
    notification = GatewayNotification(
        provider="payhere",
        verdict="completed",
        purchase_id=result.purchase.id,
        payment_reference=result.purchase.id,
    )

    applied = await manager.apply_gateway_notification(notification)
    assert applied.outcome == PurchaseOutcome.PROVIDER_MISMATCH
    assert applied.purchase.status == PURCHASE_PENDING
    assert (await manager.get_balance("provider-user")).total_credits == 10


@pytest.mark.asyncio
async def test_payment_after_expiry_is_flagged_for_reconciliation(manager, store, caplog):
    result = await manager.start_checkout("late-payer", "starter", _FakeGateway())
    store.list_stale_pending_purchases = AsyncMock(return_value=[await store.get_purchase(result.purchase.id)])
    assert await manager.expire_stale_purchases(60) == 1

    notification = GatewayNotification(
        provider="stripe",
        verdict="completed",
        purchase_id=result.purchase.id,
        payment_reference=result.checkout.payment_reference,
        amount_minor=999,
        currency="USD",
    )
    with caplog.at_level(logging.WARNING, logger="services.credits"):
        applied = await manager.apply_gateway_notification(notification)

    assert applied.outcome == PurchaseOutcome.ALREADY_FINALIZED
    assert applied.purchase.status == PURCHASE_FAILED
    assert "credit_purchase_reconciliation" in caplog.text
    assert result.purchase.id in caplog.text
    assert result.checkout.payment_reference in caplog.text
    assert (await manager.get_balance("late-payer")).total_credits == 10


@pytest.mark.asyncio
async def test_duplicate_completion_is_not_flagged_for_reconciliation(manager, caplog):
    purchase_id = await manager.record_purchase("repeat-payer", "starter", 100, Decimal("9.99"), "USD", None)
    await manager.complete_purchase(purchase_id)

    with caplog.at_level(logging.WARNING, logger="services.credits"):
        again = await manager.complete_purchase(purchase_id, payment_reference="cs_repeat")

    assert again.outcome == PurchaseOutcome.ALREADY_FINALIZED
    assert "credit_purchase_reconciliation" not in caplog.text


@pytest.mark.asyncio
async def test_expire_stale_purchases_only_touches_old_pending(manager, store):
    purchase_id = await manager.record_purchase("abandon-user", "starter", 100, Decimal("9.99"), "USD", None)

    assert await manager.expire_stale_purchases(60) == 0
    assert (await store.get_purchase(purchase_id)).status == PURCHASE_PENDING

    store.list_stale_pending_purchases = AsyncMock(return_value=[await store.get_purchase(purchase_id)])
    assert await manager.expire_stale_purchases(60) == 1
    purchase = await store.get_purchase(purchase_id)
    assert purchase.status == PURCHASE_FAILED
    assert purchase.failure_reason == "checkout_timeout"


@pytest.mark.asyncio
async def test_history_limits_are_clamped(store, catalog):
    manager = CreditsManager(store, catalog, history_default_limit=2, history_max_limit=3)
    for _ in range(5):
        await manager.deduct("limit-user", "llama")

    assert len(await manager.get_usage_history("limit-user")) == 2
    assert len(await manager.get_usage_history("limit-user", 100)) == 3
    assert len(await manager.get_usage_history("limit-user", 0)) == 1


@pytest.mark.asyncio
async def test_credit_summary_includes_costs_and_history(manager):
    await manager.deduct("summary-user", "bolt")
    summary = await manager.get_credit_summary("summary-user")

    assert summary["credits"]["remaining_credits"] == 8
    assert summary["model_costs"]["bolt"] == 2
    assert summary["free_tier_credits"] == 10
    assert len(summary["history"]) == 1
    assert summary["purchases"] == []
