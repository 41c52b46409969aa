"""SQLAlchemy-backed credit ledger store.

Every balance or purchase-status change is a single conditional UPDATE
evaluated by the database, so correctness holds across any number of API
processes without application-level locks:

* deductions only apply while ``used_credits + n <= total_credits``;
* purchase transitions only apply while the row is still in the expected
  status, which turns duplicate webhook deliveries into no-ops.

Each public method runs in its own short transaction bounded by
``LEDGER_OPERATION_TIMEOUT_SECONDS``. Connectivity problems and timeouts
are raised as :class:`StorageUnavailable`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.credit_balance import CreditBalance
from models.credit_purchase import PURCHASE_COMPLETED, PURCHASE_PENDING, CreditPurchase
from models.credit_usage_event import CreditUsageEvent
from services.billing_errors import BillingError, LedgerConflict, StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class DeductStatus(str, Enum):
    APPLIED = "applied"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_FOUND = "not_found"


class TransitionStatus(str, Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    WRONG_STATE = "wrong_state"


@dataclass(frozen=True)
class BalanceSnapshot:
    user_id: str
    total_credits: int
    used_credits: int
    updated_at: Optional[datetime]

    @property
    def remaining_credits(self) -> int:
        return self.total_credits - self.used_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_credits": self.total_credits,
            "used_credits": self.used_credits,
            "remaining_credits": self.remaining_credits,
            "last_updated": _isoformat(self.updated_at),
        }


@dataclass(frozen=True)
class UsageEventRecord:
    id: str
    user_id: str
    model_id: str
    credits_used: int
    tokens_used: int
    request_type: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "model_id": self.model_id,
            "credits_used": self.credits_used,
            "tokens_used": self.tokens_used,
            "request_type": self.request_type,
            "created_at": _isoformat(self.created_at),
        }


@dataclass(frozen=True)
class PurchaseRecord:
    id: str
    user_id: str
    plan_id: str
    credits: int
    amount_minor: int
    currency: str
    provider: str
    payment_reference: Optional[str]
    status: str
    created_at: datetime
    failure_reason: Optional[str] = None
    finalized_at: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_minor) / 100).quantize(Decimal("0.01"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "credits": self.credits,
            "amount": str(self.amount),
            "currency": self.currency,
            "provider": self.provider,
            "payment_reference": self.payment_reference,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "created_at": _isoformat(self.created_at),
            "finalized_at": _isoformat(self.finalized_at),
        }


@dataclass(frozen=True)
class DeductResult:
    status: DeductStatus
    balance: Optional[BalanceSnapshot]


@dataclass(frozen=True)
class TransitionResult:
    status: TransitionStatus
    purchase: Optional[PurchaseRecord]
    balance: Optional[BalanceSnapshot] = None


_BALANCE_COLUMNS = (
    CreditBalance.user_id,
    CreditBalance.total_credits,
    CreditBalance.used_credits,
    CreditBalance.updated_at,
)


def _balance_from_row(row: Any) -> BalanceSnapshot:
    return BalanceSnapshot(
        user_id=row.user_id,
        total_credits=int(row.total_credits),
        used_credits=int(row.used_credits),
        updated_at=row.updated_at,
    )


def _usage_from_model(row: CreditUsageEvent) -> UsageEventRecord:
    return UsageEventRecord(
        id=row.id,
        user_id=row.user_id,
        model_id=row.model_id,
        credits_used=int(row.credits_used),
        tokens_used=int(row.tokens_used or 0),
        request_type=row.request_type,
        created_at=row.created_at,
    )


def _purchase_from_model(row: CreditPurchase) -> PurchaseRecord:
    return PurchaseRecord(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        credits=int(row.credits),
        amount_minor=int(row.amount_minor),
        currency=row.currency,
        provider=row.provider,
        payment_reference=row.payment_reference,
        status=row.status,
        created_at=row.created_at,
        failure_reason=row.failure_reason,
        finalized_at=row.finalized_at,
    )


class LedgerStore:
    """Durable balances, usage events and purchases behind atomic primitives."""

    def __init__(self, session_factory: async_sessionmaker, timeout_seconds: float = 5.0) -> None:
        self._session_factory = session_factory
        self.timeout_seconds = max(float(timeout_seconds), 0.1)

    async def _run(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _in_session() -> T:
            async with self._session_factory() as session:
                return await work(session)

        try:
            return await asyncio.wait_for(_in_session(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("Ledger operation %s timed out after %.1fs", operation, self.timeout_seconds)
            raise StorageUnavailable(operation=operation) from exc
        except IntegrityError as exc:
            logger.warning("Ledger operation %s hit an integrity conflict: %s", operation, exc)
            raise LedgerConflict(operation) from exc
        except (OperationalError, InterfaceError, DBAPIError, OSError) as exc:
            logger.warning("Ledger operation %s failed: %s", operation, exc)
            raise StorageUnavailable(operation=operation) from exc

    @staticmethod
    async def _select_balance(session: AsyncSession, user_id: str) -> Optional[BalanceSnapshot]:
        result = await session.execute(select(*_BALANCE_COLUMNS).where(CreditBalance.user_id == user_id))
        row = result.one_or_none()
        return _balance_from_row(row) if row is not None else None

    @staticmethod
    async def _select_purchase(session: AsyncSession, purchase_id: str) -> Optional[PurchaseRecord]:
        result = await session.execute(
            select(CreditPurchase)
            .where(CreditPurchase.id == purchase_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _purchase_from_model(row) if row is not None else None

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance_row(self, user_id: str) -> Optional[BalanceSnapshot]:
        return await self._run("get_balance_row", lambda session: self._select_balance(session, user_id))

    async def insert_balance_if_absent(self, user_id: str, initial_credits: int) -> Tuple[BalanceSnapshot, bool]:
        """Create the balance row unless another writer already did.

        Returns the stored row and whether this call created it.
        """

        async def _work(session: AsyncSession) -> Tuple[BalanceSnapshot, bool]:
            now = _utcnow()
            session.add(
                CreditBalance(
                    user_id=user_id,
                    total_credits=max(int(initial_credits), 0),
                    used_credits=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
                created = True
            except IntegrityError:
                await session.rollback()
                created = False
            snapshot = await self._select_balance(session, user_id)
            if snapshot is None:
                raise BillingError(
                    message="Balance row vanished after insert-if-absent",
                    code="BALANCE_ROW_MISSING",
                    details={"user_id": user_id},
                )
            return snapshot, created

        return await self._run("insert_balance_if_absent", _work)

    async def atomic_deduct(self, user_id: str, amount: int) -> DeductResult:
        amount = int(amount)
        if amount <= 0:
            raise ValueError("Deduction amount must be positive")

        async def _work(session: AsyncSession) -> DeductResult:
            result = await session.execute(
                update(CreditBalance)
                .where(
                    CreditBalance.user_id == user_id,
                    CreditBalance.used_credits + amount <= CreditBalance.total_credits,
                )
                .values(used_credits=CreditBalance.used_credits + amount, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                snapshot = await self._select_balance(session, user_id)
                await session.commit()
                return DeductResult(DeductStatus.APPLIED, snapshot)

            await session.rollback()
            snapshot = await self._select_balance(session, user_id)
            if snapshot is None:
                return DeductResult(DeductStatus.NOT_FOUND, None)
            return DeductResult(DeductStatus.INSUFFICIENT_FUNDS, snapshot)

        return await self._run("atomic_deduct", _work)

    async def atomic_top_up(self, user_id: str, amount: int) -> Optional[BalanceSnapshot]:
        """Increase total credits. Returns None when the user has no balance row."""
        amount = int(amount)
        if amount <= 0:
            raise ValueError("Top-up amount must be positive")

        async def _work(session: AsyncSession) -> Optional[BalanceSnapshot]:
            result = await session.execute(
                update(CreditBalance)
                .where(CreditBalance.user_id == user_id)
                .values(total_credits=CreditBalance.total_credits + amount, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            snapshot = await self._select_balance(session, user_id)
            await session.commit()
            return snapshot

        return await self._run("atomic_top_up", _work)

    # ------------------------------------------------------------------
    # Usage events
    # ------------------------------------------------------------------

    async def append_usage_event(self, event: UsageEventRecord) -> UsageEventRecord:
        """Append a usage event. Re-appending an existing id returns the stored row."""

        async def _work(session: AsyncSession) -> UsageEventRecord:
            session.add(
                CreditUsageEvent(
                    id=event.id,
                    user_id=event.user_id,
                    model_id=event.model_id,
                    credits_used=event.credits_used,
                    tokens_used=event.tokens_used,
                    request_type=event.request_type,
                    created_at=event.created_at,
                )
            )
            try:
                await session.commit()
                return event
            except IntegrityError as exc:
                await session.rollback()
                conflict = exc
            existing = await session.get(CreditUsageEvent, event.id)
            if existing is None:
                raise conflict
            return _usage_from_model(existing)

        return await self._run("append_usage_event", _work)

    async def get_usage_history(self, user_id: str, limit: int) -> List[UsageEventRecord]:
        async def _work(session: AsyncSession) -> List[UsageEventRecord]:
            result = await session.execute(
                select(CreditUsageEvent)
                .where(CreditUsageEvent.user_id == user_id)
                .order_by(CreditUsageEvent.created_at.desc())
                .limit(max(int(limit), 1))
            )
            return [_usage_from_model(row) for row in result.scalars().all()]

        return await self._run("get_usage_history", _work)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def insert_purchase(self, purchase: PurchaseRecord) -> PurchaseRecord:
        async def _work(session: AsyncSession) -> PurchaseRecord:
            row = CreditPurchase(
                id=purchase.id,
                user_id=purchase.user_id,
                plan_id=purchase.plan_id,
                credits=purchase.credits,
                amount_minor=purchase.amount_minor,
                currency=purchase.currency,
                provider=purchase.provider,
                payment_reference=purchase.payment_reference,
                status=purchase.status,
                created_at=purchase.created_at,
            )
            session.add(row)
            await session.commit()
            return _purchase_from_model(row)

        return await self._run("insert_purchase", _work)

    async def attach_payment_reference(self, purchase_id: str, payment_reference: str) -> bool:
        """Record the gateway reference once; later calls never overwrite it."""

        async def _work(session: AsyncSession) -> bool:
            result = await session.execute(
                update(CreditPurchase)
                .where(CreditPurchase.id == purchase_id, CreditPurchase.payment_reference.is_(None))
                .values(payment_reference=payment_reference)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

        return await self._run("attach_payment_reference", _work)

    async def get_purchase(self, purchase_id: str) -> Optional[PurchaseRecord]:
        return await self._run("get_purchase", lambda session: self._select_purchase(session, purchase_id))

    async def find_purchase_by_reference(self, provider: str, payment_reference: str) -> Optional[PurchaseRecord]:
        async def _work(session: AsyncSession) -> Optional[PurchaseRecord]:
            result = await session.execute(
                select(CreditPurchase)
                .where(
                    CreditPurchase.provider == provider,
                    CreditPurchase.payment_reference == payment_reference,
                )
                .order_by(CreditPurchase.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _purchase_from_model(row) if row is not None else None

        return await self._run("find_purchase_by_reference", _work)

    async def get_purchase_history(self, user_id: str, limit: int) -> List[PurchaseRecord]:
        async def _work(session: AsyncSession) -> List[PurchaseRecord]:
            result = await session.execute(
                select(CreditPurchase)
                .where(CreditPurchase.user_id == user_id)
                .order_by(CreditPurchase.created_at.desc())
                .limit(max(int(limit), 1))
            )
            return [_purchase_from_model(row) for row in result.scalars().all()]

        return await self._run("get_purchase_history", _work)

    async def list_stale_pending_purchases(self, older_than: datetime, limit: int = 500) -> List[PurchaseRecord]:
        async def _work(session: AsyncSession) -> List[PurchaseRecord]:
            result = await session.execute(
                select(CreditPurchase)
                .where(
                    CreditPurchase.status == PURCHASE_PENDING,
                    CreditPurchase.created_at < older_than,
                )
                .order_by(CreditPurchase.created_at.asc())
                .limit(max(int(limit), 1))
            )
            return [_purchase_from_model(row) for row in result.scalars().all()]

        return await self._run("list_stale_pending_purchases", _work)

    @staticmethod
    async def _transition(
        session: AsyncSession,
        purchase_id: str,
        from_status: str,
        to_status: str,
        failure_reason: Optional[str],
    ) -> bool:
        values: Dict[str, Any] = {"status": to_status, "finalized_at": _utcnow()}
        if failure_reason is not None:
            values["failure_reason"] = failure_reason[:500]
        result = await session.execute(
            update(CreditPurchase)
            .where(CreditPurchase.id == purchase_id, CreditPurchase.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _transition_miss(self, session: AsyncSession, purchase_id: str) -> TransitionResult:
        await session.rollback()
        current = await self._select_purchase(session, purchase_id)
        if current is None:
            return TransitionResult(TransitionStatus.NOT_FOUND, None)
        return TransitionResult(TransitionStatus.WRONG_STATE, current)

    async def atomic_transition_purchase(
        self,
        purchase_id: str,
        from_status: str,
        to_status: str,
        failure_reason: Optional[str] = None,
    ) -> TransitionResult:
        async def _work(session: AsyncSession) -> TransitionResult:
            if not await self._transition(session, purchase_id, from_status, to_status, failure_reason):
                return await self._transition_miss(session, purchase_id)
            purchase = await self._select_purchase(session, purchase_id)
            await session.commit()
            return TransitionResult(TransitionStatus.APPLIED, purchase)

        return await self._run("atomic_transition_purchase", _work)

    async def complete_purchase_with_top_up(self, purchase_id: str) -> TransitionResult:
        """Mark a pending purchase completed and grant its credits in one transaction.

        The purchaser's balance row must already exist.
        """

        async def _work(session: AsyncSession) -> TransitionResult:
            if not await self._transition(session, purchase_id, PURCHASE_PENDING, PURCHASE_COMPLETED, None):
                return await self._transition_miss(session, purchase_id)

            purchase = await self._select_purchase(session, purchase_id)
            top_up = await session.execute(
                update(CreditBalance)
                .where(CreditBalance.user_id == purchase.user_id)
                .values(total_credits=CreditBalance.total_credits + purchase.credits, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if top_up.rowcount != 1:
                await session.rollback()
                raise BillingError(
                    message="Cannot complete purchase without a balance row",
                    code="BALANCE_ROW_MISSING",
                    details={"purchase_id": purchase_id, "user_id": purchase.user_id},
                )
            balance = await self._select_balance(session, purchase.user_id)
            await session.commit()
            return TransitionResult(TransitionStatus.APPLIED, purchase, balance)

        return await self._run("complete_purchase_with_top_up", _work)
