"""CreditPurchase model: one row per checkout attempt."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


PURCHASE_PENDING = "pending"
PURCHASE_COMPLETED = "completed"
PURCHASE_FAILED = "failed"
PURCHASE_STATUSES = (PURCHASE_PENDING, PURCHASE_COMPLETED, PURCHASE_FAILED)


class CreditPurchase(Base):
    """Credit bundle purchase tracked through pending -> completed|failed."""

    __tablename__ = "credit_purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    amount_minor = Column(Integer, nullable=False)  # minor currency units (e.g., cents)
    currency = Column(String(3), nullable=False)
    provider = Column(String, nullable=False)
    payment_reference = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=PURCHASE_PENDING, index=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_credit_purchases_credits_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_credit_purchases_status",
        ),
    )
