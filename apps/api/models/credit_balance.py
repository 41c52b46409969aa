"""CreditBalance model: one mutable balance row per user."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Per-user credit totals. Remaining credits are always derived, never stored."""

    __tablename__ = "credit_balances"

    user_id = Column(String, primary_key=True)
    total_credits = Column(Integer, nullable=False, default=0)
    used_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("total_credits >= 0", name="ck_credit_balances_total_non_negative"),
        CheckConstraint("used_credits >= 0", name="ck_credit_balances_used_non_negative"),
        CheckConstraint("used_credits <= total_credits", name="ck_credit_balances_used_within_total"),
    )

    @property
    def remaining_credits(self) -> int:
        return int(self.total_credits or 0) - int(self.used_credits or 0)
