"""CreditUsageEvent model: append-only log of deductions."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditUsageEvent(Base):
    """Immutable record of one charged AI-model invocation."""

    __tablename__ = "credit_usage_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    model_id = Column(String, nullable=False)
    credits_used = Column(Integer, nullable=False)
    tokens_used = Column(Integer, nullable=False, default=0)
    request_type = Column(String, nullable=False, default="chat")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        Index("ix_credit_usage_events_user_created", "user_id", "created_at"),
    )
