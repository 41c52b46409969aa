"""credit balances, usage events and purchases

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "credit_balances",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("total_credits", sa.Integer(), nullable=False),
        sa.Column("used_credits", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("total_credits >= 0", name="ck_credit_balances_total_non_negative"),
        sa.CheckConstraint("used_credits >= 0", name="ck_credit_balances_used_non_negative"),
        sa.CheckConstraint("used_credits <= total_credits", name="ck_credit_balances_used_within_total"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_usage_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False),
        sa.Column("request_type", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_usage_events_user_id", "credit_usage_events", ["user_id"], unique=False)
    op.create_index("ix_credit_usage_events_created_at", "credit_usage_events", ["created_at"], unique=False)
    op.create_index(
        "ix_credit_usage_events_user_created",
        "credit_usage_events",
        ["user_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "credit_purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits > 0", name="ck_credit_purchases_credits_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_credit_purchases_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_purchases_user_id", "credit_purchases", ["user_id"], unique=False)
    op.create_index("ix_credit_purchases_payment_reference", "credit_purchases", ["payment_reference"], unique=False)
    op.create_index("ix_credit_purchases_status", "credit_purchases", ["status"], unique=False)
    op.create_index("ix_credit_purchases_created_at", "credit_purchases", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_credit_purchases_created_at", table_name="credit_purchases")
    op.drop_index("ix_credit_purchases_status", table_name="credit_purchases")
    op.drop_index("ix_credit_purchases_payment_reference", table_name="credit_purchases")
    op.drop_index("ix_credit_purchases_user_id", table_name="credit_purchases")
    op.drop_table("credit_purchases")

    op.drop_index("ix_credit_usage_events_user_created", table_name="credit_usage_events")
    op.drop_index("ix_credit_usage_events_created_at", table_name="credit_usage_events")
    op.drop_index("ix_credit_usage_events_user_id", table_name="credit_usage_events")
    op.drop_table("credit_usage_events")

    op.drop_table("credit_balances")
