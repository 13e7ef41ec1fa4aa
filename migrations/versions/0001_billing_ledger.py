"""billing ledger

Revision ID: 0001_billing_ledger
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_billing_ledger"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("plan", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("total_transformations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_trials_remaining", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_transformations >= 0", name="ck_users_total_transformations"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"])

    op.create_table(
        "subscription_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("plan", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price_id", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("interval", sa.String(length=8), nullable=False, server_default="month"),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("metadata", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("stripe_subscription_id", name="uq_subscription_records_stripe_subscription_id"),
        sa.CheckConstraint("amount >= 0", name="ck_subscription_records_amount"),
        sa.CheckConstraint("interval_count >= 1", name="ck_subscription_records_interval_count"),
        sa.CheckConstraint("quantity >= 1", name="ck_subscription_records_quantity"),
    )
    op.create_index("ix_subscription_records_user_id", "subscription_records", ["user_id"])
    op.create_index("ix_subscription_records_stripe_customer_id", "subscription_records", ["stripe_customer_id"])
    op.create_index("ix_subscription_records_plan", "subscription_records", ["plan"])
    op.create_index("ix_subscription_records_status", "subscription_records", ["status"])
    op.create_index("ix_subscription_records_price_id", "subscription_records", ["price_id"])
    op.create_index("ix_subscription_records_created_at", "subscription_records", ["created_at"])
    op.create_index("ix_subscription_records_user_status", "subscription_records", ["user_id", "status", "created_at"])
    op.create_index("ix_subscription_records_plan_status", "subscription_records", ["plan", "status"])

    op.create_table(
        "payment_info",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("payment_key", sa.String(length=300), nullable=False),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("invoice_id", sa.String(length=255), nullable=True),
        sa.Column("charge_id", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("payment_method_type", sa.String(length=32), nullable=True),
        sa.Column("card_brand", sa.String(length=32), nullable=True),
        sa.Column("card_last4", sa.String(length=4), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column("card_country", sa.String(length=8), nullable=True),
        sa.Column("billing_details", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("receipt_url", sa.Text(), nullable=True),
        sa.Column("refunded_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_reason", sa.String(length=64), nullable=True),
        sa.Column("failure_code", sa.String(length=64), nullable=True),
        sa.Column("failure_message", sa.Text(), nullable=True),
        sa.Column("metadata", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("payment_key", name="uq_payment_info_payment_key"),
        sa.CheckConstraint("amount >= 0", name="ck_payment_info_amount"),
        sa.CheckConstraint("refunded_amount >= 0", name="ck_payment_info_refunded_nonneg"),
        sa.CheckConstraint("refunded_amount <= amount", name="ck_payment_info_refunded_le_amount"),
    )
    op.create_index("ix_payment_info_user_id", "payment_info", ["user_id"])
    op.create_index("ix_payment_info_payment_intent_id", "payment_info", ["payment_intent_id"])
    op.create_index("ix_payment_info_subscription_id", "payment_info", ["subscription_id"])
    op.create_index("ix_payment_info_invoice_id", "payment_info", ["invoice_id"])
    op.create_index("ix_payment_info_charge_id", "payment_info", ["charge_id"])
    op.create_index("ix_payment_info_status", "payment_info", ["status"])
    op.create_index("ix_payment_info_created_at", "payment_info", ["created_at"])
    op.create_index("ix_payment_info_user_status", "payment_info", ["user_id", "status", "created_at"])

    op.create_table(
        "subscription_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("subscription_id", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("from_plan", sa.String(length=32), nullable=True),
        sa.Column("to_plan", sa.String(length=32), nullable=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_event_type", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="success"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", _jsonb(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("stripe_event_id", name="uq_subscription_logs_stripe_event_id"),
    )
    op.create_index("ix_subscription_logs_user_id", "subscription_logs", ["user_id"])
    op.create_index("ix_subscription_logs_subscription_id", "subscription_logs", ["subscription_id"])
    op.create_index("ix_subscription_logs_action", "subscription_logs", ["action"])
    op.create_index("ix_subscription_logs_status", "subscription_logs", ["status"])
    op.create_index("ix_subscription_logs_created_at", "subscription_logs", ["created_at"])
    op.create_index("ix_subscription_logs_user_action", "subscription_logs", ["user_id", "action", "created_at"])


def downgrade() -> None:
    op.drop_table("subscription_logs")
    op.drop_table("payment_info")
    op.drop_table("subscription_records")
    op.drop_index("ix_users_stripe_customer_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
