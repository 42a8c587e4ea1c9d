"""create order and payment tables

Revision ID: 7c3e91a4b2d0
Revises:
Create Date: 2026-10-18 09:12:41.503118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '7c3e91a4b2d0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    # collaborator tables, owned by the auth and catalogue services
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("first_name", sa.String(), nullable=False),
        sa.Column("last_name", sa.String(), nullable=False, server_default=""),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("can_login", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "book",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("author", sa.String(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("is_ebook", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_number", sa.String(length=50), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("book.id", ondelete="SET NULL"), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(length=50), nullable=False),
        sa.Column("gateway_transaction_ref", sa.String(length=255), nullable=True),
        sa.Column("payment_url", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("gateway_transaction_ref"),
        sa.UniqueConstraint("idempotency_key"),
        sa.CheckConstraint("amount > 0", name="ck_orders_amount_positive"),
        sa.CheckConstraint("expires_at > created_at", name="ck_orders_expiry_after_creation"),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_book_id", "orders", ["book_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_expires_at", "orders", ["expires_at"])

    op.create_table(
        "user_purchases",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), nullable=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("book.id", ondelete="CASCADE"), nullable=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("purchased_at", sa.DateTime(), nullable=False),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_downloaded_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("user_id", "book_id", name="uq_user_purchases_user_book"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index("ix_user_purchases_user_id", "user_purchases", ["user_id"])
    op.create_index("ix_user_purchases_book_id", "user_purchases", ["book_id"])

    op.create_table(
        "payment_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("transaction_ref", sa.String(), nullable=True),
        sa.Column("payment_type", sa.String(), nullable=True),
        sa.Column("gross_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("transaction_status", sa.String(), nullable=False),
        sa.Column("fraud_status", sa.String(), nullable=True),
        sa.Column("webhook_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_payment_logs_order_id", "payment_logs", ["order_id"])
    op.create_index("ix_payment_logs_transaction_ref", "payment_logs", ["transaction_ref"])

    # dedup ledger
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("transaction_ref", sa.String(length=255), nullable=False),
        sa.Column("order_number", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("transaction_ref", "event_type", name="uq_webhook_events_txn_event"),
    )
    op.create_index("ix_webhook_events_transaction_ref", "webhook_events", ["transaction_ref"])
    op.create_index("ix_webhook_events_order_number", "webhook_events", ["order_number"])

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("gateway_refund_ref", sa.String(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("requested_by", sa.Integer(), sa.ForeignKey("user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("gateway_refund_ref"),
    )
    op.create_index("ix_refunds_order_id", "refunds", ["order_id"])
    op.create_index("ix_refunds_status", "refunds", ["status"])

    op.create_table(
        "rate_limit_buckets",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tokens", sa.Integer(), nullable=False),
        sa.Column("refilled_at", sa.DateTime(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "order_audit_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=False, server_default="system"),
    )

    # indexes for fast timeline queries
    op.create_index("ix_order_audit_log_order_id", "order_audit_log", ["order_id"])
    op.create_index("ix_order_audit_log_action", "order_audit_log", ["action"])


def downgrade():
    op.drop_index("ix_order_audit_log_action", table_name="order_audit_log")
    op.drop_index("ix_order_audit_log_order_id", table_name="order_audit_log")
    op.drop_table("order_audit_log")
    op.drop_table("rate_limit_buckets")
    op.drop_index("ix_refunds_status", table_name="refunds")
    op.drop_index("ix_refunds_order_id", table_name="refunds")
    op.drop_table("refunds")
    op.drop_index("ix_webhook_events_order_number", table_name="webhook_events")
    op.drop_index("ix_webhook_events_transaction_ref", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_payment_logs_transaction_ref", table_name="payment_logs")
    op.drop_index("ix_payment_logs_order_id", table_name="payment_logs")
    op.drop_table("payment_logs")
    op.drop_index("ix_user_purchases_book_id", table_name="user_purchases")
    op.drop_index("ix_user_purchases_user_id", table_name="user_purchases")
    op.drop_table("user_purchases")
    op.drop_index("ix_orders_expires_at", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_book_id", table_name="orders")
    op.drop_index("ix_orders_user_id", table_name="orders")
    op.drop_index("ix_orders_order_number", table_name="orders")
    op.drop_table("orders")
    op.drop_table("book")
    op.drop_table("user")
