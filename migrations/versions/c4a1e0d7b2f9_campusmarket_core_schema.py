"""campusmarket core schema

Revision ID: c4a1e0d7b2f9
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "c4a1e0d7b2f9"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _create_users(bind):
    if _table_exists(bind, "users"):
        return
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
        sa.Column("available_balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("pending_balance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("hostel_name", sa.String(length=120), nullable=True),
        sa.Column("room_number", sa.String(length=32), nullable=True),
        sa.Column("landmark", sa.String(length=160), nullable=True),
        sa.Column("completed_deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("penalty_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warning_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_warning_at", sa.DateTime(), nullable=True),
        sa.Column("is_suspended", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("suspended_until", sa.DateTime(), nullable=True),
        sa.Column("suspension_reason", sa.String(length=240), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_phone", "users", ["phone"], unique=True)


def _create_products(bind):
    if _table_exists(bind, "products"):
        return
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])


def _create_orders(bind):
    if _table_exists(bind, "orders"):
        return
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=120), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("rider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("product_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("delivery_fee", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("platform_commission", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
        sa.Column("is_disputed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("order_note", sa.Text(), nullable=True),
        sa.Column("delivery_hostel", sa.String(length=120), nullable=True),
        sa.Column("delivery_room", sa.String(length=32), nullable=True),
        sa.Column("delivery_phone", sa.String(length=32), nullable=True),
        sa.Column("delivery_landmark", sa.String(length=160), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("rider_assigned_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    for col in ("payment_id", "buyer_id", "seller_id", "rider_id", "status", "is_disputed"):
        op.create_index(f"ix_orders_{col}", "orders", [col])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("name", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("unit_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("note", sa.String(length=500), nullable=True),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product_id", "order_items", ["product_id"])

    op.create_table(
        "order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("from_status", sa.String(length=24), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=24), nullable=False),
        sa.Column("actor_role", sa.String(length=16), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
    )
    op.create_index("ix_order_transitions_order_id", "order_transitions", ["order_id"])


def _create_transactions(bind):
    if _table_exists(bind, "transactions"):
        return
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("balance_field", sa.String(length=16), nullable=False, server_default="available"),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.String(length=400), nullable=False, server_default=""),
        sa.Column("reference", sa.String(length=160), nullable=False),
        sa.Column("balance_before", sa.Float(), nullable=False, server_default="0"),
        sa.Column("balance_after", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "reference", name="uq_transactions_user_reference"),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_reference", "transactions", ["reference"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])


def _create_disputes(bind):
    if _table_exists(bind, "disputes"):
        return
    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("resolution_preference", sa.String(length=40), nullable=False, server_default="REFUND_WITH_PICKUP"),
        sa.Column("evidence_json", sa.Text(), nullable=True),
        sa.Column("pickup_address_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="OPEN"),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("admin_note", sa.Text(), nullable=True),
        sa.Column("pickup_stage", sa.String(length=24), nullable=False, server_default="NONE"),
        sa.Column("refund_released", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("rider_paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("refund_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_disputes_order_id", "disputes", ["order_id"], unique=True)
    op.create_index("ix_disputes_buyer_id", "disputes", ["buyer_id"])
    op.create_index("ix_disputes_seller_id", "disputes", ["seller_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])

    op.create_table(
        "dispute_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("attachments_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_dispute_messages_dispute_id", "dispute_messages", ["dispute_id"])
    op.create_index("ix_dispute_messages_created_at", "dispute_messages", ["created_at"])

    op.create_table(
        "penalties",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=True),
        sa.Column("action", sa.String(length=16), nullable=False, server_default="WARNING"),
        sa.Column("reason", sa.String(length=400), nullable=False, server_default=""),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issued_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_penalties_user_id", "penalties", ["user_id"])
    op.create_index("ix_penalties_dispute_id", "penalties", ["dispute_id"])


def _create_support_tables(bind):
    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("kind", sa.String(length=32), nullable=False, server_default="GENERAL"),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("dispute_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
        op.create_index("ix_notifications_order_id", "notifications", ["order_id"])
        op.create_index("ix_notifications_dispute_id", "notifications", ["dispute_id"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"])
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"])
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"])
        op.create_index("ix_platform_events_subject_type", "platform_events", ["subject_type"])
        op.create_index("ix_platform_events_subject_id", "platform_events", ["subject_id"])
        op.create_index("ix_platform_events_idempotency_key", "platform_events", ["idempotency_key"], unique=True)

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tolerance", sa.Float(), nullable=False, server_default="0.01"),
            sa.Column("total_drift", sa.Float(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"])


def upgrade():
    bind = op.get_bind()
    _create_users(bind)
    _create_products(bind)
    _create_orders(bind)
    _create_transactions(bind)
    _create_disputes(bind)
    _create_support_tables(bind)


def downgrade():
    for table in (
        "reconciliation_reports",
        "platform_events",
        "notifications",
        "penalties",
        "dispute_messages",
        "disputes",
        "transactions",
        "order_transitions",
        "order_items",
        "orders",
        "products",
        "users",
    ):
        op.drop_table(table)
