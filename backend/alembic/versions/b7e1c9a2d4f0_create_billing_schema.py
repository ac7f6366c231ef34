"""create_billing_schema

Revision ID: b7e1c9a2d4f0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'b7e1c9a2d4f0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_SUBSCRIPTION = "status IN ('active', 'pending_downgrade', 'paused')"
OPEN_REFUND = "status IN ('pending', 'approved')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Step 1: Users mirrored from the identity provider
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("role", sa.String(50), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Step 2: Plan catalog
    op.create_table(
        "pricing_plans",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("interval", sa.String(20), nullable=False),
        sa.Column("allow_downloads", sa.Boolean(), nullable=False),
        sa.Column("allow_offline", sa.Boolean(), nullable=False),
        sa.Column("includes_playlists", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("gateway_plan_id", sa.String(255), nullable=True, unique=True),
        *_timestamps(),
        sa.CheckConstraint("interval IN ('month', 'year', 'lifetime')", name="ck_pricing_plans_interval"),
        sa.CheckConstraint("price >= 0", name="ck_pricing_plans_price_non_negative"),
    )

    # Step 3: Catalog and store records priced by checkouts
    op.create_table(
        "podcasts",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_free", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "merch_orders",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("gateway_order_id", sa.String(255), nullable=True),
        sa.Column("gateway_payment_id", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_merch_orders_user_id", "merch_orders", ["user_id"])
    op.create_table(
        "purchases",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("podcast_id", sa.UUID(), sa.ForeignKey("podcasts.id"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("gateway_order_id", sa.String(255), nullable=True, unique=True),
        sa.Column("gateway_payment_id", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_purchases_user_id", "purchases", ["user_id"])

    # Step 4: Subscription ledger with its state invariants
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.UUID(), sa.ForeignKey("pricing_plans.id"), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("pending_plan_id", sa.UUID(), sa.ForeignKey("pricing_plans.id"), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("gateway_subscription_id", sa.String(255), nullable=True, unique=True),
        sa.Column("gateway_payment_id", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period_order"),
        sa.CheckConstraint(
            "status IN ('active', 'pending_downgrade', 'paused', 'cancelled', 'expired')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint(
            "NOT cancel_at_period_end OR status = 'active'",
            name="ck_subscriptions_cancel_flag_active_only",
        ),
        sa.CheckConstraint(
            "(status = 'pending_downgrade' AND pending_plan_id IS NOT NULL)"
            " OR (status <> 'pending_downgrade' AND pending_plan_id IS NULL)",
            name="ck_subscriptions_pending_plan",
        ),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_current_period_end", "subscriptions", ["current_period_end"])
    op.create_index(
        "uq_subscriptions_live_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text(LIVE_SUBSCRIPTION),
    )

    # Step 5: Payments
    op.create_table(
        "payments",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("gateway_order_id", sa.String(255), nullable=True, unique=True),
        sa.Column("gateway_payment_id", sa.String(255), nullable=True, unique=True),
        sa.Column("gateway_signature", sa.String(255), nullable=True),
        sa.Column("ref_type", sa.String(50), nullable=True),
        sa.Column("ref_id", sa.UUID(), nullable=True),
        sa.Column("plan_id", sa.UUID(), sa.ForeignKey("pricing_plans.id"), nullable=True),
        sa.Column("podcast_id", sa.UUID(), sa.ForeignKey("podcasts.id"), nullable=True),
        sa.Column("merch_order_id", sa.UUID(), sa.ForeignKey("merch_orders.id"), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'authorized', 'completed', 'failed', 'refunded')",
            name="ck_payments_status",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_ref_id", "payments", ["ref_id"])

    # Step 6: Refund requests, one open request per target
    op.create_table(
        "refund_requests",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subscription_id", sa.UUID(), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("purchase_id", sa.UUID(), sa.ForeignKey("purchases.id"), nullable=True),
        sa.Column("payment_id", sa.UUID(), sa.ForeignKey("payments.id"), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("gateway_refund_id", sa.String(255), nullable=True, unique=True),
        sa.Column("processed_by", sa.UUID(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'processed', 'rejected')",
            name="ck_refund_requests_status",
        ),
        sa.CheckConstraint(
            "subscription_id IS NOT NULL OR purchase_id IS NOT NULL",
            name="ck_refund_requests_target",
        ),
    )
    op.create_index("ix_refund_requests_user_id", "refund_requests", ["user_id"])
    op.create_index("ix_refund_requests_payment_id", "refund_requests", ["payment_id"])
    op.create_index(
        "uq_refund_requests_open_subscription",
        "refund_requests",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_REFUND),
    )
    op.create_index(
        "uq_refund_requests_open_purchase",
        "refund_requests",
        ["purchase_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_REFUND),
    )

    # Step 7: Webhook deduplication
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("refund_requests")
    op.drop_table("payments")
    op.drop_table("subscriptions")
    op.drop_table("purchases")
    op.drop_table("merch_orders")
    op.drop_table("podcasts")
    op.drop_table("pricing_plans")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
