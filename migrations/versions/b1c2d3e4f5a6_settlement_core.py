"""settlement core: listings, offers, orders, escrow, moderation

Revision ID: b1c2d3e4f5a6
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "b1c2d3e4f5a6"
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
        sa.Column("business_name", sa.String(length=160), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
        sa.Column("stripe_account_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_onboarding_complete", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_stripe_account_id", "users", ["stripe_account_id"])


def _create_listings(bind):
    if _table_exists(bind, "listings"):
        return
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=160), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_sq_ft", sa.Float(), nullable=False, server_default="0"),
        sa.Column("ask_price_per_sq_ft", sa.Float(), nullable=False, server_default="0"),
        sa.Column("floor_price", sa.Float(), nullable=True),
        sa.Column("allow_offers", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("offer_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("sold_at", sa.DateTime(), nullable=True),
        sa.Column("promotion_tier", sa.String(length=16), nullable=True),
        sa.Column("promotion_expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_listings_seller_id", "listings", ["seller_id"])
    op.create_index("ix_listings_status", "listings", ["status"])
    op.create_index("ix_listings_expires_at", "listings", ["expires_at"])

    op.create_table(
        "listing_promotions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tier", sa.String(length=16), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("price_paid", sa.Float(), nullable=False),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_listing_promotions_listing_id", "listing_promotions", ["listing_id"])
    op.create_index("ix_listing_promotions_seller_id", "listing_promotions", ["seller_id"])
    op.create_index("ix_listing_promotions_expires_at", "listing_promotions", ["expires_at"])
    op.create_index("ix_listing_promotions_is_active", "listing_promotions", ["is_active"])


def _create_offers(bind):
    if _table_exists(bind, "offers"):
        return
    op.create_table(
        "offers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("initial_price_per_sq_ft", sa.Float(), nullable=False),
        sa.Column("price_per_sq_ft", sa.Float(), nullable=False),
        sa.Column("quantity_sq_ft", sa.Float(), nullable=False),
        sa.Column("total_price", sa.Float(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("counter_message", sa.Text(), nullable=True),
        sa.Column("current_round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_actor_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    for col in ("listing_id", "buyer_id", "seller_id", "status", "expires_at", "order_id"):
        op.create_index(f"ix_offers_{col}", "offers", [col])
    op.create_index("ix_offers_listing_buyer_status", "offers", ["listing_id", "buyer_id", "status"])

    op.create_table(
        "offer_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("offer_id", sa.Integer(), sa.ForeignKey("offers.id"), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=24), nullable=False),
        sa.Column("price_per_sq_ft", sa.Float(), nullable=True),
        sa.Column("quantity_sq_ft", sa.Float(), nullable=True),
        sa.Column("total_price", sa.Float(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_offer_events_offer_id", "offer_events", ["offer_id"])
    op.create_index("ix_offer_events_created_at", "offer_events", ["created_at"])


def _create_orders(bind):
    if _table_exists(bind, "orders"):
        return
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(length=16), nullable=False),
        sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("offer_id", sa.Integer(), nullable=True),
        sa.Column("quantity_sq_ft", sa.Float(), nullable=False),
        sa.Column("price_per_sq_ft", sa.Float(), nullable=False),
        sa.Column("subtotal", sa.Float(), nullable=False),
        sa.Column("shipping_price", sa.Float(), nullable=False, server_default="0"),
        sa.Column("buyer_fee", sa.Float(), nullable=False),
        sa.Column("seller_fee", sa.Float(), nullable=False),
        sa.Column("total_price", sa.Float(), nullable=False),
        sa.Column("seller_payout", sa.Float(), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_transfer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_refund_id", sa.String(length=255), nullable=True),
        sa.Column("payment_status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("escrow_status", sa.String(length=16), nullable=False, server_default="held"),
        sa.Column("shipping_name", sa.String(length=160), nullable=True),
        sa.Column("shipping_address", sa.String(length=255), nullable=True),
        sa.Column("shipping_city", sa.String(length=120), nullable=True),
        sa.Column("shipping_state", sa.String(length=64), nullable=True),
        sa.Column("shipping_zip", sa.String(length=16), nullable=True),
        sa.Column("tracking_number", sa.String(length=120), nullable=True),
        sa.Column("carrier", sa.String(length=120), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("inventory_released_at", sa.DateTime(), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("escrow_released_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_amount", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_stripe_payment_intent_id", "orders", ["stripe_payment_intent_id"], unique=True)
    for col in ("listing_id", "buyer_id", "seller_id", "offer_id", "payment_status", "status", "escrow_status", "created_at"):
        op.create_index(f"ix_orders_{col}", "orders", [col])

    op.create_table(
        "escrow_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=False),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("processor_ref", sa.String(length=255), nullable=True),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_escrow_transition_order_key"),
    )
    op.create_index("ix_escrow_transitions_order_id", "escrow_transitions", ["order_id"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("initiator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="open"),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_disputes_order_id", "disputes", ["order_id"], unique=True)
    op.create_index("ix_disputes_status", "disputes", ["status"])


def _create_support_tables(bind):
    if not _table_exists(bind, "content_violations"):
        op.create_table(
            "content_violations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("content_type", sa.String(length=16), nullable=False),
            sa.Column("content_body", sa.Text(), nullable=False),
            sa.Column("detections_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("reviewed_by", sa.Integer(), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(), nullable=True),
            sa.Column("false_positive", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_content_violations_user_id", "content_violations", ["user_id"])
        op.create_index("ix_content_violations_created_at", "content_violations", ["created_at"])

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("channel", sa.String(length=32), nullable=False, server_default="in_app"),
            sa.Column("type", sa.String(length=48), nullable=False, server_default="system"),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
            sa.Column("meta", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="stripe"),
            sa.Column("event_id", sa.String(length=128), nullable=False, unique=True),
            sa.Column("event_type", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_body_json", sa.Text(), nullable=True),
            sa.Column("response_code", sa.Integer(), nullable=False, server_default="200"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=32), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True, unique=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"])
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"])
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"])
        op.create_index("ix_platform_events_subject", "platform_events", ["subject_type", "subject_id"])

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("scope", sa.String(length=64), nullable=False, server_default="escrow_ledger"),
            sa.Column("checked_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"])


def upgrade():
    bind = op.get_bind()
    _create_users(bind)
    _create_listings(bind)
    _create_offers(bind)
    _create_orders(bind)
    _create_support_tables(bind)


def downgrade():
    for table in (
        "reconciliation_reports",
        "job_runs",
        "platform_events",
        "idempotency_keys",
        "webhook_events",
        "notifications",
        "content_violations",
        "disputes",
        "escrow_transitions",
        "orders",
        "offer_events",
        "offers",
        "listing_promotions",
        "listings",
        "users",
    ):
        op.drop_table(table)
