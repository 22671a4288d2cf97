"""delivery engine tables

Revision ID: 3c1d9e7a2b40
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "3c1d9e7a2b40"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    return sa.inspect(bind).has_table(table_name)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="consumer"),
            sa.Column("payout_account_ref", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_phone", "users", ["phone"], unique=True)
        op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "delivery_batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_number", sa.Integer(), nullable=False),
        sa.Column("delivery_date", sa.Date(), nullable=True),
        sa.Column("driver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("collection_point_id", sa.Integer(), nullable=True),
        sa.Column("collection_point_name", sa.String(length=160), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_delivery_batches_batch_number", "delivery_batches", ["batch_number"], unique=True)
    op.create_index("ix_delivery_batches_delivery_date", "delivery_batches", ["delivery_date"])
    op.create_index("ix_delivery_batches_driver_id", "delivery_batches", ["driver_id"])
    op.create_index("ix_delivery_batches_status", "delivery_batches", ["status"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("consumer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("farmer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("lead_farmer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("delivery_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("box_code", sa.String(length=32), nullable=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("delivery_batches.id"), nullable=True),
        sa.Column("stop_id", sa.Integer(), nullable=True),
        sa.Column("subtotal_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_fee_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_reference", sa.String(length=120), nullable=True),
        *_timestamps(),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    for col in ("consumer_id", "farmer_id", "lead_farmer_id", "delivery_date", "status", "batch_id", "stop_id"):
        op.create_index(f"ix_orders_{col}", "orders", [col])
    op.create_index("ix_orders_box_code", "orders", ["box_code"], unique=True)

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("product_name", sa.String(length=160), nullable=False, server_default=""),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price_minor", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product_id", "order_items", ["product_id"])

    op.create_table(
        "batch_stops",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("delivery_batches.id"), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="pending"),
        sa.Column("street_address", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("city", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("state", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("zip_code", sa.String(length=16), nullable=False, server_default=""),
        sa.Column("address_visible_at", sa.DateTime(), nullable=True),
        sa.Column("loaded_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("batch_id", "sequence_number", name="uq_batch_stops_batch_sequence"),
    )
    op.create_index("ix_batch_stops_batch_id", "batch_stops", ["batch_id"])
    op.create_index("ix_batch_stops_order_id", "batch_stops", ["order_id"], unique=True)
    op.create_index("ix_batch_stops_status", "batch_stops", ["status"])

    op.create_table(
        "scan_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("stop_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("box_code", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("scan_type", sa.String(length=16), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False, server_default="applied"),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("scanned_at", sa.DateTime(), nullable=False),
    )
    for col in ("batch_id", "stop_id", "order_id", "actor_id", "box_code", "scan_type", "outcome", "scanned_at"):
        op.create_index(f"ix_scan_events_{col}", "scan_events", [col])

    op.create_table(
        "transaction_fees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("fee_type", sa.String(length=32), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recipient_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "fee_type", name="uq_transaction_fees_order_type"),
    )
    op.create_index("ix_transaction_fees_order_id", "transaction_fees", ["order_id"])
    op.create_index("ix_transaction_fees_recipient_id", "transaction_fees", ["recipient_id"])

    op.create_table(
        "payouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("batch_id", sa.Integer(), sa.ForeignKey("delivery_batches.id"), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.String(length=240), nullable=True),
        sa.Column("transfer_reference", sa.String(length=120), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("order_id", "recipient_type", name="uq_payouts_order_recipient_type"),
        sa.UniqueConstraint("batch_id", "recipient_type", name="uq_payouts_batch_recipient_type"),
    )
    for col in ("recipient_id", "recipient_type", "order_id", "batch_id", "status", "created_at"):
        op.create_index(f"ix_payouts_{col}", "payouts", [col])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("reporter_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reporter_role", sa.String(length=32), nullable=False, server_default="consumer"),
        sa.Column("dispute_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("requested_refund_minor", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("refund_amount_minor", sa.Integer(), nullable=True),
        sa.Column("resolver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    for col in ("order_id", "reporter_id", "dispute_type", "status", "created_at"):
        op.create_index(f"ix_disputes_{col}", "disputes", [col])

    op.create_table(
        "refund_instructions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("provider_reference", sa.String(length=120), nullable=True),
        sa.Column("failure_reason", sa.String(length=240), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_refund_instructions_dispute_id", "refund_instructions", ["dispute_id"], unique=True)
    op.create_index("ix_refund_instructions_order_id", "refund_instructions", ["order_id"])
    op.create_index("ix_refund_instructions_status", "refund_instructions", ["status"])

    op.create_table(
        "order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("event", sa.String(length=32), nullable=False),
        sa.Column("from_status", sa.String(length=24), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=24), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
    )
    op.create_index("ix_order_transitions_order_id", "order_transitions", ["order_id"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        for col in ("created_at", "event_type", "actor_user_id", "subject_type", "subject_id", "request_id", "severity"):
            op.create_index(f"ix_platform_events_{col}", "platform_events", [col])
        op.create_index("ix_platform_events_idempotency_key", "platform_events", ["idempotency_key"], unique=True)

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])
        op.create_index("ix_job_runs_ok", "job_runs", ["ok"])


def downgrade():
    for table in (
        "job_runs",
        "platform_events",
        "order_transitions",
        "refund_instructions",
        "disputes",
        "payouts",
        "transaction_fees",
        "scan_events",
        "batch_stops",
        "order_items",
        "orders",
        "delivery_batches",
        "users",
    ):
        op.drop_table(table)
