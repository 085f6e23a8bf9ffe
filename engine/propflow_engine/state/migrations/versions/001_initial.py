"""Initial schema: workflow, cash collection, payments and the job queue.

Revision ID: 001
Revises:
Create Date: 2026-09-28 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")
_LIVE_SINGLETON = "singleton_key IS NOT NULL AND state IN ('created', 'active')"
_ACTIVE_INSTANCE = "state NOT IN ('cancelled', 'delivered')"


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "service_definitions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("code", sa.String(128), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("definition", _JSON, nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "service_instances",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("service_definition_id", sa.String(32), sa.ForeignKey("service_definitions.id"), nullable=False),
        sa.Column("city_id", sa.String(64), nullable=False),
        sa.Column("state", sa.String(32), nullable=False, server_default="requested"),
        sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("metadata_json", _JSON, nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index(
        "ix_service_instances_customer_definition",
        "service_instances",
        ["customer_id", "service_definition_id"],
    )
    op.create_index("ix_service_instances_city_state", "service_instances", ["city_id", "state"])
    op.create_index(
        "uq_service_instances_active_pair",
        "service_instances",
        ["customer_id", "service_definition_id"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_INSTANCE),
        sqlite_where=sa.text(_ACTIVE_INSTANCE),
    )

    op.create_table(
        "service_halt_contexts",
        sa.Column(
            "service_instance_id",
            sa.String(32),
            sa.ForeignKey("service_instances.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("pre_halt_state", sa.String(32), nullable=False),
        sa.Column("halt_reason", sa.String(64), nullable=False),
        sa.Column("halt_description", sa.Text(), nullable=False),
        sa.Column("expected_resume_date", sa.Date(), nullable=True),
        sa.Column("required_actions", _JSON, nullable=False),
        sa.Column("halted_by", sa.String(64), nullable=False),
        _ts("halted_at"),
    )

    op.create_table(
        "service_state_history",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("service_instance_id", sa.String(32), sa.ForeignKey("service_instances.id"), nullable=False),
        sa.Column("from_state", sa.String(32), nullable=False),
        sa.Column("to_state", sa.String(32), nullable=False),
        sa.Column("changed_by", sa.String(64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("service_instance_id", "sequence", name="uq_service_state_history_sequence"),
    )
    op.create_index(
        "ix_service_state_history_instance_created",
        "service_state_history",
        ["service_instance_id", "created_at"],
    )
    op.create_index("ix_service_state_history_to_state", "service_state_history", ["to_state"])

    op.create_table(
        "service_requests",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("city_id", sa.String(64), nullable=False),
        sa.Column("service_instance_id", sa.String(32), sa.ForeignKey("service_instances.id"), nullable=True),
        sa.Column("fee_paise", sa.String(32), nullable=True),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("cash_receipt_id", sa.String(64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_service_requests_customer", "service_requests", ["customer_id"])

    op.create_table(
        "cash_deposits",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("city_id", sa.String(64), nullable=False),
        sa.Column("total_amount_paise", sa.String(32), nullable=False),
        sa.Column("receipt_count", sa.Integer(), nullable=False),
        sa.Column("deposit_method", sa.String(32), nullable=False),
        sa.Column("deposit_reference", sa.String(128), nullable=True),
        sa.Column("deposit_photo_url", sa.String(1024), nullable=True),
        sa.Column("gps_lat", sa.Float(), nullable=False),
        sa.Column("gps_lng", sa.Float(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending_verification"),
        sa.Column("verified_by", sa.String(64), nullable=True),
        _ts("verified_at", nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("deposited_at"),
        sa.CheckConstraint(
            "status IN ('pending_verification', 'verified', 'rejected')",
            name="ck_cash_deposits_status",
        ),
        sa.CheckConstraint("receipt_count > 0", name="ck_cash_deposits_receipt_count_positive"),
    )
    op.create_index("ix_cash_deposits_agent", "cash_deposits", ["agent_id"])

    op.create_table(
        "cash_receipts",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("receipt_id", sa.String(64), nullable=False),
        sa.Column("task_id", sa.String(64), nullable=False),
        sa.Column("service_request_id", sa.String(32), sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("amount_paise", sa.String(32), nullable=False),
        sa.Column("customer_name", sa.String(256), nullable=False),
        sa.Column("service_name", sa.String(256), nullable=False),
        sa.Column("gps_lat", sa.Float(), nullable=False),
        sa.Column("gps_lng", sa.Float(), nullable=False),
        sa.Column("signature_hash", sa.String(256), nullable=False),
        sa.Column("pdf_url", sa.String(1024), nullable=True),
        sa.Column("city_id", sa.String(64), nullable=False),
        sa.Column("client_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deposit_id", sa.String(32), sa.ForeignKey("cash_deposits.id"), nullable=True),
        _ts("reconciled_at", nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("receipt_id", name="uq_cash_receipts_receipt_id"),
        sa.CheckConstraint(
            "is_reconciled = false OR deposit_id IS NOT NULL",
            name="ck_cash_receipts_reconciled_has_deposit",
        ),
    )
    op.create_index("ix_cash_receipts_agent_reconciled", "cash_receipts", ["agent_id", "is_reconciled"])
    op.create_index("ix_cash_receipts_deposit", "cash_receipts", ["deposit_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("service_request_id", sa.String(32), sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("city_id", sa.String(64), nullable=True),
        sa.Column("amount_paise", sa.String(32), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="INR"),
        sa.Column("payment_method_type", sa.String(32), nullable=False, server_default="domestic"),
        sa.Column("razorpay_order_id", sa.String(64), nullable=True),
        sa.Column("razorpay_payment_link_id", sa.String(64), nullable=True),
        sa.Column("razorpay_payment_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _ts("paid_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("razorpay_order_id", name="uq_payments_razorpay_order_id"),
        sa.UniqueConstraint("razorpay_payment_link_id", name="uq_payments_razorpay_payment_link_id"),
        sa.CheckConstraint("status IN ('pending', 'paid', 'failed')", name="ck_payments_status"),
        sa.CheckConstraint(
            "razorpay_order_id IS NOT NULL OR razorpay_payment_link_id IS NOT NULL",
            name="ck_payments_gateway_reference",
        ),
    )
    op.create_index("ix_payments_service_request", "payments", ["service_request_id"])

    op.create_table(
        "payment_audit_logs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("payment_id", sa.String(32), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("old_state", sa.String(16), nullable=True),
        sa.Column("new_state", sa.String(16), nullable=False),
        sa.Column("performed_by", sa.String(64), nullable=False),
        sa.Column("details", _JSON, nullable=True),
        _ts("created_at"),
    )
    op.create_index(
        "ix_payment_audit_logs_payment_created",
        "payment_audit_logs",
        ["payment_id", "created_at"],
    )

    op.create_table(
        "payment_webhook_events",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="received"),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("received_at"),
        _ts("processed_at", nullable=True),
        sa.UniqueConstraint("event_id", name="uq_payment_webhook_events_event_id"),
        sa.CheckConstraint(
            "status IN ('received', 'processed', 'ignored', 'failed')",
            name="ck_payment_webhook_events_status",
        ),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("state", sa.String(16), nullable=False, server_default="created"),
        _ts("run_after"),
        sa.Column("retry_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_backoff", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("singleton_key", sa.String(256), nullable=True),
        _ts("created_at"),
        sa.CheckConstraint(
            "state IN ('created', 'active', 'completed', 'failed')",
            name="ck_jobs_state",
        ),
    )
    op.create_index("ix_jobs_name_state_run_after", "jobs", ["name", "state", "run_after"])
    op.create_index(
        "uq_jobs_live_singleton_key",
        "jobs",
        ["singleton_key"],
        unique=True,
        postgresql_where=sa.text(_LIVE_SINGLETON),
        sqlite_where=sa.text(_LIVE_SINGLETON),
    )


def downgrade() -> None:
    op.drop_table("jobs")
    op.drop_table("payment_webhook_events")
    op.drop_table("payment_audit_logs")
    op.drop_table("payments")
    op.drop_table("cash_receipts")
    op.drop_table("cash_deposits")
    op.drop_table("service_requests")
    op.drop_table("service_state_history")
    op.drop_table("service_halt_contexts")
    op.drop_table("service_instances")
    op.drop_table("service_definitions")
