"""SQLAlchemy 2.0 ORM table definitions for the Propflow store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style and share
one ``Base`` that Alembic migrations and the repository layer import.

Money columns use :class:`PaiseType`, which persists a decimal-free integer
string and loads it back as :class:`~propflow_engine.money.Paise`.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from propflow_engine.money import Paise

# JSONB on PostgreSQL, plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always loads as UTC.

    SQLite drops the offset on storage; rows read back from it are tagged
    UTC so comparisons against :func:`_utcnow` stay valid.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class PaiseType(TypeDecorator):
    """Integer count of paise persisted as a decimal-free string."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        return Paise(value).to_wire()

    def process_result_value(self, value: str | None, dialect: Any) -> Paise | None:
        if value is None:
            return None
        return Paise(value)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all Propflow tables."""


# ---------------------------------------------------------------------------
# Service catalog and instances
# ---------------------------------------------------------------------------


class ServiceDefinitionTable(Base):
    """Catalog entry describing a purchasable service and its steps."""

    __tablename__ = "service_definitions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # {"steps": [{"name": ...}, ...], "sla_business_days": int}
    definition: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    @property
    def total_steps(self) -> int:
        steps = (self.definition or {}).get("steps") or []
        return len(steps)

    @property
    def sla_business_days(self) -> int | None:
        return (self.definition or {}).get("sla_business_days")


ACTIVE_INSTANCE_PREDICATE = "state NOT IN ('cancelled', 'delivered')"


class ServiceInstanceTable(Base):
    """One customer's purchase of one service definition.

    ``state`` is written only by the workflow engine's guarded update.
    """

    __tablename__ = "service_instances"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_definition_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("service_definitions.id"), nullable=False
    )
    city_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False, default="requested")
    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_service_instances_customer_definition", "customer_id", "service_definition_id"),
        Index("ix_service_instances_city_state", "city_id", "state"),
        # At most one non-terminal instance per customer and definition.
        Index(
            "uq_service_instances_active_pair",
            "customer_id",
            "service_definition_id",
            unique=True,
            postgresql_where=text(ACTIVE_INSTANCE_PREDICATE),
            sqlite_where=text(ACTIVE_INSTANCE_PREDICATE),
        ),
    )


class ServiceHaltContextTable(Base):
    """Typed halt snapshot, one row per instance, overwritten on each halt."""

    __tablename__ = "service_halt_contexts"

    service_instance_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("service_instances.id", ondelete="CASCADE"), primary_key=True
    )
    pre_halt_state: Mapped[str] = mapped_column(String(32), nullable=False)
    halt_reason: Mapped[str] = mapped_column(String(64), nullable=False)
    halt_description: Mapped[str] = mapped_column(Text, nullable=False)
    expected_resume_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    required_actions: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    halted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    halted_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class ServiceStateHistoryTable(Base):
    """Append-only transition log for service instances."""

    __tablename__ = "service_state_history"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    service_instance_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("service_instances.id"), nullable=False
    )
    from_state: Mapped[str] = mapped_column(String(32), nullable=False)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    # Position within the instance's log, starting at 1.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("service_instance_id", "sequence", name="uq_service_state_history_sequence"),
        Index("ix_service_state_history_instance_created", "service_instance_id", "created_at"),
        Index("ix_service_state_history_to_state", "to_state"),
    )


# ---------------------------------------------------------------------------
# Service requests
# ---------------------------------------------------------------------------


class ServiceRequestTable(Base):
    """A customer's purchasable request that money movements attach to."""

    __tablename__ = "service_requests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    city_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_instance_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("service_instances.id"), nullable=True
    )
    fee_paise: Mapped[Paise | None] = mapped_column(PaiseType(), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    cash_receipt_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_service_requests_customer", "customer_id"),)


# ---------------------------------------------------------------------------
# Cash collection
# ---------------------------------------------------------------------------


class CashDepositTable(Base):
    """An agent's bundled hand-in of cash receipts."""

    __tablename__ = "cash_deposits"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    city_id: Mapped[str] = mapped_column(String(64), nullable=False)
    total_amount_paise: Mapped[Paise] = mapped_column(PaiseType(), nullable=False)
    receipt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_method: Mapped[str] = mapped_column(String(32), nullable=False)
    deposit_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deposit_photo_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    gps_lat: Mapped[float] = mapped_column(Float, nullable=False)
    gps_lng: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_verification")
    verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposited_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_verification', 'verified', 'rejected')",
            name="ck_cash_deposits_status",
        ),
        CheckConstraint("receipt_count > 0", name="ck_cash_deposits_receipt_count_positive"),
        Index("ix_cash_deposits_agent", "agent_id"),
    )


class CashReceiptTable(Base):
    """One field-collection event, claimed by at most one deposit."""

    __tablename__ = "cash_receipts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    receipt_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_request_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("service_requests.id"), nullable=False
    )
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_paise: Mapped[Paise] = mapped_column(PaiseType(), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    service_name: Mapped[str] = mapped_column(String(256), nullable=False)
    gps_lat: Mapped[float] = mapped_column(Float, nullable=False)
    gps_lng: Mapped[float] = mapped_column(Float, nullable=False)
    signature_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    pdf_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    city_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deposit_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("cash_deposits.id"), nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("receipt_id", name="uq_cash_receipts_receipt_id"),
        CheckConstraint(
            "is_reconciled = false OR deposit_id IS NOT NULL",
            name="ck_cash_receipts_reconciled_has_deposit",
        ),
        Index("ix_cash_receipts_agent_reconciled", "agent_id", "is_reconciled"),
        Index("ix_cash_receipts_deposit", "deposit_id"),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """One attempt to collect money for a service request."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    service_request_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("service_requests.id"), nullable=False
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    city_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount_paise: Mapped[Paise] = mapped_column(PaiseType(), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    payment_method_type: Mapped[str] = mapped_column(String(32), nullable=False, default="domestic")
    # Null for a payment link until the customer pays it.
    razorpay_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    razorpay_payment_link_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    razorpay_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("razorpay_order_id", name="uq_payments_razorpay_order_id"),
        UniqueConstraint("razorpay_payment_link_id", name="uq_payments_razorpay_payment_link_id"),
        CheckConstraint("status IN ('pending', 'paid', 'failed')", name="ck_payments_status"),
        CheckConstraint(
            "razorpay_order_id IS NOT NULL OR razorpay_payment_link_id IS NOT NULL",
            name="ck_payments_gateway_reference",
        ),
        Index("ix_payments_service_request", "service_request_id"),
    )


class PaymentAuditLogTable(Base):
    """Append-only record of every payment status change."""

    __tablename__ = "payment_audit_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    payment_id: Mapped[str] = mapped_column(String(32), ForeignKey("payments.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    old_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_state: Mapped[str] = mapped_column(String(16), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_payment_audit_logs_payment_created", "payment_id", "created_at"),)


class PaymentWebhookEventTable(Base):
    """Gateway webhook deliveries, de-duplicated by event id."""

    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="received")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_payment_webhook_events_event_id"),
        CheckConstraint(
            "status IN ('received', 'processed', 'ignored', 'failed')",
            name="ck_payment_webhook_events_status",
        ),
    )


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------


LIVE_SINGLETON_PREDICATE = "singleton_key IS NOT NULL AND state IN ('created', 'active')"


class JobTable(Base):
    """Postgres-backed queue of named fire-and-forget jobs."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="created")
    run_after: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    retry_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_backoff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    singleton_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "state IN ('created', 'active', 'completed', 'failed')",
            name="ck_jobs_state",
        ),
        Index("ix_jobs_name_state_run_after", "name", "state", "run_after"),
        # At most one live job per singleton key.
        Index(
            "uq_jobs_live_singleton_key",
            "singleton_key",
            unique=True,
            postgresql_where=text(LIVE_SINGLETON_PREDICATE),
            sqlite_where=text(LIVE_SINGLETON_PREDICATE),
        ),
    )
