"""Repository classes providing access to the Propflow store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (``session_factory.begin()`` or the ``get_session`` context
manager).

Guarded updates return the affected row count.  Callers treat a count lower
than expected as a lost compare-and-swap.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from propflow_engine.money import Paise, sum_paise
from propflow_engine.state.tables import (
    LIVE_SINGLETON_PREDICATE,
    CashDepositTable,
    CashReceiptTable,
    JobTable,
    PaymentAuditLogTable,
    PaymentTable,
    PaymentWebhookEventTable,
    ServiceDefinitionTable,
    ServiceHaltContextTable,
    ServiceInstanceTable,
    ServiceRequestTable,
    ServiceStateHistoryTable,
    new_id,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 200


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: getattr(stmt.excluded, col) for col in update_columns},
    )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    index_where: Any = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    ``index_where`` targets a partial unique index.  The result's
    ``rowcount`` is 0 when the row was skipped.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements, index_where=index_where)
    return await session.execute(stmt)


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, _MAX_PAGE_SIZE))


async def _apply_cursor(session: AsyncSession, stmt: Any, table: Any, cursor: str | None) -> Any:
    """Restrict a newest-first query to rows strictly after *cursor*.

    The cursor is the ``id`` of the last row of the previous page.  An
    unknown cursor yields the first page.
    """
    if cursor is None:
        return stmt
    anchor = (await session.execute(select(table.created_at).where(table.id == cursor))).scalar_one_or_none()
    if anchor is None:
        return stmt
    return stmt.where(
        or_(
            table.created_at < anchor,
            and_(table.created_at == anchor, table.id < cursor),
        )
    )


# ---------------------------------------------------------------------------
# ServiceDefinitionRepository
# ---------------------------------------------------------------------------


class ServiceDefinitionRepository:
    """Access to the ``service_definitions`` catalog."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        code: str,
        name: str,
        steps: Sequence[dict[str, Any]] = (),
        *,
        sla_business_days: int | None = None,
        is_active: bool = True,
    ) -> ServiceDefinitionTable:
        definition: dict[str, Any] = {"steps": list(steps)}
        if sla_business_days is not None:
            definition["sla_business_days"] = sla_business_days
        row = ServiceDefinitionTable(code=code, name=name, definition=definition, is_active=is_active)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, definition_id: str) -> ServiceDefinitionTable | None:
        return await self._session.get(ServiceDefinitionTable, definition_id)

    async def get_active(self, definition_id: str) -> ServiceDefinitionTable | None:
        """Fetch a definition only if it is currently offered."""
        stmt = select(ServiceDefinitionTable).where(
            ServiceDefinitionTable.id == definition_id,
            ServiceDefinitionTable.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# ServiceInstanceRepository
# ---------------------------------------------------------------------------


class ServiceInstanceRepository:
    """Access to ``service_instances``.

    ``state`` only changes through :meth:`guarded_update_state`.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        customer_id: str,
        service_definition_id: str,
        city_id: str,
        *,
        state: str = "requested",
        metadata: dict[str, Any] | None = None,
    ) -> ServiceInstanceTable:
        row = ServiceInstanceTable(
            customer_id=customer_id,
            service_definition_id=service_definition_id,
            city_id=city_id,
            state=state,
            current_step_index=-1,
            metadata_json=dict(metadata or {}),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, instance_id: str) -> ServiceInstanceTable | None:
        stmt = select(ServiceInstanceTable).where(ServiceInstanceTable.id == instance_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_for_update(self, instance_id: str) -> ServiceInstanceTable | None:
        """Fetch an instance with a row lock (``FOR UPDATE``; ignored by SQLite)."""
        stmt = (
            select(ServiceInstanceTable)
            .where(ServiceInstanceTable.id == instance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active(
        self,
        customer_id: str,
        service_definition_id: str,
        terminal_states: Sequence[str],
    ) -> ServiceInstanceTable | None:
        """Return a non-terminal instance for the customer/definition pair, if any."""
        stmt = (
            select(ServiceInstanceTable)
            .where(
                ServiceInstanceTable.customer_id == customer_id,
                ServiceInstanceTable.service_definition_id == service_definition_id,
                ServiceInstanceTable.state.not_in(list(terminal_states)),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def guarded_update_state(
        self,
        instance_id: str,
        *,
        expected_state: str,
        new_state: str,
        current_step_index: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Move an instance to *new_state* only if it is still in *expected_state*.

        Returns
        -------
        int
            Rows affected; ``0`` means another writer changed the state first.
        """
        values: dict[str, Any] = {"state": new_state, "updated_at": datetime.now(UTC)}
        if current_step_index is not None:
            values["current_step_index"] = current_step_index
        if metadata is not None:
            values["metadata_json"] = metadata
        stmt = (
            update(ServiceInstanceTable)
            .where(
                ServiceInstanceTable.id == instance_id,
                ServiceInstanceTable.state == expected_state,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def list_by_city(
        self,
        city_id: str,
        *,
        state: str | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> list[ServiceInstanceTable]:
        """Return instances in a city, newest first, cursor-paginated."""
        stmt = select(ServiceInstanceTable).where(ServiceInstanceTable.city_id == city_id)
        if state is not None:
            stmt = stmt.where(ServiceInstanceTable.state == state)
        stmt = await _apply_cursor(self._session, stmt, ServiceInstanceTable, cursor)
        stmt = stmt.order_by(ServiceInstanceTable.created_at.desc(), ServiceInstanceTable.id.desc()).limit(
            _clamp_limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_in_state_by_recent_update(
        self,
        city_id: str,
        state: str,
        limit: int = 50,
    ) -> list[ServiceInstanceTable]:
        """Return instances in *state* for a city, most recently updated first."""
        stmt = (
            select(ServiceInstanceTable)
            .where(
                ServiceInstanceTable.city_id == city_id,
                ServiceInstanceTable.state == state,
            )
            .order_by(ServiceInstanceTable.updated_at.desc())
            .limit(max(1, limit))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# HaltContextRepository
# ---------------------------------------------------------------------------


class HaltContextRepository:
    """The typed halt snapshot kept beside each halted instance."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def save(
        self,
        service_instance_id: str,
        *,
        pre_halt_state: str,
        halt_reason: str,
        halt_description: str,
        halted_by: str,
        expected_resume_date: Any = None,
        required_actions: list[str] | None = None,
    ) -> None:
        """Insert or overwrite the halt context for an instance."""
        values = {
            "service_instance_id": service_instance_id,
            "pre_halt_state": pre_halt_state,
            "halt_reason": halt_reason,
            "halt_description": halt_description,
            "halted_by": halted_by,
            "expected_resume_date": expected_resume_date,
            "required_actions": list(required_actions or []),
            "halted_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            ServiceHaltContextTable,
            values=values,
            index_elements=["service_instance_id"],
            update_columns=[k for k in values if k != "service_instance_id"],
        )
        await self._session.flush()

    async def get(self, service_instance_id: str) -> ServiceHaltContextTable | None:
        stmt = select(ServiceHaltContextTable).where(
            ServiceHaltContextTable.service_instance_id == service_instance_id
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# StateHistoryRepository
# ---------------------------------------------------------------------------


class StateHistoryRepository:
    """Append-only access to ``service_state_history``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        service_instance_id: str,
        from_state: str,
        to_state: str,
        changed_by: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ServiceStateHistoryTable:
        """Append one row numbered after the instance's latest entry.

        Callers hold the instance row (locked or guarded) while appending, so
        the next sequence number is not contended.
        """
        last = await self._session.execute(
            select(func.coalesce(func.max(ServiceStateHistoryTable.sequence), 0)).where(
                ServiceStateHistoryTable.service_instance_id == service_instance_id
            )
        )
        row = ServiceStateHistoryTable(
            service_instance_id=service_instance_id,
            from_state=from_state,
            to_state=to_state,
            changed_by=changed_by,
            reason=reason,
            metadata_json=metadata,
            sequence=last.scalar_one() + 1,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_instance(self, service_instance_id: str) -> list[ServiceStateHistoryTable]:
        """Return every transition for an instance, newest first."""
        stmt = (
            select(ServiceStateHistoryTable)
            .where(ServiceStateHistoryTable.service_instance_id == service_instance_id)
            .order_by(ServiceStateHistoryTable.sequence.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_touching_state(self, service_instance_id: str, state: str) -> list[ServiceStateHistoryTable]:
        """Return transitions into or out of *state*, newest first."""
        stmt = (
            select(ServiceStateHistoryTable)
            .where(
                ServiceStateHistoryTable.service_instance_id == service_instance_id,
                or_(
                    ServiceStateHistoryTable.to_state == state,
                    ServiceStateHistoryTable.from_state == state,
                ),
            )
            .order_by(ServiceStateHistoryTable.sequence.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_instance(self, service_instance_id: str) -> int:
        stmt = select(func.count()).where(ServiceStateHistoryTable.service_instance_id == service_instance_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()


# ---------------------------------------------------------------------------
# ServiceRequestRepository
# ---------------------------------------------------------------------------


class ServiceRequestRepository:
    """Access to ``service_requests``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        customer_id: str,
        city_id: str,
        *,
        fee_paise: Paise | int | str | None = None,
        service_instance_id: str | None = None,
    ) -> ServiceRequestTable:
        row = ServiceRequestTable(
            customer_id=customer_id,
            city_id=city_id,
            fee_paise=Paise(fee_paise) if fee_paise is not None else None,
            service_instance_id=service_instance_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, service_request_id: str) -> ServiceRequestTable | None:
        stmt = select(ServiceRequestTable).where(ServiceRequestTable.id == service_request_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def update_payment(
        self,
        service_request_id: str,
        *,
        payment_status: str,
        payment_method: str | None = None,
        cash_receipt_id: str | None = None,
    ) -> int:
        values: dict[str, Any] = {"payment_status": payment_status, "updated_at": datetime.now(UTC)}
        if payment_method is not None:
            values["payment_method"] = payment_method
        if cash_receipt_id is not None:
            values["cash_receipt_id"] = cash_receipt_id
        stmt = (
            update(ServiceRequestTable)
            .where(ServiceRequestTable.id == service_request_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]


# ---------------------------------------------------------------------------
# CashReceiptRepository
# ---------------------------------------------------------------------------


class CashReceiptRepository:
    """Access to ``cash_receipts``.

    The reconciliation flag only changes through :meth:`claim` and
    :meth:`release_for_deposit`.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, values: dict[str, Any]) -> CashReceiptTable:
        row = CashReceiptTable(
            receipt_id=values["receipt_id"],
            task_id=values["task_id"],
            service_request_id=values["service_request_id"],
            agent_id=values["agent_id"],
            amount_paise=Paise(values["amount_paise"]),
            customer_name=values["customer_name"],
            service_name=values["service_name"],
            gps_lat=values["gps_lat"],
            gps_lng=values["gps_lng"],
            signature_hash=values["signature_hash"],
            pdf_url=values.get("pdf_url"),
            city_id=values["city_id"],
            client_timestamp=values["client_timestamp"],
            is_reconciled=False,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_receipt_id(self, receipt_id: str) -> CashReceiptTable | None:
        stmt = select(CashReceiptTable).where(CashReceiptTable.receipt_id == receipt_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_claimable(self, receipt_ids: Sequence[str], agent_id: str) -> list[CashReceiptTable]:
        """Return the named receipts that belong to *agent_id* and are still unreconciled."""
        stmt = select(CashReceiptTable).where(
            CashReceiptTable.receipt_id.in_(list(receipt_ids)),
            CashReceiptTable.agent_id == agent_id,
            CashReceiptTable.is_reconciled.is_(False),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim(self, receipt_ids: Sequence[str], deposit_id: str) -> int:
        """Mark unreconciled receipts as claimed by *deposit_id*.

        The ``is_reconciled = false`` predicate is evaluated by the update
        itself, so a receipt claimed concurrently is not counted.

        Returns
        -------
        int
            Number of receipts this call claimed.
        """
        stmt = (
            update(CashReceiptTable)
            .where(
                CashReceiptTable.receipt_id.in_(list(receipt_ids)),
                CashReceiptTable.is_reconciled.is_(False),
            )
            .values(is_reconciled=True, deposit_id=deposit_id, reconciled_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def release_for_deposit(self, deposit_id: str) -> int:
        """Return every receipt claimed by *deposit_id* to the unreconciled pool."""
        stmt = (
            update(CashReceiptTable)
            .where(CashReceiptTable.deposit_id == deposit_id)
            .values(is_reconciled=False, deposit_id=None, reconciled_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def outstanding_for_agent(self, agent_id: str) -> tuple[int, Paise]:
        """Return ``(count, total)`` over the agent's unreconciled receipts.

        The total is summed in Python; the column holds strings and SQL
        ``SUM`` over them would not be exact on every backend.
        """
        stmt = select(CashReceiptTable.amount_paise).where(
            CashReceiptTable.agent_id == agent_id,
            CashReceiptTable.is_reconciled.is_(False),
        )
        result = await self._session.execute(stmt)
        amounts = list(result.scalars().all())
        return len(amounts), sum_paise(amounts)

    async def list_for_agent(
        self,
        agent_id: str,
        *,
        is_reconciled: bool | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> list[CashReceiptTable]:
        """Return an agent's receipts, newest first, cursor-paginated."""
        stmt = select(CashReceiptTable).where(CashReceiptTable.agent_id == agent_id)
        if is_reconciled is not None:
            stmt = stmt.where(CashReceiptTable.is_reconciled.is_(is_reconciled))
        stmt = await _apply_cursor(self._session, stmt, CashReceiptTable, cursor)
        stmt = stmt.order_by(CashReceiptTable.created_at.desc(), CashReceiptTable.id.desc()).limit(
            _clamp_limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# CashDepositRepository
# ---------------------------------------------------------------------------


class CashDepositRepository:
    """Access to ``cash_deposits``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, values: dict[str, Any]) -> CashDepositTable:
        row = CashDepositTable(
            agent_id=values["agent_id"],
            city_id=values["city_id"],
            total_amount_paise=Paise(values["total_amount_paise"]),
            receipt_count=values["receipt_count"],
            deposit_method=values["deposit_method"],
            deposit_reference=values.get("deposit_reference"),
            deposit_photo_url=values.get("deposit_photo_url"),
            gps_lat=values["gps_lat"],
            gps_lng=values["gps_lng"],
            status="pending_verification",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, deposit_id: str) -> CashDepositTable | None:
        stmt = select(CashDepositTable).where(CashDepositTable.id == deposit_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def guarded_set_status(
        self,
        deposit_id: str,
        *,
        expected_status: str,
        new_status: str,
        verified_by: str,
        notes: str | None = None,
    ) -> int:
        """Change a deposit's status only if it still has *expected_status*."""
        stmt = (
            update(CashDepositTable)
            .where(
                CashDepositTable.id == deposit_id,
                CashDepositTable.status == expected_status,
            )
            .values(
                status=new_status,
                verified_by=verified_by,
                verified_at=datetime.now(UTC),
                notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]


# ---------------------------------------------------------------------------
# PaymentRepository
# ---------------------------------------------------------------------------


class PaymentRepository:
    """Access to ``payments``, keyed by the gateway order or payment link id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        service_request_id: str,
        customer_id: str,
        amount_paise: Paise,
        razorpay_order_id: str | None = None,
        razorpay_payment_link_id: str | None = None,
        currency: str = "INR",
        city_id: str | None = None,
        payment_method_type: str = "domestic",
    ) -> PaymentTable:
        if razorpay_order_id is None and razorpay_payment_link_id is None:
            raise ValueError("A payment needs a gateway order id or payment link id")
        row = PaymentTable(
            service_request_id=service_request_id,
            customer_id=customer_id,
            city_id=city_id,
            amount_paise=Paise(amount_paise),
            currency=currency,
            payment_method_type=payment_method_type,
            razorpay_order_id=razorpay_order_id,
            razorpay_payment_link_id=razorpay_payment_link_id,
            status="pending",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, payment_id: str) -> PaymentTable | None:
        stmt = select(PaymentTable).where(PaymentTable.id == payment_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_order_id(self, razorpay_order_id: str, *, for_update: bool = False) -> PaymentTable | None:
        stmt = select(PaymentTable).where(PaymentTable.razorpay_order_id == razorpay_order_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_payment_link_id(
        self, razorpay_payment_link_id: str, *, for_update: bool = False
    ) -> PaymentTable | None:
        stmt = select(PaymentTable).where(PaymentTable.razorpay_payment_link_id == razorpay_payment_link_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_gateway_payment_id(self, razorpay_payment_id: str) -> PaymentTable | None:
        stmt = select(PaymentTable).where(PaymentTable.razorpay_payment_id == razorpay_payment_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalars().first()

    async def list_for_request(self, service_request_id: str, customer_id: str) -> list[PaymentTable]:
        """Return a customer's payments for one service request, newest first."""
        stmt = (
            select(PaymentTable)
            .where(
                PaymentTable.service_request_id == service_request_id,
                PaymentTable.customer_id == customer_id,
            )
            .order_by(PaymentTable.created_at.desc(), PaymentTable.id.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_paid(
        self,
        *,
        razorpay_order_id: str,
        razorpay_payment_id: str,
        service_request_id: str,
        customer_id: str,
        amount_paise: Paise,
        currency: str,
        payment_method_type: str,
    ) -> PaymentTable:
        """Insert or update the order's payment row as ``paid``.

        An existing row keeps its request, customer and amount; only the
        gateway payment id, method and status change.
        """
        now = datetime.now(UTC)
        values = {
            "id": new_id(),
            "razorpay_order_id": razorpay_order_id,
            "razorpay_payment_id": razorpay_payment_id,
            "service_request_id": service_request_id,
            "customer_id": customer_id,
            "amount_paise": Paise(amount_paise),
            "currency": currency,
            "payment_method_type": payment_method_type,
            "status": "paid",
            "paid_at": now,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            PaymentTable,
            values=values,
            index_elements=["razorpay_order_id"],
            update_columns=[
                "razorpay_payment_id",
                "payment_method_type",
                "status",
                "paid_at",
                "updated_at",
            ],
        )
        await self._session.flush()
        row = await self.get_by_order_id(razorpay_order_id)
        if row is None:
            raise RuntimeError(f"Payment row for order {razorpay_order_id} vanished after upsert")
        return row

    async def set_status(
        self,
        payment_id: str,
        status: str,
        *,
        razorpay_payment_id: str | None = None,
        razorpay_order_id: str | None = None,
        failure_reason: str | None = None,
        paid_at: datetime | None = None,
    ) -> None:
        """Set *status*; the optional columns are only written when given."""
        values: dict[str, Any] = {"status": status, "updated_at": datetime.now(UTC)}
        if razorpay_order_id is not None:
            values["razorpay_order_id"] = razorpay_order_id
        if razorpay_payment_id is not None:
            values["razorpay_payment_id"] = razorpay_payment_id
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if paid_at is not None:
            values["paid_at"] = paid_at
        stmt = (
            update(PaymentTable)
            .where(PaymentTable.id == payment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# PaymentAuditLogRepository
# ---------------------------------------------------------------------------


class PaymentAuditLogRepository:
    """Append-only access to ``payment_audit_logs``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        payment_id: str,
        *,
        action: str,
        old_state: str | None,
        new_state: str,
        performed_by: str,
        details: dict[str, Any] | None = None,
    ) -> PaymentAuditLogTable:
        row = PaymentAuditLogTable(
            payment_id=payment_id,
            action=action,
            old_state=old_state,
            new_state=new_state,
            performed_by=performed_by,
            details=details,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_payment(self, payment_id: str) -> list[PaymentAuditLogTable]:
        """Return the audit trail for a payment, oldest first."""
        stmt = (
            select(PaymentAuditLogTable)
            .where(PaymentAuditLogTable.payment_id == payment_id)
            .order_by(PaymentAuditLogTable.created_at.asc(), PaymentAuditLogTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PaymentWebhookEventRepository
# ---------------------------------------------------------------------------


class PaymentWebhookEventRepository:
    """De-duplication ledger for gateway webhook deliveries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, event_id: str, event_type: str) -> bool:
        """Insert the event; return ``False`` if it was already recorded."""
        result = await _dialect_insert_nothing(
            self._session,
            PaymentWebhookEventTable,
            values={
                "id": new_id(),
                "event_id": event_id,
                "event_type": event_type,
                "status": "received",
                "received_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def get(self, event_id: str) -> PaymentWebhookEventTable | None:
        stmt = select(PaymentWebhookEventTable).where(PaymentWebhookEventTable.event_id == event_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def mark(self, event_id: str, status: str, error: str | None = None) -> None:
        stmt = (
            update(PaymentWebhookEventTable)
            .where(PaymentWebhookEventTable.event_id == event_id)
            .values(status=status, error=error, processed_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# JobRepository
# ---------------------------------------------------------------------------


class JobRepository:
    """Writes to the ``jobs`` queue table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        run_after: datetime,
        retry_limit: int = 0,
        retry_backoff: bool = False,
        singleton_key: str | None = None,
    ) -> str | None:
        """Insert a job row.

        Returns
        -------
        str | None
            The new job id, or ``None`` when a live job with the same
            ``singleton_key`` already exists.
        """
        job_id = new_id()
        values = {
            "id": job_id,
            "name": name,
            "payload": payload,
            "state": "created",
            "run_after": run_after,
            "retry_limit": retry_limit,
            "retry_count": 0,
            "retry_backoff": retry_backoff,
            "singleton_key": singleton_key,
            "created_at": datetime.now(UTC),
        }
        if singleton_key is None:
            self._session.add(JobTable(**values))
            await self._session.flush()
            return job_id
        result = await _dialect_insert_nothing(
            self._session,
            JobTable,
            values=values,
            index_elements=["singleton_key"],
            index_where=text(LIVE_SINGLETON_PREDICATE),
        )
        await self._session.flush()
        if (result.rowcount or 0) == 0:
            logger.debug("Job %s skipped: singleton %s already queued", name, singleton_key)
            return None
        return job_id

    async def list_by_name(self, name: str) -> list[JobTable]:
        stmt = select(JobTable).where(JobTable.name == name).order_by(JobTable.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
