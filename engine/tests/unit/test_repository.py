"""Tests for the repository layer against a file-backed SQLite store."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import pytest
from propflow_engine.money import Paise
from propflow_engine.state.repository import (
    CashDepositRepository,
    CashReceiptRepository,
    HaltContextRepository,
    JobRepository,
    PaymentAuditLogRepository,
    PaymentRepository,
    PaymentWebhookEventRepository,
    ServiceDefinitionRepository,
    ServiceInstanceRepository,
    ServiceRequestRepository,
    StateHistoryRepository,
)
from propflow_engine.state.tables import ServiceDefinitionTable, ServiceInstanceTable, ServiceStateHistoryTable
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

Factory = async_sessionmaker[AsyncSession]


def _receipt_values(
    receipt_id: str,
    service_request_id: str,
    *,
    agent_id: str = "agent-1",
    amount: int = 50000,
    **extra: Any,
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "receipt_id": receipt_id,
        "task_id": f"task-{receipt_id}",
        "service_request_id": service_request_id,
        "agent_id": agent_id,
        "amount_paise": Paise(amount),
        "customer_name": "Asha",
        "service_name": "Khata transfer",
        "gps_lat": 12.97,
        "gps_lng": 77.59,
        "signature_hash": "sig",
        "city_id": "city-1",
        "client_timestamp": datetime(2026, 1, 5, 10, 0, tzinfo=UTC),
    }
    values.update(extra)
    return values


def _deposit_values(**extra: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "agent_id": "agent-1",
        "city_id": "city-1",
        "total_amount_paise": Paise(100000),
        "receipt_count": 2,
        "deposit_method": "bank_deposit",
        "gps_lat": 12.97,
        "gps_lng": 77.59,
    }
    values.update(extra)
    return values


# ---------------------------------------------------------------------------
# Service definitions and instances
# ---------------------------------------------------------------------------


class TestServiceInstanceRepository:
    @pytest.mark.asyncio
    async def test_definition_total_steps(self, make_definition: Callable[..., Awaitable[ServiceDefinitionTable]]) -> None:
        definition = await make_definition(4, sla_business_days=7)
        assert definition.total_steps == 4
        assert definition.sla_business_days == 7

    @pytest.mark.asyncio
    async def test_get_active_skips_inactive(
        self,
        session_factory: Factory,
        make_definition: Callable[..., Awaitable[ServiceDefinitionTable]],
    ) -> None:
        definition = await make_definition(1, is_active=False)
        async with session_factory() as session:
            repo = ServiceDefinitionRepository(session)
            assert await repo.get(definition.id) is not None
            assert await repo.get_active(definition.id) is None

    @pytest.mark.asyncio
    async def test_guarded_update_requires_expected_state(
        self,
        session_factory: Factory,
        make_instance: Callable[..., Awaitable[ServiceInstanceTable]],
    ) -> None:
        instance = await make_instance("requested")
        async with session_factory.begin() as session:
            repo = ServiceInstanceRepository(session)
            assert await repo.guarded_update_state(instance.id, expected_state="paid", new_state="in_progress") == 0
            assert await repo.guarded_update_state(instance.id, expected_state="requested", new_state="assigned") == 1
            row = await repo.get(instance.id)
        assert row is not None
        assert row.state == "assigned"

    @pytest.mark.asyncio
    async def test_one_active_instance_per_pair(
        self,
        session_factory: Factory,
        make_definition: Callable[..., Awaitable[ServiceDefinitionTable]],
    ) -> None:
        definition = await make_definition(1)
        async with session_factory.begin() as session:
            await ServiceInstanceRepository(session).create("cust-1", definition.id, "city-1")

        with pytest.raises(IntegrityError):
            async with session_factory.begin() as session:
                await ServiceInstanceRepository(session).create("cust-1", definition.id, "city-1")

    @pytest.mark.asyncio
    async def test_terminal_instance_frees_the_pair(
        self,
        session_factory: Factory,
        make_definition: Callable[..., Awaitable[ServiceDefinitionTable]],
    ) -> None:
        definition = await make_definition(1)
        async with session_factory.begin() as session:
            await ServiceInstanceRepository(session).create("cust-1", definition.id, "city-1", state="cancelled")
        async with session_factory.begin() as session:
            repo = ServiceInstanceRepository(session)
            await repo.create("cust-1", definition.id, "city-1")
            active = await repo.find_active("cust-1", definition.id, ["cancelled", "delivered"])
        assert active is not None
        assert active.state == "requested"

    @pytest.mark.asyncio
    async def test_list_by_city_paginates(
        self,
        session_factory: Factory,
        make_instance: Callable[..., Awaitable[ServiceInstanceTable]],
    ) -> None:
        created = [await make_instance("requested", city_id="city-9") for _ in range(3)]
        await make_instance("requested", city_id="city-other")

        async with session_factory() as session:
            repo = ServiceInstanceRepository(session)
            first = await repo.list_by_city("city-9", limit=2)
            second = await repo.list_by_city("city-9", limit=2, cursor=first[-1].id)

        ids = [row.id for row in first + second]
        assert len(first) == 2
        assert len(second) == 1
        assert sorted(ids) == sorted(row.id for row in created)


# ---------------------------------------------------------------------------
# Halt context
# ---------------------------------------------------------------------------


class TestStateHistoryRepository:
    @pytest.mark.asyncio
    async def test_sequence_orders_rows_sharing_a_timestamp(
        self,
        session_factory: Factory,
        make_instance: Callable[..., Awaitable[ServiceInstanceTable]],
    ) -> None:
        instance = await make_instance("requested")
        frozen = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        async with session_factory.begin() as session:
            history = StateHistoryRepository(session)
            await history.append(instance.id, "requested", "assigned", changed_by="ops-1")
            await history.append(instance.id, "assigned", "in_progress", changed_by="ops-1")
            await history.append(instance.id, "in_progress", "halted", changed_by="ops-1")
            await session.execute(
                update(ServiceStateHistoryTable)
                .where(ServiceStateHistoryTable.service_instance_id == instance.id)
                .values(created_at=frozen)
            )

        async with session_factory() as session:
            history = StateHistoryRepository(session)
            rows = await history.list_for_instance(instance.id)
            touching = await history.list_touching_state(instance.id, "assigned")

        assert [r.sequence for r in rows] == [4, 3, 2, 1]
        assert [r.to_state for r in rows] == ["halted", "in_progress", "assigned", "requested"]
        assert [r.to_state for r in touching] == ["in_progress", "assigned"]

    @pytest.mark.asyncio
    async def test_sequence_is_per_instance(
        self,
        session_factory: Factory,
        make_instance: Callable[..., Awaitable[ServiceInstanceTable]],
    ) -> None:
        first = await make_instance("requested")
        second = await make_instance("requested")
        async with session_factory.begin() as session:
            row = await StateHistoryRepository(session).append(second.id, "requested", "assigned", changed_by="ops-1")
        assert row.sequence == 2
        assert first.id != second.id


class TestHaltContextRepository:
    @pytest.mark.asyncio
    async def test_save_overwrites(
        self,
        session_factory: Factory,
        make_instance: Callable[..., Awaitable[ServiceInstanceTable]],
    ) -> None:
        instance = await make_instance("in_progress")
        async with session_factory.begin() as session:
            repo = HaltContextRepository(session)
            await repo.save(
                instance.id,
                pre_halt_state="in_progress",
                halt_reason="missing_documents",
                halt_description="EC pending",
                halted_by="ops-1",
                required_actions=["upload EC"],
            )
            await repo.save(
                instance.id,
                pre_halt_state="step_1",
                halt_reason="government_delay",
                halt_description="Office closed",
                halted_by="ops-2",
            )

        async with session_factory() as session:
            ctx = await HaltContextRepository(session).get(instance.id)
        assert ctx is not None
        assert ctx.pre_halt_state == "step_1"
        assert ctx.halt_reason == "government_delay"
        assert ctx.required_actions == []


# ---------------------------------------------------------------------------
# Cash receipts and deposits
# ---------------------------------------------------------------------------


class TestCashRepositories:
    @pytest.mark.asyncio
    async def test_receipt_id_is_unique(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            await CashReceiptRepository(session).create(_receipt_values("r-1", service_request_id))

        with pytest.raises(IntegrityError):
            async with session_factory.begin() as session:
                await CashReceiptRepository(session).create(_receipt_values("r-1", service_request_id))

    @pytest.mark.asyncio
    async def test_amount_round_trips_exactly(self, session_factory: Factory, service_request_id: str) -> None:
        huge = 9_000_000_000_000_000_123
        async with session_factory.begin() as session:
            await CashReceiptRepository(session).create(_receipt_values("r-big", service_request_id, amount=huge))
        async with session_factory() as session:
            row = await CashReceiptRepository(session).get_by_receipt_id("r-big")
        assert row is not None
        assert row.amount_paise == Paise(huge)
        assert isinstance(row.amount_paise, Paise)

    @pytest.mark.asyncio
    async def test_claim_counts_only_unreconciled(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            receipts = CashReceiptRepository(session)
            deposits = CashDepositRepository(session)
            for rid in ("r-1", "r-2"):
                await receipts.create(_receipt_values(rid, service_request_id))
            first = await deposits.create(_deposit_values())
            second = await deposits.create(_deposit_values())

            assert await receipts.claim(["r-1"], first.id) == 1
            assert await receipts.claim(["r-1", "r-2"], second.id) == 1
            claimable = await receipts.list_claimable(["r-1", "r-2"], "agent-1")

        assert claimable == []

    @pytest.mark.asyncio
    async def test_list_claimable_filters_agent(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            receipts = CashReceiptRepository(session)
            await receipts.create(_receipt_values("r-1", service_request_id))
            await receipts.create(_receipt_values("r-2", service_request_id, agent_id="agent-2"))
            found = await receipts.list_claimable(["r-1", "r-2"], "agent-1")
        assert [r.receipt_id for r in found] == ["r-1"]

    @pytest.mark.asyncio
    async def test_release_returns_receipts_to_pool(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            receipts = CashReceiptRepository(session)
            await receipts.create(_receipt_values("r-1", service_request_id, amount=30000))
            await receipts.create(_receipt_values("r-2", service_request_id, amount=20000))
            deposit = await CashDepositRepository(session).create(_deposit_values())
            await receipts.claim(["r-1", "r-2"], deposit.id)
            assert await receipts.outstanding_for_agent("agent-1") == (0, Paise(0))

            assert await receipts.release_for_deposit(deposit.id) == 2
            count, total = await receipts.outstanding_for_agent("agent-1")

        assert count == 2
        assert total == Paise(50000)

    @pytest.mark.asyncio
    async def test_deposit_status_guard(self, session_factory: Factory) -> None:
        async with session_factory.begin() as session:
            repo = CashDepositRepository(session)
            deposit = await repo.create(_deposit_values())
            assert deposit.status == "pending_verification"
            kwargs = {"expected_status": "pending_verification", "new_status": "verified", "verified_by": "ops-1"}
            assert await repo.guarded_set_status(deposit.id, **kwargs) == 1
            assert await repo.guarded_set_status(deposit.id, **kwargs) == 0


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class TestPaymentRepositories:
    @pytest.mark.asyncio
    async def test_upsert_paid_updates_pending_row(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            repo = PaymentRepository(session)
            pending = await repo.create(
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(150000),
                razorpay_order_id="order_1",
            )
            paid = await repo.upsert_paid(
                razorpay_order_id="order_1",
                razorpay_payment_id="pay_1",
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(150000),
                currency="INR",
                payment_method_type="domestic",
            )
        assert paid.id == pending.id
        assert paid.status == "paid"
        assert paid.razorpay_payment_id == "pay_1"
        assert paid.paid_at is not None

    @pytest.mark.asyncio
    async def test_upsert_paid_keeps_stored_amount(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            repo = PaymentRepository(session)
            await repo.create(
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(150000),
                razorpay_order_id="order_1",
            )
            paid = await repo.upsert_paid(
                razorpay_order_id="order_1",
                razorpay_payment_id="pay_1",
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(1),
                currency="INR",
                payment_method_type="domestic",
            )
        assert paid.amount_paise == Paise(150000)
        assert paid.status == "paid"

    @pytest.mark.asyncio
    async def test_payment_link_row_without_order(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            repo = PaymentRepository(session)
            created = await repo.create(
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(150000),
                razorpay_payment_link_id="plink_1",
            )
            await repo.set_status(created.id, "paid", razorpay_order_id="order_pl", razorpay_payment_id="pay_pl")
            by_link = await repo.get_by_payment_link_id("plink_1")
            by_order = await repo.get_by_order_id("order_pl")
        assert by_link is not None and by_order is not None
        assert by_link.id == by_order.id == created.id
        assert by_link.status == "paid"
        assert by_link.razorpay_payment_id == "pay_pl"

    @pytest.mark.asyncio
    async def test_create_needs_order_or_link(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            with pytest.raises(ValueError, match="order id or payment link id"):
                await PaymentRepository(session).create(
                    service_request_id=service_request_id,
                    customer_id="cust-1",
                    amount_paise=Paise(100),
                )

    @pytest.mark.asyncio
    async def test_upsert_paid_inserts_unknown_order(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            repo = PaymentRepository(session)
            paid = await repo.upsert_paid(
                razorpay_order_id="order_new",
                razorpay_payment_id="pay_9",
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(100),
                currency="INR",
                payment_method_type="domestic",
            )
            assert await repo.get_by_gateway_payment_id("pay_9") is not None
        assert paid.status == "paid"

    @pytest.mark.asyncio
    async def test_audit_trail_is_oldest_first(self, session_factory: Factory, service_request_id: str) -> None:
        async with session_factory.begin() as session:
            payment = await PaymentRepository(session).create(
                service_request_id=service_request_id,
                customer_id="cust-1",
                amount_paise=Paise(100),
                razorpay_order_id="order_a",
            )
            audit = PaymentAuditLogRepository(session)
            await audit.append(payment.id, action="order_created", old_state=None, new_state="pending", performed_by="c")
            await audit.append(payment.id, action="status_change", old_state="pending", new_state="paid", performed_by="c")
            trail = await audit.list_for_payment(payment.id)
        assert [row.action for row in trail] == ["order_created", "status_change"]

    @pytest.mark.asyncio
    async def test_webhook_event_recorded_once(self, session_factory: Factory) -> None:
        async with session_factory.begin() as session:
            events = PaymentWebhookEventRepository(session)
            assert await events.record("evt_1", "payment.captured") is True
            assert await events.record("evt_1", "payment.captured") is False
            await events.mark("evt_1", "processed")
            row = await events.get("evt_1")
        assert row is not None
        assert row.status == "processed"
        assert row.processed_at is not None


# ---------------------------------------------------------------------------
# Service requests
# ---------------------------------------------------------------------------


class TestServiceRequestRepository:
    @pytest.mark.asyncio
    async def test_update_payment(self, session_factory: Factory) -> None:
        async with session_factory.begin() as session:
            repo = ServiceRequestRepository(session)
            request = await repo.create("cust-1", "city-1", fee_paise="150000")
            assert await repo.update_payment(request.id, payment_status="collected", payment_method="cash") == 1
            assert await repo.update_payment("missing", payment_status="paid") == 0
            row = await repo.get(request.id)
        assert row is not None
        assert row.fee_paise == Paise(150000)
        assert row.payment_status == "collected"
        assert row.payment_method == "cash"


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------


class TestJobRepository:
    @pytest.mark.asyncio
    async def test_singleton_key_deduplicates_live_jobs(self, session_factory: Factory) -> None:
        run_after = datetime.now(UTC)
        async with session_factory.begin() as session:
            jobs = JobRepository(session)
            first = await jobs.enqueue("notification.send", {"a": 1}, run_after=run_after, singleton_key="k-1")
            second = await jobs.enqueue("notification.send", {"a": 2}, run_after=run_after, singleton_key="k-1")
            third = await jobs.enqueue("notification.send", {"a": 3}, run_after=run_after, singleton_key="k-2")
            rows = await jobs.list_by_name("notification.send")
        assert first is not None
        assert second is None
        assert third is not None
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_jobs_without_key_never_deduplicate(self, session_factory: Factory) -> None:
        run_after = datetime.now(UTC)
        async with session_factory.begin() as session:
            jobs = JobRepository(session)
            await jobs.enqueue("cash.receipt-recorded", {}, run_after=run_after)
            await jobs.enqueue("cash.receipt-recorded", {}, run_after=run_after)
            rows = await jobs.list_by_name("cash.receipt-recorded")
        assert len(rows) == 2
