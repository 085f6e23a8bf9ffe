"""Cash receipts collected by field agents and their reconciliation.

A receipt is claimed by at most one deposit.  :meth:`record_deposit` relies
on the guarded ``UPDATE cash_receipts ... WHERE is_reconciled = false`` and
its row count, not on the earlier read, to reject a receipt that a
concurrent deposit claimed first.
"""

from __future__ import annotations

import logging

from propflow_engine.errors import (
    DepositAlreadyProcessed,
    DepositAmountMismatch,
    DepositNotFound,
    ReceiptMismatch,
    ServiceRequestNotFound,
)
from propflow_engine.models.cash import (
    AgentCashBalance,
    CashDepositRecord,
    CashReceiptCreate,
    CashReceiptRecord,
    DepositRecord,
    DepositStatus,
    ReceiptResult,
    ServiceRequestPaymentStatus,
)
from propflow_engine.money import sum_paise
from propflow_engine.state.repository import (
    CashDepositRepository,
    CashReceiptRepository,
    ServiceRequestRepository,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow_api.services.job_dispatcher import (
    JobDispatcher,
    JobName,
    NotificationType,
    emit_job,
    notification_payload,
)

logger = logging.getLogger(__name__)


class CashCollectionService:
    """Record agent cash receipts, deposits and their verification.

    Parameters
    ----------
    session_factory:
        Factory for the transactions each operation runs in.
    dispatcher:
        Target for reconciliation and notification jobs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: JobDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def create_receipt(self, payload: CashReceiptCreate) -> ReceiptResult:
        """Store a receipt, idempotent on ``receipt_id``.

        A repeated ``receipt_id`` returns the stored receipt with
        ``already_processed=True`` and has no side effects.

        Raises
        ------
        ServiceRequestNotFound
            If the linked service request does not exist.
        """
        existing = await self._get_receipt(payload.receipt_id)
        if existing is not None:
            logger.info("Duplicate cash receipt %s ignored", payload.receipt_id)
            return ReceiptResult(already_processed=True, receipt=existing)

        try:
            async with self._session_factory.begin() as session:
                requests = ServiceRequestRepository(session)
                if await requests.get(payload.service_request_id) is None:
                    raise ServiceRequestNotFound(details={"serviceRequestId": payload.service_request_id})

                row = await CashReceiptRepository(session).create(payload.model_dump())
                await requests.update_payment(
                    payload.service_request_id,
                    payment_status=ServiceRequestPaymentStatus.COLLECTED.value,
                    payment_method="cash",
                    cash_receipt_id=row.id,
                )
                receipt = CashReceiptRecord.model_validate(row)
        except IntegrityError:
            # A concurrent retry inserted the same receipt_id first.
            existing = await self._get_receipt(payload.receipt_id)
            if existing is None:
                raise
            logger.info("Cash receipt %s stored by a concurrent request", payload.receipt_id)
            return ReceiptResult(already_processed=True, receipt=existing)

        logger.info(
            "Recorded cash receipt %s: %s paise by agent %s",
            receipt.receipt_id,
            receipt.amount_paise,
            receipt.agent_id,
        )
        await emit_job(
            self._dispatcher,
            JobName.CASH_RECEIPT_RECORDED,
            {
                "receiptId": receipt.receipt_id,
                "agentId": receipt.agent_id,
                "amountPaise": receipt.amount_paise.to_wire(),
                "cityId": receipt.city_id,
            },
        )
        return ReceiptResult(already_processed=False, receipt=receipt)

    async def _get_receipt(self, receipt_id: str) -> CashReceiptRecord | None:
        async with self._session_factory() as session:
            row = await CashReceiptRepository(session).get_by_receipt_id(receipt_id)
            return CashReceiptRecord.model_validate(row) if row is not None else None

    async def get_agent_receipts(
        self,
        agent_id: str,
        *,
        is_reconciled: bool | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> tuple[list[CashReceiptRecord], str | None]:
        """Return one page of an agent's receipts, newest first, and the next cursor."""
        limit = max(1, min(limit, 100))
        async with self._session_factory() as session:
            rows = await CashReceiptRepository(session).list_for_agent(
                agent_id, is_reconciled=is_reconciled, limit=limit + 1, cursor=cursor
            )
        has_more = len(rows) > limit
        page = [CashReceiptRecord.model_validate(r) for r in rows[:limit]]
        next_cursor = rows[limit - 1].id if has_more else None
        return page, next_cursor

    async def get_agent_cash_balance(self, agent_id: str) -> AgentCashBalance:
        async with self._session_factory() as session:
            count, total = await CashReceiptRepository(session).outstanding_for_agent(agent_id)
        return AgentCashBalance(agent_id=agent_id, unreconciled_count=count, total_outstanding_paise=total)

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def record_deposit(self, payload: DepositRecord) -> CashDepositRecord:
        """Create a deposit that claims every listed receipt, or nothing.

        Raises
        ------
        ReceiptMismatch
            422 if a receipt is missing, owned by another agent or already
            reconciled; 409 if a concurrent deposit claimed one first.
        DepositAmountMismatch
            If the deposit amount differs from the exact receipt total.
        """
        requested = len(payload.receipt_ids)
        async with self._session_factory.begin() as session:
            receipts_repo = CashReceiptRepository(session)
            receipts = await receipts_repo.list_claimable(payload.receipt_ids, payload.agent_id)
            if len(receipts) != requested:
                logger.warning(
                    "Deposit by agent %s rejected: %d of %d receipts claimable",
                    payload.agent_id,
                    len(receipts),
                    requested,
                )
                raise ReceiptMismatch(details={"requested": requested, "found": len(receipts)})

            receipt_total = sum_paise(r.amount_paise for r in receipts)
            if receipt_total != payload.deposit_amount_paise:
                logger.warning(
                    "Deposit by agent %s rejected: amount %s != receipt total %s",
                    payload.agent_id,
                    payload.deposit_amount_paise,
                    receipt_total,
                )
                raise DepositAmountMismatch(
                    details={
                        "receiptTotalPaise": receipt_total.to_wire(),
                        "depositAmountPaise": payload.deposit_amount_paise.to_wire(),
                    }
                )

            deposit = await CashDepositRepository(session).create(
                {
                    "agent_id": payload.agent_id,
                    "city_id": receipts[0].city_id,
                    "total_amount_paise": payload.deposit_amount_paise,
                    "receipt_count": len(receipts),
                    "deposit_method": payload.deposit_method.value,
                    "deposit_reference": payload.deposit_reference,
                    "deposit_photo_url": payload.deposit_photo_url,
                    "gps_lat": payload.gps_lat,
                    "gps_lng": payload.gps_lng,
                }
            )
            claimed = await receipts_repo.claim(payload.receipt_ids, deposit.id)
            if claimed != requested:
                logger.warning(
                    "Deposit by agent %s lost a race: claimed %d of %d receipts",
                    payload.agent_id,
                    claimed,
                    requested,
                )
                raise ReceiptMismatch.race(expected=requested, updated=claimed)
            record = CashDepositRecord.model_validate(deposit)

        logger.info(
            "Recorded deposit %s by agent %s: %d receipts, %s paise",
            record.id,
            record.agent_id,
            record.receipt_count,
            record.total_amount_paise,
        )
        await emit_job(
            self._dispatcher,
            JobName.NOTIFICATION_SEND,
            notification_payload(
                NotificationType.CASH_DEPOSIT_PENDING,
                agentId=record.agent_id,
                depositId=record.id,
                amountPaise=record.total_amount_paise.to_wire(),
            ),
        )
        return record

    async def verify_deposit(
        self,
        deposit_id: str,
        verified_by: str,
        approved: bool,
        notes: str | None = None,
    ) -> CashDepositRecord:
        """Approve or reject a pending deposit.

        Rejection returns every receipt the deposit claimed to the
        unreconciled pool.

        Raises
        ------
        DepositNotFound
            If the deposit does not exist.
        DepositAlreadyProcessed
            If the deposit is no longer pending verification.
        """
        new_status = DepositStatus.VERIFIED if approved else DepositStatus.REJECTED
        async with self._session_factory.begin() as session:
            deposits = CashDepositRepository(session)
            deposit = await deposits.get(deposit_id)
            if deposit is None:
                raise DepositNotFound(details={"depositId": deposit_id})

            updated = await deposits.guarded_set_status(
                deposit_id,
                expected_status=DepositStatus.PENDING_VERIFICATION.value,
                new_status=new_status.value,
                verified_by=verified_by,
                notes=notes,
            )
            if updated == 0:
                raise DepositAlreadyProcessed(details={"depositId": deposit_id, "status": deposit.status})

            released = 0
            if not approved:
                released = await CashReceiptRepository(session).release_for_deposit(deposit_id)
            record = CashDepositRecord.model_validate(await deposits.get(deposit_id))

        logger.info(
            "Deposit %s %s by %s (%d receipts released)",
            deposit_id,
            new_status.value,
            verified_by,
            released,
        )
        return record
