"""API router for agent cash receipts and deposits.

Money fields are serialised as integer strings of paise.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Response, status
from propflow_engine.models.cash import CashReceiptCreate, DepositRecord

from propflow_api.dependencies import ActorDep, CashServiceDep
from propflow_api.schemas import VerifyDepositRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cash", tags=["cash"])


@router.post("/receipts")
async def create_receipt(
    body: CashReceiptCreate,
    service: CashServiceDep,
    response: Response,
) -> dict[str, Any]:
    """Record a cash receipt; a repeated ``receipt_id`` returns the stored one."""
    result = await service.create_receipt(body)
    response.status_code = status.HTTP_200_OK if result.already_processed else status.HTTP_201_CREATED
    return result.model_dump(mode="json")


@router.get("/agents/{agent_id}/receipts")
async def list_agent_receipts(
    agent_id: str,
    service: CashServiceDep,
    is_reconciled: bool | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    cursor: str | None = Query(None),
) -> dict[str, Any]:
    receipts, next_cursor = await service.get_agent_receipts(
        agent_id, is_reconciled=is_reconciled, limit=limit, cursor=cursor
    )
    return {
        "items": [r.model_dump(mode="json") for r in receipts],
        "next_cursor": next_cursor,
    }


@router.get("/agents/{agent_id}/balance")
async def get_agent_balance(agent_id: str, service: CashServiceDep) -> dict[str, Any]:
    balance = await service.get_agent_cash_balance(agent_id)
    return balance.model_dump(mode="json")


@router.post("/deposits", status_code=status.HTTP_201_CREATED)
async def record_deposit(body: DepositRecord, service: CashServiceDep) -> dict[str, Any]:
    """Create a deposit claiming every listed receipt."""
    deposit = await service.record_deposit(body)
    return deposit.model_dump(mode="json")


@router.post("/deposits/{deposit_id}/verify")
async def verify_deposit(
    deposit_id: str,
    body: VerifyDepositRequest,
    service: CashServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    deposit = await service.verify_deposit(deposit_id, actor_id, body.approved, notes=body.notes)
    return deposit.model_dump(mode="json")
