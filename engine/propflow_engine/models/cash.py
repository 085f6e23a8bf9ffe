"""Cash collection payloads and statuses."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from propflow_engine.money import Paise


class DepositStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DepositMethod(str, Enum):
    BANK_DEPOSIT = "bank_deposit"
    OFFICE_HANDOVER = "office_handover"


class ServiceRequestPaymentStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    PAID = "paid"
    FAILED = "failed"


class CashReceiptCreate(BaseModel):
    """A field agent's record of cash collected for one task.

    ``receipt_id`` is generated on the device and is the idempotency key.
    """

    receipt_id: str = Field(..., min_length=1, max_length=64)
    task_id: str = Field(..., min_length=1)
    service_request_id: str = Field(..., min_length=1)
    amount_paise: Paise
    customer_name: str
    service_name: str
    agent_id: str = Field(..., min_length=1)
    gps_lat: float
    gps_lng: float
    signature_hash: str
    pdf_url: str | None = None
    city_id: str = Field(..., min_length=1)
    client_timestamp: datetime

    @field_validator("amount_paise")
    @classmethod
    def _positive_amount(cls, v: Paise) -> Paise:
        if v <= 0:
            raise ValueError("amount_paise must be positive")
        return v


class DepositRecord(BaseModel):
    """An agent handing in a bundle of receipts."""

    agent_id: str = Field(..., min_length=1)
    receipt_ids: list[str] = Field(..., min_length=1)
    deposit_amount_paise: Paise
    deposit_method: DepositMethod
    deposit_reference: str | None = None
    deposit_photo_url: str | None = None
    gps_lat: float
    gps_lng: float

    @field_validator("receipt_ids")
    @classmethod
    def _unique_receipts(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("receipt_ids must not contain duplicates")
        return v


class AgentCashBalance(BaseModel):
    agent_id: str
    unreconciled_count: int
    total_outstanding_paise: Paise


class CashReceiptRecord(BaseModel):
    """A stored receipt as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    receipt_id: str
    task_id: str
    service_request_id: str
    agent_id: str
    amount_paise: Paise
    customer_name: str
    service_name: str
    city_id: str
    is_reconciled: bool
    deposit_id: str | None = None
    reconciled_at: datetime | None = None
    client_timestamp: datetime
    created_at: datetime


class CashDepositRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    city_id: str
    total_amount_paise: Paise
    receipt_count: int
    deposit_method: DepositMethod
    deposit_reference: str | None = None
    status: DepositStatus
    verified_by: str | None = None
    verified_at: datetime | None = None
    notes: str | None = None
    deposited_at: datetime


class ReceiptResult(BaseModel):
    already_processed: bool
    receipt: CashReceiptRecord
