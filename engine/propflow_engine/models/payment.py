"""Payment statuses and engine results."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from propflow_engine.money import Paise


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethodType(str, Enum):
    DOMESTIC = "domestic"
    INTERNATIONAL = "international"


class PaymentOrder(BaseModel):
    """Everything a client needs to open the gateway checkout."""

    order_id: str
    payment_id: str
    amount_paise: Paise
    currency: str
    razorpay_key_id: str
    service_request_id: str


class PaymentLink(BaseModel):
    """A hosted payment page sent to the customer instead of checkout."""

    payment_id: str
    payment_link_id: str
    short_url: str
    amount_paise: Paise
    currency: str
    service_request_id: str
    expires_at: datetime


class PaymentVerification(BaseModel):
    payment_id: str
    status: PaymentStatus
    amount_paise: Paise
    service_request_id: str
    already_processed: bool = False


class PaymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    service_request_id: str
    customer_id: str
    amount_paise: Paise
    currency: str
    payment_method_type: PaymentMethodType
    razorpay_order_id: str | None = None
    razorpay_payment_link_id: str | None = None
    razorpay_payment_id: str | None = None
    status: PaymentStatus
    failure_reason: str | None = None
    paid_at: datetime | None = None
    created_at: datetime


class PaymentAuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    action: str
    old_state: str | None = None
    new_state: str
    performed_by: str
    details: dict[str, Any] | None = None
    created_at: datetime
