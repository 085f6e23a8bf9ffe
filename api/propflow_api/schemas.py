"""Request and response models for the HTTP surface.

Cash and payment payloads reuse the engine models directly; the models here
cover the request bodies that only exist at the HTTP boundary and the
responses built from ORM rows.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from propflow_engine.models.halt import HaltReason
from propflow_engine.models.payment import PaymentMethodType
from propflow_engine.money import Paise
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: ErrorBody


# ---------------------------------------------------------------------------
# Service instances
# ---------------------------------------------------------------------------


class CreateInstanceRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    service_definition_id: str = Field(..., min_length=1)
    city_id: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    new_state: str = Field(..., min_length=1)
    reason: str | None = None
    metadata: dict[str, Any] | None = None


class ServiceInstanceResponse(BaseModel):
    """A service instance row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    service_definition_id: str
    city_id: str
    state: str
    current_step_index: int
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    created_at: datetime
    updated_at: datetime


class ServiceInstanceDetailResponse(BaseModel):
    instance: ServiceInstanceResponse
    state: dict[str, Any]


class ServiceInstanceListResponse(BaseModel):
    items: list[ServiceInstanceResponse]
    next_cursor: str | None = None


# ---------------------------------------------------------------------------
# Halt / resume
# ---------------------------------------------------------------------------


class HaltRequest(BaseModel):
    reason: HaltReason
    description: str = Field(..., min_length=1, max_length=2000)
    expected_resume_date: date | None = None
    required_actions: list[str] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    resume_to_state: str | None = None
    notes: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Cash
# ---------------------------------------------------------------------------


class VerifyDepositRequest(BaseModel):
    approved: bool
    notes: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class CreateOrderRequest(BaseModel):
    service_request_id: str = Field(..., min_length=1)
    amount_paise: Paise | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    city_id: str | None = None
    notes: dict[str, str] | None = None


class CreatePaymentLinkRequest(BaseModel):
    service_request_id: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_phone: str = Field(..., min_length=8, max_length=20)
    customer_email: str | None = Field(default=None, max_length=254)
    amount_paise: Paise | None = None
    description: str | None = Field(default=None, max_length=255)
    city_id: str | None = None


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    service_request_id: str | None = None
    amount_paise: Paise | None = None
    payment_method_type: PaymentMethodType = PaymentMethodType.DOMESTIC


class PaymentFailureRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=2000)
