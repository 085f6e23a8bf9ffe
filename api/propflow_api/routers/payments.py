"""API router for gateway payments and the Razorpay webhook."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Header, Query, Request, status

from propflow_api.dependencies import ActorDep, PaymentServiceDep, PaymentWebhookServiceDep
from propflow_api.schemas import (
    CreateOrderRequest,
    CreatePaymentLinkRequest,
    PaymentFailureRequest,
    VerifyPaymentRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/orders", status_code=status.HTTP_201_CREATED)
async def create_order(
    body: CreateOrderRequest,
    service: PaymentServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    """Create a gateway order for the caller's service request."""
    order = await service.create_order(
        body.service_request_id,
        actor_id,
        city_id=body.city_id,
        amount_paise=body.amount_paise,
        currency=body.currency.upper() if body.currency else None,
        notes=body.notes,
    )
    return order.model_dump(mode="json")


@router.post("/links", status_code=status.HTTP_201_CREATED)
async def create_payment_link(
    body: CreatePaymentLinkRequest,
    service: PaymentServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    """Create a payment link the customer receives over WhatsApp."""
    link = await service.create_payment_link(
        body.service_request_id,
        actor_id,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
        customer_email=body.customer_email,
        amount_paise=body.amount_paise,
        description=body.description,
        city_id=body.city_id,
    )
    return link.model_dump(mode="json")


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    service: PaymentServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    verification = await service.verify_payment(
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
        actor_id,
        service_request_id=body.service_request_id,
        amount_paise=body.amount_paise,
        payment_method_type=body.payment_method_type,
    )
    return verification.model_dump(mode="json")


@router.post("/failures")
async def record_failure(
    body: PaymentFailureRequest,
    service: PaymentServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    payment = await service.record_failure(body.razorpay_order_id, body.reason, actor_id)
    return payment.model_dump(mode="json")


@router.get("/status")
async def get_payment_status(
    service: PaymentServiceDep,
    actor_id: ActorDep,
    service_request_id: str = Query(..., min_length=1),
) -> list[dict[str, Any]]:
    payments = await service.get_payment_status(service_request_id, actor_id)
    return [p.model_dump(mode="json") for p in payments]


@router.get("/{payment_id}/audit")
async def get_audit_trail(payment_id: str, service: PaymentServiceDep) -> list[dict[str, Any]]:
    entries = await service.get_audit_trail(payment_id)
    return [e.model_dump(mode="json") for e in entries]


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    service: PaymentWebhookServiceDep,
    x_razorpay_signature: str = Header("", alias="X-Razorpay-Signature"),
    x_razorpay_event_id: str = Header(..., alias="X-Razorpay-Event-Id"),
) -> dict[str, Any]:
    """Receive a gateway webhook.  The signature covers the raw body."""
    raw_body = await request.body()
    result = await service.handle_webhook(raw_body, x_razorpay_signature, x_razorpay_event_id)
    return result.model_dump(mode="json")
