"""Razorpay webhook processing.

Each delivery is recorded by event id before it is handled, so a redelivered
event is acknowledged without touching any payment.

``payment.captured``, ``order.paid`` and ``payment_link.paid`` mark the
payment paid and ``payment.failed`` marks it failed, all through
:meth:`PaymentService.apply_status_change`.  ``payment.authorized`` only adds
an audit row.  Other event types are recorded as ``ignored``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from propflow_engine.errors import InvalidSignature, PaymentNotFound
from propflow_engine.models.payment import PaymentStatus
from propflow_engine.state.repository import (
    PaymentAuditLogRepository,
    PaymentRepository,
    PaymentWebhookEventRepository,
)
from propflow_engine.state.tables import PaymentTable
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow_api.services.payment_service import PaymentService
from propflow_api.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)

_WEBHOOK_ACTOR = "razorpay_webhook"

EVENT_PAYMENT_CAPTURED = "payment.captured"
EVENT_PAYMENT_AUTHORIZED = "payment.authorized"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_ORDER_PAID = "order.paid"
EVENT_PAYMENT_LINK_PAID = "payment_link.paid"


class WebhookResult(BaseModel):
    event_id: str
    event_type: str
    processed: bool
    message: str


class PaymentWebhookService:
    """Verify, de-duplicate and apply gateway webhook events.

    Parameters
    ----------
    session_factory:
        Factory for the transactions each step runs in.
    razorpay:
        Client holding the webhook secret.
    payments:
        Service whose audited status-change path events are applied through.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        razorpay: RazorpayClient,
        payments: PaymentService,
    ) -> None:
        self._session_factory = session_factory
        self._razorpay = razorpay
        self._payments = payments

    async def handle_webhook(self, raw_body: bytes, signature: str, event_id: str) -> WebhookResult:
        """Process one webhook delivery.

        Raises
        ------
        InvalidSignature
            If the body does not match ``X-Razorpay-Signature``.
        ValueError
            If the body is not a JSON object.
        """
        if not signature or not self._razorpay.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook %s: bad signature", event_id)
            raise InvalidSignature("Invalid webhook signature", details={"eventId": event_id})

        try:
            body = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Webhook body is not valid JSON: {exc.msg}") from exc
        if not isinstance(body, dict):
            raise ValueError("Webhook body must be a JSON object")
        event_type = str(body.get("event", ""))

        async with self._session_factory.begin() as session:
            first_delivery = await PaymentWebhookEventRepository(session).record(event_id, event_type)
        if not first_delivery:
            logger.info("Duplicate webhook %s (%s) ignored", event_id, event_type)
            return WebhookResult(
                event_id=event_id,
                event_type=event_type,
                processed=False,
                message="Duplicate event, already processed",
            )

        try:
            handled = await self._dispatch(event_type, body)
        except Exception as exc:
            await self._mark(event_id, "failed", str(exc))
            logger.exception("Webhook %s (%s) failed", event_id, event_type)
            raise

        await self._mark(event_id, "processed" if handled else "ignored")
        return WebhookResult(
            event_id=event_id,
            event_type=event_type,
            processed=handled,
            message=f"Event {event_type} processed" if handled else f"Event {event_type} ignored",
        )

    async def _mark(self, event_id: str, status: str, error: str | None = None) -> None:
        async with self._session_factory.begin() as session:
            await PaymentWebhookEventRepository(session).mark(event_id, status, error)

    async def _dispatch(self, event_type: str, body: dict[str, Any]) -> bool:
        if event_type == EVENT_PAYMENT_CAPTURED:
            entity = _entity(body, "payment")
            gateway_payment_id = str(entity.get("id", ""))
            await self._mark_paid(
                lambda session: _find_payment(session, entity),
                razorpay_payment_id=gateway_payment_id or None,
                details={"razorpayPaymentId": gateway_payment_id},
            )
            return True
        if event_type == EVENT_ORDER_PAID:
            order = _entity(body, "order")
            payment = _optional_entity(body, "payment")
            await self._mark_paid(
                lambda session: _find_by_order(session, str(order.get("id", ""))),
                razorpay_payment_id=payment.get("id") or None,
                details={
                    "event": EVENT_ORDER_PAID,
                    "razorpayOrderId": order.get("id"),
                    "razorpayPaymentId": payment.get("id"),
                },
            )
            return True
        if event_type == EVENT_PAYMENT_LINK_PAID:
            link = _entity(body, "payment_link")
            order = _optional_entity(body, "order")
            payment = _optional_entity(body, "payment")
            await self._mark_paid(
                lambda session: _find_by_payment_link(session, str(link.get("id", ""))),
                razorpay_payment_id=payment.get("id") or None,
                razorpay_order_id=order.get("id") or None,
                details={
                    "event": EVENT_PAYMENT_LINK_PAID,
                    "razorpayPaymentLinkId": link.get("id"),
                    "razorpayPaymentId": payment.get("id"),
                },
            )
            return True
        if event_type == EVENT_PAYMENT_AUTHORIZED:
            return await self._payment_authorized(_entity(body, "payment"))
        if event_type == EVENT_PAYMENT_FAILED:
            await self._payment_failed(_entity(body, "payment"))
            return True
        logger.info("Webhook event type %s has no handler", event_type)
        return False

    async def _mark_paid(
        self,
        find: Callable[[AsyncSession], Awaitable[PaymentTable]],
        *,
        razorpay_payment_id: str | None,
        details: dict[str, Any],
        razorpay_order_id: str | None = None,
    ) -> None:
        """Move the payment *find* locates to ``paid``; a paid payment is left alone."""
        async with self._session_factory.begin() as session:
            payment = await find(session)
            if payment.status == PaymentStatus.PAID.value:
                logger.info("Payment %s already paid; webhook is a no-op", payment.id)
                return
            payment = await self._payments.apply_status_change(
                session,
                payment,
                PaymentStatus.PAID,
                performed_by=_WEBHOOK_ACTOR,
                razorpay_payment_id=razorpay_payment_id,
                razorpay_order_id=razorpay_order_id,
                details=details,
            )
            payment_id = payment.id
            service_request_id = payment.service_request_id
            amount = payment.amount_paise
        logger.info("Payment %s marked paid via webhook", payment_id)
        await self._payments.notify_paid(payment_id, service_request_id, amount)

    async def _payment_authorized(self, entity: dict[str, Any]) -> bool:
        async with self._session_factory.begin() as session:
            payment = await _lookup_payment(session, entity)
            if payment is None:
                logger.info("No payment for authorized Razorpay payment %s", entity.get("id"))
                return False
            await PaymentAuditLogRepository(session).append(
                payment.id,
                action="authorized",
                old_state=payment.status,
                new_state=payment.status,
                performed_by=_WEBHOOK_ACTOR,
                details={"razorpayPaymentId": entity.get("id"), "method": entity.get("method")},
            )
        logger.info("Payment %s authorized; awaiting capture", payment.id)
        return True

    async def _payment_failed(self, entity: dict[str, Any]) -> None:
        async with self._session_factory.begin() as session:
            payment = await _find_payment(session, entity)
            if payment.status != PaymentStatus.PENDING.value:
                logger.info("Payment %s is %s; failure webhook is a no-op", payment.id, payment.status)
                return
            await self._payments.apply_status_change(
                session,
                payment,
                PaymentStatus.FAILED,
                performed_by=_WEBHOOK_ACTOR,
                razorpay_payment_id=entity.get("id") or None,
                failure_reason=entity.get("error_description"),
                details={
                    "razorpayPaymentId": entity.get("id"),
                    "errorCode": entity.get("error_code"),
                    "errorDescription": entity.get("error_description"),
                },
            )
        logger.info("Payment %s marked failed via webhook", payment.id)


def _optional_entity(body: dict[str, Any], name: str) -> dict[str, Any]:
    entity = ((body.get("payload") or {}).get(name) or {}).get("entity")
    return entity if isinstance(entity, dict) else {}


def _entity(body: dict[str, Any], name: str) -> dict[str, Any]:
    entity = _optional_entity(body, name)
    if not entity:
        raise ValueError(f"Webhook payload has no {name} entity")
    return entity


async def _lookup_payment(session: AsyncSession, entity: dict[str, Any]) -> PaymentTable | None:
    payments = PaymentRepository(session)
    payment: PaymentTable | None = None
    if entity.get("order_id"):
        payment = await payments.get_by_order_id(str(entity["order_id"]), for_update=True)
    if payment is None and entity.get("id"):
        payment = await payments.get_by_gateway_payment_id(str(entity["id"]))
    return payment


async def _find_payment(session: AsyncSession, entity: dict[str, Any]) -> PaymentTable:
    payment = await _lookup_payment(session, entity)
    if payment is None:
        raise PaymentNotFound(
            f"Payment not found for Razorpay payment {entity.get('id')}",
            details={"razorpayOrderId": entity.get("order_id")},
        )
    return payment


async def _find_by_order(session: AsyncSession, razorpay_order_id: str) -> PaymentTable:
    payment = await PaymentRepository(session).get_by_order_id(razorpay_order_id, for_update=True)
    if payment is None:
        raise PaymentNotFound(
            f"Payment not found for Razorpay order {razorpay_order_id}",
            details={"razorpayOrderId": razorpay_order_id},
        )
    return payment


async def _find_by_payment_link(session: AsyncSession, razorpay_payment_link_id: str) -> PaymentTable:
    payment = await PaymentRepository(session).get_by_payment_link_id(razorpay_payment_link_id, for_update=True)
    if payment is None:
        raise PaymentNotFound(
            f"Payment not found for Razorpay payment link {razorpay_payment_link_id}",
            details={"razorpayPaymentLinkId": razorpay_payment_link_id},
        )
    return payment
