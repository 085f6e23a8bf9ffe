"""Gateway payment orders, checkout verification and failures.

A local ``payments`` row exists, keyed by the gateway order id, before the
client opens checkout.  A payment link gets the same row keyed by the link
id instead.  Every status change on that row goes through
:meth:`PaymentService.apply_status_change`, which writes the matching audit
row in the same transaction.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from propflow_engine.errors import (
    AmountRequired,
    Forbidden,
    InvalidSignature,
    PaymentNotFound,
    ServiceRequestNotFound,
    ServiceRequestRequired,
)
from propflow_engine.models.cash import ServiceRequestPaymentStatus
from propflow_engine.models.payment import (
    PaymentAuditEntry,
    PaymentLink,
    PaymentMethodType,
    PaymentOrder,
    PaymentRecord,
    PaymentStatus,
    PaymentVerification,
)
from propflow_engine.money import Paise
from propflow_engine.state.repository import (
    PaymentAuditLogRepository,
    PaymentRepository,
    ServiceRequestRepository,
)
from propflow_engine.state.tables import PaymentTable, ServiceRequestTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow_api.services.job_dispatcher import (
    JobDispatcher,
    JobName,
    NotificationType,
    emit_job,
    notification_payload,
)
from propflow_api.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)

# Razorpay caps the order receipt at 40 characters.
_MAX_RECEIPT_LENGTH = 40


class PaymentService:
    """Create gateway orders and record their outcome exactly once.

    Parameters
    ----------
    session_factory:
        Factory for the transactions each operation runs in.
    razorpay:
        Gateway client.
    dispatcher:
        Target for payment notifications.
    default_currency:
        Currency used when a caller does not name one.
    payment_link_expiry_minutes:
        Lifetime of a payment link.
    payment_link_callback_url:
        Page the gateway redirects to after a link is paid.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        razorpay: RazorpayClient,
        dispatcher: JobDispatcher,
        *,
        default_currency: str = "INR",
        payment_link_expiry_minutes: int = 1440,
        payment_link_callback_url: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._razorpay = razorpay
        self._dispatcher = dispatcher
        self._default_currency = default_currency
        self._payment_link_expiry = timedelta(minutes=payment_link_expiry_minutes)
        self._payment_link_callback_url = payment_link_callback_url

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(
        self,
        service_request_id: str,
        customer_id: str,
        city_id: str | None = None,
        amount_paise: Paise | None = None,
        currency: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> PaymentOrder:
        """Create a gateway order and its pending local payment row.

        Raises
        ------
        ServiceRequestNotFound
            If the service request does not exist.
        Forbidden
            If the service request belongs to another customer.
        AmountRequired
            If no amount was given and the request has no stored fee.
        RazorpayError
            If the gateway rejects the order.
        """
        request, amount = await self._payable_request(service_request_id, customer_id, amount_paise)
        currency = currency or self._default_currency
        receipt = f"sr_{service_request_id}_{int(time.time())}"[:_MAX_RECEIPT_LENGTH]
        order = await self._razorpay.create_order(
            amount,
            currency,
            receipt,
            notes={"service_request_id": service_request_id, **(notes or {})},
        )

        async with self._session_factory.begin() as session:
            payment = await PaymentRepository(session).create(
                service_request_id=service_request_id,
                customer_id=customer_id,
                city_id=city_id or request.city_id,
                amount_paise=amount,
                currency=currency,
                razorpay_order_id=order["id"],
            )
            await PaymentAuditLogRepository(session).append(
                payment.id,
                action="order_created",
                old_state=None,
                new_state=PaymentStatus.PENDING.value,
                performed_by=customer_id,
                details={"razorpayOrderId": order["id"], "amountPaise": amount.to_wire()},
            )
            payment_id = payment.id

        logger.info(
            "Created payment order %s for service request %s: %s paise",
            order["id"],
            service_request_id,
            amount,
        )
        return PaymentOrder(
            order_id=order["id"],
            payment_id=payment_id,
            amount_paise=amount,
            currency=currency,
            razorpay_key_id=self._razorpay.public_key_id,
            service_request_id=service_request_id,
        )

    async def create_payment_link(
        self,
        service_request_id: str,
        customer_id: str,
        *,
        customer_name: str,
        customer_phone: str,
        customer_email: str | None = None,
        amount_paise: Paise | None = None,
        description: str | None = None,
        city_id: str | None = None,
    ) -> PaymentLink:
        """Create a gateway payment link for customers who cannot use checkout.

        The link gets a pending local payment row, keyed by the link id, and
        a ``payment_link`` notification carries it to the customer over
        WhatsApp.  The row is marked paid by the ``payment_link.paid``
        webhook.

        Raises
        ------
        ServiceRequestNotFound
            If the service request does not exist.
        Forbidden
            If the service request belongs to another customer.
        AmountRequired
            If no amount was given and the request has no stored fee.
        RazorpayError
            If the gateway rejects the link.
        """
        request, amount = await self._payable_request(service_request_id, customer_id, amount_paise)
        currency = self._default_currency
        expires_at = datetime.now(UTC).replace(microsecond=0) + self._payment_link_expiry
        link = await self._razorpay.create_payment_link(
            amount,
            currency,
            description=description or f"Payment for service request {service_request_id}",
            customer_name=customer_name,
            customer_contact=customer_phone,
            customer_email=customer_email,
            expire_by=int(expires_at.timestamp()),
            callback_url=self._payment_link_callback_url,
            notes={"service_request_id": service_request_id},
        )

        async with self._session_factory.begin() as session:
            payment = await PaymentRepository(session).create(
                service_request_id=service_request_id,
                customer_id=customer_id,
                city_id=city_id or request.city_id,
                amount_paise=amount,
                currency=currency,
                razorpay_payment_link_id=link["id"],
            )
            await PaymentAuditLogRepository(session).append(
                payment.id,
                action="payment_link_created",
                old_state=None,
                new_state=PaymentStatus.PENDING.value,
                performed_by=customer_id,
                details={"razorpayPaymentLinkId": link["id"], "amountPaise": amount.to_wire()},
            )
            payment_id = payment.id

        logger.info(
            "Created payment link %s for service request %s: %s paise",
            link["id"],
            service_request_id,
            amount,
        )
        await emit_job(
            self._dispatcher,
            JobName.NOTIFICATION_SEND,
            notification_payload(
                NotificationType.PAYMENT_LINK,
                customerId=customer_id,
                customerPhone=customer_phone,
                serviceRequestId=service_request_id,
                shortUrl=link["short_url"],
                amountPaise=amount.to_wire(),
            ),
        )
        return PaymentLink(
            payment_id=payment_id,
            payment_link_id=link["id"],
            short_url=link["short_url"],
            amount_paise=amount,
            currency=currency,
            service_request_id=service_request_id,
            expires_at=expires_at,
        )

    async def _payable_request(
        self,
        service_request_id: str,
        customer_id: str,
        amount_paise: Paise | None,
    ) -> tuple[ServiceRequestTable, Paise]:
        async with self._session_factory() as session:
            request = await ServiceRequestRepository(session).get(service_request_id)
        if request is None:
            raise ServiceRequestNotFound(details={"serviceRequestId": service_request_id})
        if request.customer_id != customer_id:
            raise Forbidden("Not your service request")

        amount = Paise(amount_paise) if amount_paise is not None else request.fee_paise
        if amount is None or amount <= 0:
            raise AmountRequired(details={"serviceRequestId": service_request_id})
        return request, Paise(amount)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_payment(
        self,
        razorpay_order_id: str,
        razorpay_payment_id: str,
        razorpay_signature: str,
        customer_id: str,
        service_request_id: str | None = None,
        amount_paise: Paise | None = None,
        payment_method_type: PaymentMethodType = PaymentMethodType.DOMESTIC,
    ) -> PaymentVerification:
        """Verify a checkout signature and mark the order paid.

        A payment that is already ``paid`` is returned unchanged with
        ``already_processed=True``.  For a stored order the request and
        amount always come from the order; ``service_request_id`` and
        ``amount_paise`` are only used for an order this service never
        created.

        Raises
        ------
        InvalidSignature
            If the signature does not match the two gateway ids.
        Forbidden
            If the order or request belongs to another customer, or the
            caller names a request other than the order's.
        ServiceRequestNotFound
            If an unknown order names a request that does not exist.
        ServiceRequestRequired
            If neither the caller nor the stored order names the request.
        AmountRequired
            If neither the caller nor the stored order has the amount.
        """
        if not self._razorpay.verify_payment_signature(razorpay_order_id, razorpay_payment_id, razorpay_signature):
            logger.warning("Rejected payment %s for order %s: bad signature", razorpay_payment_id, razorpay_order_id)
            raise InvalidSignature(details={"razorpayOrderId": razorpay_order_id})

        async with self._session_factory.begin() as session:
            payments = PaymentRepository(session)
            existing = await payments.get_by_order_id(razorpay_order_id, for_update=True)
            if existing is not None and existing.status == PaymentStatus.PAID.value:
                logger.info("Payment for order %s already verified", razorpay_order_id)
                return PaymentVerification(
                    payment_id=existing.id,
                    status=PaymentStatus.PAID,
                    amount_paise=existing.amount_paise,
                    service_request_id=existing.service_request_id,
                    already_processed=True,
                )

            if existing is not None:
                request_id, amount = self._check_stored_order(
                    existing, customer_id, service_request_id, amount_paise
                )
            else:
                if not service_request_id:
                    raise ServiceRequestRequired(details={"razorpayOrderId": razorpay_order_id})
                if amount_paise is None:
                    raise AmountRequired(details={"razorpayOrderId": razorpay_order_id})
                request = await ServiceRequestRepository(session).get(service_request_id)
                if request is None:
                    raise ServiceRequestNotFound(details={"serviceRequestId": service_request_id})
                if request.customer_id != customer_id:
                    raise Forbidden(details={"serviceRequestId": service_request_id})
                request_id, amount = service_request_id, Paise(amount_paise)

            old_state = existing.status if existing is not None else None
            payment = await payments.upsert_paid(
                razorpay_order_id=razorpay_order_id,
                razorpay_payment_id=razorpay_payment_id,
                service_request_id=request_id,
                customer_id=existing.customer_id if existing is not None else customer_id,
                amount_paise=amount,
                currency=existing.currency if existing is not None else self._default_currency,
                payment_method_type=PaymentMethodType(payment_method_type).value,
            )
            await PaymentAuditLogRepository(session).append(
                payment.id,
                action="status_change",
                old_state=old_state,
                new_state=PaymentStatus.PAID.value,
                performed_by=customer_id,
                details={"razorpayPaymentId": razorpay_payment_id, "amountPaise": amount.to_wire()},
            )
            await ServiceRequestRepository(session).update_payment(
                request_id,
                payment_status=ServiceRequestPaymentStatus.PAID.value,
                payment_method="razorpay",
            )
            result = PaymentVerification(
                payment_id=payment.id,
                status=PaymentStatus.PAID,
                amount_paise=payment.amount_paise,
                service_request_id=payment.service_request_id,
            )

        logger.info("Payment %s verified for order %s", result.payment_id, razorpay_order_id)
        await self.notify_paid(result.payment_id, result.service_request_id, result.amount_paise)
        return result

    @staticmethod
    def _check_stored_order(
        existing: PaymentTable,
        customer_id: str,
        service_request_id: str | None,
        amount_paise: Paise | None,
    ) -> tuple[str, Paise]:
        """Return the stored request and amount; caller values may only repeat them."""
        if existing.customer_id != customer_id:
            raise Forbidden("Not your payment", details={"razorpayOrderId": existing.razorpay_order_id})
        if service_request_id and service_request_id != existing.service_request_id:
            raise Forbidden(
                "Order belongs to a different service request",
                details={"razorpayOrderId": existing.razorpay_order_id, "serviceRequestId": service_request_id},
            )
        if amount_paise is not None and Paise(amount_paise) != existing.amount_paise:
            logger.warning(
                "Ignoring amount %s for order %s: stored order is %s paise",
                amount_paise,
                existing.razorpay_order_id,
                existing.amount_paise,
            )
        return existing.service_request_id, existing.amount_paise

    async def record_failure(self, razorpay_order_id: str, reason: str, customer_id: str) -> PaymentRecord:
        """Mark a pending payment ``failed``.

        A payment that is already ``failed`` or ``paid`` is returned as-is.

        Raises
        ------
        PaymentNotFound
            If no local payment exists for the order.
        """
        async with self._session_factory.begin() as session:
            payment = await PaymentRepository(session).get_by_order_id(razorpay_order_id, for_update=True)
            if payment is None:
                raise PaymentNotFound(details={"razorpayOrderId": razorpay_order_id})
            if payment.status != PaymentStatus.PENDING.value:
                logger.warning(
                    "Ignoring failure report for order %s: payment is %s",
                    razorpay_order_id,
                    payment.status,
                )
                return PaymentRecord.model_validate(payment)
            payment = await self.apply_status_change(
                session,
                payment,
                PaymentStatus.FAILED,
                performed_by=customer_id,
                failure_reason=reason,
                details={"reason": reason},
            )
            record = PaymentRecord.model_validate(payment)
        logger.info("Payment %s for order %s failed: %s", record.id, razorpay_order_id, reason)
        return record

    async def apply_status_change(
        self,
        session: AsyncSession,
        payment: PaymentTable,
        new_status: PaymentStatus,
        *,
        performed_by: str,
        razorpay_payment_id: str | None = None,
        razorpay_order_id: str | None = None,
        failure_reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> PaymentTable:
        """Change a payment's status and append the audit row in *session*."""
        old_state = payment.status
        payments = PaymentRepository(session)
        await payments.set_status(
            payment.id,
            new_status.value,
            razorpay_payment_id=razorpay_payment_id,
            razorpay_order_id=razorpay_order_id,
            failure_reason=failure_reason,
            paid_at=datetime.now(UTC) if new_status is PaymentStatus.PAID else None,
        )
        await PaymentAuditLogRepository(session).append(
            payment.id,
            action="status_change",
            old_state=old_state,
            new_state=new_status.value,
            performed_by=performed_by,
            details=details,
        )
        if new_status is PaymentStatus.PAID:
            await ServiceRequestRepository(session).update_payment(
                payment.service_request_id,
                payment_status=ServiceRequestPaymentStatus.PAID.value,
                payment_method="razorpay",
            )
        refreshed = await payments.get(payment.id)
        if refreshed is None:
            raise PaymentNotFound(details={"paymentId": payment.id})
        return refreshed

    async def notify_paid(self, payment_id: str, service_request_id: str, amount: Paise) -> None:
        await emit_job(
            self._dispatcher,
            JobName.NOTIFICATION_SEND,
            notification_payload(
                NotificationType.PAYMENT_RECEIVED,
                paymentId=payment_id,
                serviceRequestId=service_request_id,
                amountPaise=amount.to_wire(),
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_payment_status(self, service_request_id: str, customer_id: str) -> list[PaymentRecord]:
        async with self._session_factory() as session:
            rows = await PaymentRepository(session).list_for_request(service_request_id, customer_id)
        return [PaymentRecord.model_validate(r) for r in rows]

    async def get_audit_trail(self, payment_id: str) -> list[PaymentAuditEntry]:
        """Return a payment's audit rows, oldest first.

        Raises
        ------
        PaymentNotFound
            If the payment does not exist.
        """
        async with self._session_factory() as session:
            if await PaymentRepository(session).get(payment_id) is None:
                raise PaymentNotFound(details={"paymentId": payment_id})
            rows = await PaymentAuditLogRepository(session).list_for_payment(payment_id)
        return [PaymentAuditEntry.model_validate(r) for r in rows]
