"""HTTP client for the Razorpay orders and payment links APIs.

The key secret never leaves the server: it authenticates every API call
and keys the HMAC used to verify checkout and webhook signatures.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import httpx

from propflow_engine.money import Paise

logger = logging.getLogger(__name__)


class RazorpayError(Exception):
    """The gateway rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    """Thin async wrapper around the Razorpay REST API.

    Parameters
    ----------
    key_id:
        Public key id, also handed to clients to open checkout.
    key_secret:
        Private key secret used for basic auth and payment signatures.
    webhook_secret:
        Secret configured for webhook deliveries.
    base_url:
        API root, ``https://api.razorpay.com`` in production.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to stub the gateway.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        webhook_secret: str = "",
        base_url: str = "https://api.razorpay.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            auth=httpx.BasicAuth(key_id, key_secret),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def public_key_id(self) -> str:
        return self._key_id

    # -- Orders --------------------------------------------------------------

    async def create_order(
        self,
        amount_paise: Paise,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a gateway order.

        Calls ``POST /v1/orders``.  The amount is sent as an integer count
        of paise.

        Raises
        ------
        RazorpayError
            On a non-2xx response or a transport failure.
        """
        payload: dict[str, Any] = {
            "amount": int(Paise(amount_paise)),
            "currency": currency,
            "receipt": receipt,
        }
        if notes:
            payload["notes"] = notes
        return await self._post("/v1/orders", payload, "order creation")

    # -- Payment links -------------------------------------------------------

    async def create_payment_link(
        self,
        amount_paise: Paise,
        currency: str,
        *,
        description: str,
        customer_name: str,
        customer_contact: str,
        expire_by: int,
        customer_email: str | None = None,
        reference_id: str | None = None,
        callback_url: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a hosted payment link.

        Calls ``POST /v1/payment_links``.  Gateway notifications are turned
        off; the link is delivered over WhatsApp by the notification worker.
        *expire_by* is a Unix timestamp in seconds.

        Raises
        ------
        RazorpayError
            On a non-2xx response or a transport failure.
        """
        customer: dict[str, str] = {"name": customer_name, "contact": customer_contact}
        if customer_email:
            customer["email"] = customer_email
        payload: dict[str, Any] = {
            "amount": int(Paise(amount_paise)),
            "currency": currency,
            "description": description,
            "customer": customer,
            "notify": {"sms": False, "email": False, "whatsapp": False},
            "expire_by": expire_by,
        }
        if reference_id:
            payload["reference_id"] = reference_id
        if callback_url:
            payload["callback_url"] = callback_url
            payload["callback_method"] = "get"
        if notes:
            payload["notes"] = notes
        return await self._post("/v1/payment_links", payload, "payment link creation")

    async def _post(self, path: str, payload: dict[str, Any], action: str) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Razorpay returned %d for %s: %s",
                exc.response.status_code,
                action,
                exc.response.text[:500],
            )
            raise RazorpayError(
                f"Razorpay {action} failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Razorpay %s request failed: %s", action, str(exc))
            raise RazorpayError(f"Razorpay {action} request failed: {exc}") from exc
        return response.json()

    # -- Signatures ----------------------------------------------------------

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check the checkout signature over ``"{order_id}|{payment_id}"``."""
        expected = _hmac_sha256_hex(self._key_secret, f"{order_id}|{payment_id}".encode())
        return hmac.compare_digest(expected.encode(), signature.strip().lower().encode("utf-8"))

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """Check an ``X-Razorpay-Signature`` header against the raw body."""
        if not self._webhook_secret:
            logger.warning("Webhook signature check attempted without a configured secret")
            return False
        expected = _hmac_sha256_hex(self._webhook_secret, body)
        return hmac.compare_digest(expected.encode(), signature.strip().lower().encode("utf-8"))

    # -- Lifecycle -----------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
