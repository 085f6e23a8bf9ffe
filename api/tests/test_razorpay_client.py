"""Tests for the Razorpay HTTP client and signature checks."""

from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest
from propflow_engine.money import Paise

from propflow_api.services.razorpay_client import RazorpayClient, RazorpayError


def _checkout_signature(order_id: str, payment_id: str, secret: bytes = b"rzp_secret") -> str:
    return hmac.new(secret, f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def _client(handler, *, webhook_secret: str = "whsec") -> RazorpayClient:
    return RazorpayClient(
        "rzp_key",
        "rzp_secret",
        webhook_secret=webhook_secret,
        base_url="https://razorpay.test/",
        transport=httpx.MockTransport(handler),
    )


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_posts_integer_paise_with_basic_auth(self) -> None:
        seen: dict[str, httpx.Request] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json={"id": "order_1", "status": "created"})

        client = _client(handler)
        order = await client.create_order(Paise(150000), "INR", "sr_1", notes={"service_request_id": "sr-1"})
        await client.close()

        request = seen["request"]
        assert order["id"] == "order_1"
        assert request.url.path == "/v1/orders"
        assert request.headers["Authorization"].startswith("Basic ")
        body = json.loads(request.content)
        assert body == {
            "amount": 150000,
            "currency": "INR",
            "receipt": "sr_1",
            "notes": {"service_request_id": "sr-1"},
        }

    @pytest.mark.asyncio
    async def test_http_error_raises_razorpay_error(self) -> None:
        client = _client(lambda request: httpx.Response(400, json={"error": {"description": "bad amount"}}))
        with pytest.raises(RazorpayError) as exc_info:
            await client.create_order(Paise(1), "INR", "sr_1")
        await client.close()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_transport_error_raises_razorpay_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(RazorpayError) as exc_info:
            await client.create_order(Paise(1), "INR", "sr_1")
        await client.close()
        assert exc_info.value.status_code is None


class TestCreatePaymentLink:
    @pytest.mark.asyncio
    async def test_posts_link_with_gateway_notifications_off(self) -> None:
        seen: dict[str, httpx.Request] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(
                200, json={"id": "plink_1", "short_url": "https://rzp.io/i/abc", "status": "created"}
            )

        client = _client(handler)
        link = await client.create_payment_link(
            Paise(150000),
            "INR",
            description="Khata transfer",
            customer_name="Asha Rao",
            customer_contact="+919800000001",
            expire_by=1_900_000_000,
            callback_url="https://app.test/paid",
            notes={"service_request_id": "sr-1"},
        )
        await client.close()

        request = seen["request"]
        assert link["short_url"] == "https://rzp.io/i/abc"
        assert request.method == "POST"
        assert request.url.path == "/v1/payment_links"
        assert request.headers["Authorization"].startswith("Basic ")
        assert json.loads(request.content) == {
            "amount": 150000,
            "currency": "INR",
            "description": "Khata transfer",
            "customer": {"name": "Asha Rao", "contact": "+919800000001"},
            "notify": {"sms": False, "email": False, "whatsapp": False},
            "expire_by": 1_900_000_000,
            "callback_url": "https://app.test/paid",
            "callback_method": "get",
            "notes": {"service_request_id": "sr-1"},
        }

    @pytest.mark.asyncio
    async def test_optional_fields_omitted(self) -> None:
        seen: dict[str, httpx.Request] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json={"id": "plink_2", "short_url": "https://rzp.io/i/def"})

        client = _client(handler)
        await client.create_payment_link(
            Paise(100),
            "INR",
            description="Fee",
            customer_name="Asha Rao",
            customer_contact="+919800000001",
            customer_email="asha@example.com",
            expire_by=1_900_000_000,
        )
        await client.close()

        body = json.loads(seen["request"].content)
        assert body["customer"]["email"] == "asha@example.com"
        assert "callback_url" not in body
        assert "notes" not in body

    @pytest.mark.asyncio
    async def test_http_error_raises_razorpay_error(self) -> None:
        client = _client(lambda request: httpx.Response(400, json={"error": {"description": "expire_by too soon"}}))
        with pytest.raises(RazorpayError, match="payment link creation failed: 400") as exc_info:
            await client.create_payment_link(
                Paise(100),
                "INR",
                description="Fee",
                customer_name="Asha Rao",
                customer_contact="+919800000001",
                expire_by=1,
            )
        await client.close()
        assert exc_info.value.status_code == 400


class TestSignatures:
    def test_payment_signature_round_trip(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        signature = _checkout_signature("order_1", "pay_1")
        assert client.verify_payment_signature("order_1", "pay_1", signature)
        assert client.verify_payment_signature("order_1", "pay_1", signature.upper())

    def test_payment_signature_bound_to_ids(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        signature = _checkout_signature("order_1", "pay_1")
        assert not client.verify_payment_signature("order_1", "pay_2", signature)
        assert not client.verify_payment_signature("order_1", "pay_1", "not-a-signature")

    def test_payment_signature_keyed_by_secret(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        forged = _checkout_signature("order_1", "pay_1", secret=b"other_secret")
        assert not client.verify_payment_signature("order_1", "pay_1", forged)
        assert not hasattr(client, "sign_payment")

    def test_webhook_signature_covers_raw_body(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        body = b'{"event":"payment.captured"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        assert client.verify_webhook_signature(body, signature)
        assert not client.verify_webhook_signature(body + b" ", signature)

    def test_webhook_without_secret_is_rejected(self) -> None:
        client = _client(lambda r: httpx.Response(200), webhook_secret="")
        assert not client.verify_webhook_signature(b"{}", "anything")

    def test_public_key_id(self) -> None:
        assert _client(lambda r: httpx.Response(200)).public_key_id == "rzp_key"
