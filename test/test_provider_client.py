import hashlib
import hmac
import json

import httpx
import pytest

from orderflow.errors import ProviderUnavailable
from orderflow.models import ProviderStatus
from orderflow.provider_client import HttpProviderClient, format_amount, parse_status, verify_webhook_signature


def _client(handler) -> HttpProviderClient:
    return HttpProviderClient(
        base_url="https://provider.test/v3",
        shop_id="shop-1",
        secret_key="key-1",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


async def test_create_payment_request_shape():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(
            200,
            json={
                "id": "2d1f-payment",
                "status": "pending",
                "confirmation": {"type": "redirect", "confirmation_url": "https://provider.test/pay/2d1f"},
            },
        )

    client = _client(handler)
    created = await client.create_payment(45050, {"order_id": "ord-1"})
    await client.aclose()

    assert created.payment_id == "2d1f-payment"
    assert created.confirmation_url == "https://provider.test/pay/2d1f"
    request = seen["request"]
    assert request.method == "POST"
    assert request.url.path == "/v3/payments"
    assert request.headers["Idempotence-Key"]
    assert request.headers["Authorization"].startswith("Basic ")
    body = json.loads(request.content)
    assert body["amount"]["value"] == "450.50"
    assert body["capture"] is True
    assert body["metadata"] == {"order_id": "ord-1"}


async def test_get_status():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3/payments/pay-9"
        return httpx.Response(200, json={"id": "pay-9", "status": "waiting_for_capture"})

    client = _client(handler)
    assert await client.get_status("pay-9") == ProviderStatus.WAITING_FOR_CAPTURE
    await client.aclose()


@pytest.mark.parametrize("status_code", [500, 503, 401])
async def test_error_responses_are_unavailable(status_code):
    client = _client(lambda request: httpx.Response(status_code, json={"type": "error"}))
    with pytest.raises(ProviderUnavailable):
        await client.get_status("pay-9")
    await client.aclose()


async def test_transport_error_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(ProviderUnavailable):
        await client.create_payment(100, {})
    await client.aclose()


def test_parse_status():
    assert parse_status("succeeded") == ProviderStatus.SUCCEEDED
    assert parse_status("refunded") == ProviderStatus.PENDING
    assert parse_status(None) == ProviderStatus.PENDING


def test_format_amount():
    assert format_amount(5) == "0.05"
    assert format_amount(123400) == "1234.00"


def _sign(body: bytes, secret: str, ts: str = "1700000000") -> str:
    digest = hmac.new(secret.encode(), ts.encode() + b"." + body, hashlib.sha256).hexdigest()
    return f"{ts}.{digest}"


def test_webhook_signature():
    body = b'{"event":"payment.succeeded","object":{"id":"pay-1"}}'
    assert verify_webhook_signature(body, _sign(body, "s3cret"), "s3cret")
    assert not verify_webhook_signature(body, _sign(body, "other"), "s3cret")
    assert not verify_webhook_signature(body + b" ", _sign(body, "s3cret"), "s3cret")
    assert not verify_webhook_signature(body, None, "s3cret")
    assert not verify_webhook_signature(body, "no-separator", "s3cret")
