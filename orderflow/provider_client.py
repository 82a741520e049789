"""
Payment provider client (YooKassa-style REST API) and webhook signature check.

The rest of the code only sees `ProviderClient`: create a payment, read its
status. Timeouts, transport errors and 5xx responses surface as
ProviderUnavailable so the reconciliation scheduler can retry on its next tick.
"""
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx

from orderflow.config import settings
from orderflow.errors import ProviderUnavailable
from orderflow.metrics import payment_provider_errors_total
from orderflow.models import ProviderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreatedPayment:
    payment_id: str
    confirmation_url: str | None


class ProviderClient(Protocol):
    async def create_payment(self, amount_cents: int, metadata: dict) -> CreatedPayment: ...

    async def get_status(self, payment_id: str) -> ProviderStatus: ...

    async def aclose(self) -> None: ...


def parse_status(raw: str | None) -> ProviderStatus:
    """Map a provider status string to ProviderStatus. Anything unrecognised counts as pending."""
    try:
        return ProviderStatus(raw)
    except ValueError:
        logger.warning("Unrecognised provider status %r, treating as pending", raw)
        return ProviderStatus.PENDING


def format_amount(amount_cents: int) -> str:
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


class HttpProviderClient:
    def __init__(
        self,
        base_url: str | None = None,
        shop_id: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(shop_id or settings.provider_shop_id, secret_key or settings.provider_secret_key),
            timeout=timeout or settings.provider_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, operation: str, method: str, url: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            payment_provider_errors_total.labels(operation=operation).inc()
            raise ProviderUnavailable(f"{operation}: provider timed out") from e
        except httpx.RequestError as e:
            payment_provider_errors_total.labels(operation=operation).inc()
            raise ProviderUnavailable(f"{operation}: {e}") from e
        if resp.status_code >= 500:
            payment_provider_errors_total.labels(operation=operation).inc()
            raise ProviderUnavailable(f"{operation}: provider answered {resp.status_code}")
        if resp.status_code >= 400:
            payment_provider_errors_total.labels(operation=operation).inc()
            logger.error("Provider rejected %s: %s %s", operation, resp.status_code, resp.text)
            raise ProviderUnavailable(f"{operation}: provider rejected request ({resp.status_code})")
        return resp.json()

    async def create_payment(self, amount_cents: int, metadata: dict) -> CreatedPayment:
        body = {
            "amount": {"value": format_amount(amount_cents), "currency": settings.provider_currency},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": settings.payment_return_url},
            "description": settings.payment_description,
            "metadata": metadata,
        }
        data = await self._send(
            "create_payment",
            "POST",
            "/payments",
            json=body,
            headers={"Idempotence-Key": str(uuid.uuid4())},
        )
        confirmation = data.get("confirmation") or {}
        return CreatedPayment(payment_id=data["id"], confirmation_url=confirmation.get("confirmation_url"))

    async def get_status(self, payment_id: str) -> ProviderStatus:
        data = await self._send("get_status", "GET", f"/payments/{payment_id}")
        return parse_status(data.get("status"))


def verify_webhook_signature(raw_body: bytes, header: str | None, secret: str) -> bool:
    """
    Check `Webhook-Signature: <timestamp>.<hex hmac-sha256(secret, "<timestamp>.<body>")>`.
    """
    if not header:
        return False
    timestamp, sep, received = header.partition(".")
    if not sep or not timestamp or not received:
        return False
    expected = hmac.new(
        secret.encode(),
        timestamp.encode() + b"." + raw_body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, received)
