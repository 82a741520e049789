import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from orderflow.config import settings
from orderflow.metrics import webhook_notifications_total
from orderflow.provider_client import verify_webhook_signature
from orderflow.queue import push_reconcile_request
from orderflow.redis_client import claim_notification, release_notification
from orderflow.roles import Role
from orderflow.routes.common import Actor, get_actor, get_services
from orderflow.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class NotificationObject(BaseModel):
    id: str = Field(..., min_length=1, description="Provider payment id")
    status: str | None = Field(default=None, description="Claimed status; informational only")
    metadata: dict = Field(default_factory=dict)


class NotificationBody(BaseModel):
    event: str = Field(..., description="e.g. payment.succeeded")
    object: NotificationObject


@router.post("/webhook")
async def payment_webhook(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Provider push notification. Only the payment id is used: it must match a known
    attempt, and the worker re-reads the status from the provider before acting.
    Same notification twice -> 200 (already processed). New -> 202 Accepted.
    """
    raw = await request.body()
    if settings.webhook_secret:
        signature = request.headers.get("Webhook-Signature")
        if not verify_webhook_signature(raw, signature, settings.webhook_secret):
            webhook_notifications_total.labels(result="bad_signature").inc()
            raise HTTPException(status_code=401, detail="INVALID_SIGNATURE")
    try:
        body = NotificationBody.model_validate(json.loads(raw or b"{}"))
    except (ValueError, ValidationError):
        webhook_notifications_total.labels(result="malformed").inc()
        raise HTTPException(status_code=400, detail="MALFORMED_NOTIFICATION")

    payment_id = body.object.id
    attempt = await services.store.get_attempt(payment_id)
    if attempt is None:
        webhook_notifications_total.labels(result="unknown_payment").inc()
        logger.warning("Notification %s for unknown payment %s", body.event, payment_id)
        raise HTTPException(status_code=404, detail="UNKNOWN_PAYMENT")
    claimed_order = body.object.metadata.get("order_id")
    if claimed_order is not None and claimed_order != attempt.order_id:
        logger.warning("Notification for payment %s claims order %s, attempt belongs to %s",
                       payment_id, claimed_order, attempt.order_id)

    dedupe_key = f"webhook:{payment_id}:{body.event}"
    if not await claim_notification(dedupe_key, settings.webhook_dedupe_ttl_seconds):
        webhook_notifications_total.labels(result="duplicate").inc()
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "payment_id": payment_id},
        )
    try:
        await push_reconcile_request(payment_id, "webhook")
    except Exception:
        await release_notification(dedupe_key)
        raise
    webhook_notifications_total.labels(result="accepted").inc()
    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "payment_id": payment_id},
    )


@router.get("/{payment_id}")
async def payment_status(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """What the customer sees: processing until reconciliation converges, then paid/canceled/failed."""
    view = await services.orders.payment_view(payment_id)
    if actor.role == Role.CUSTOMER:
        order = await services.orders.get_order(view["order_id"])
        if order.customer_id != actor.user_id:
            raise HTTPException(status_code=403, detail="FORBIDDEN")
    return JSONResponse(status_code=200, content=view)
