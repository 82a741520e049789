from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.config import settings
from orderflow.queue import push_reconcile_request
from orderflow.roles import Role
from orderflow.routes.common import (
    Actor,
    assignment_payload,
    attempt_payload,
    get_actor,
    get_services,
    order_payload,
)
from orderflow.services import Services

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="FORBIDDEN")
    return actor


class AssignCourierBody(BaseModel):
    courier_id: str = Field(..., min_length=1)


@router.post("/orders/{order_id}/courier")
async def assign_courier(
    order_id: str,
    body: AssignCourierBody,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.assignments.assign_courier(order_id, body.courier_id, actor.user_id)
    return JSONResponse(status_code=200, content={"order": order_payload(order)})


@router.delete("/orders/{order_id}/courier")
async def unassign_courier(
    order_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.assignments.unassign_courier(order_id, actor.user_id)
    return JSONResponse(status_code=200, content={"order": order_payload(order)})


@router.get("/orders/{order_id}/assignments")
async def assignment_history(
    order_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> JSONResponse:
    records = await services.assignments.history(order_id)
    return JSONResponse(status_code=200, content={"assignments": [assignment_payload(r) for r in records]})


@router.get("/payments/stalled")
async def stalled_payments(
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Card payments still unresolved (pending or awaiting capture) after the full polling budget. Never auto-cancelled."""
    attempts = await services.store.list_stalled_attempts(settings.poll_max_attempts)
    return JSONResponse(status_code=200, content={"payments": [attempt_payload(a) for a in attempts]})


@router.post("/payments/{payment_id}/reconcile")
async def reconcile_payment(
    payment_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Manual retry: reconcile once, in this process, and report the outcome."""
    outcome = await services.engine.reconcile(payment_id)
    attempt = await services.store.get_attempt(payment_id)
    return JSONResponse(
        status_code=200,
        content={"outcome": outcome.value, "payment": attempt_payload(attempt)},
    )


@router.post("/payments/{payment_id}/watch")
async def rewatch_payment(
    payment_id: str,
    actor: Actor = Depends(require_admin),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Restart background polling for a payment with a fresh attempt budget."""
    attempt = await services.store.get_attempt(payment_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail="UNKNOWN_PAYMENT")
    if not attempt.is_open:
        raise HTTPException(status_code=409, detail="PAYMENT_RESOLVED")
    await push_reconcile_request(payment_id, "operator")
    return JSONResponse(status_code=202, content={"status": "accepted", "payment_id": payment_id})
