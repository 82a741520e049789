from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.models import PaymentMethod
from orderflow.order_state import OrderStatus
from orderflow.orders import ItemRequest
from orderflow.roles import Role
from orderflow.routes.common import (
    Actor,
    attempt_payload,
    event_payload,
    get_actor,
    get_services,
    order_payload,
)
from orderflow.services import Services

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderItemBody(BaseModel):
    item_id: str = Field(..., min_length=1, description="Catalog item reference")
    quantity: int = Field(..., ge=1)


class CreateOrderBody(BaseModel):
    customer_id: str | None = Field(default=None, description="Defaults to the calling customer")
    address_id: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    items: list[OrderItemBody] = Field(..., min_length=1)


class TransitionBody(BaseModel):
    status: OrderStatus = Field(..., description="Target status")


@router.post("")
async def create_order(
    body: CreateOrderBody,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Place an order. CASH orders come back CONFIRMED; CARD orders come back PENDING with
    the payment confirmation URL. The order is confirmed later by reconciliation.
    """
    if actor.role == Role.CUSTOMER:
        if body.customer_id not in (None, actor.user_id):
            raise HTTPException(status_code=403, detail="FORBIDDEN")
        customer_id = actor.user_id
    elif actor.role == Role.ADMIN and body.customer_id:
        customer_id = body.customer_id
    else:
        raise HTTPException(status_code=403, detail="FORBIDDEN")

    order, attempt = await services.orders.create_order(
        customer_id=customer_id,
        items=[ItemRequest(i.item_id, i.quantity) for i in body.items],
        address_id=body.address_id,
        payment_method=body.payment_method,
    )
    return JSONResponse(
        status_code=201,
        content={
            "order": order_payload(order),
            "payment": attempt_payload(attempt) if attempt else None,
        },
    )


@router.get("")
async def list_orders(
    status: list[OrderStatus] | None = Query(default=None),
    courier_id: str | None = None,
    customer_id: str | None = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Work queues: kitchen filters by status, couriers see their own assignments,
    customers see their own orders.
    """
    if actor.role == Role.COURIER:
        courier_id = actor.user_id
    elif actor.role == Role.CUSTOMER:
        customer_id = actor.user_id
    orders = await services.store.list_orders(statuses=status, courier_id=courier_id, customer_id=customer_id)
    return JSONResponse(status_code=200, content={"orders": [order_payload(o) for o in orders]})


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.orders.get_order(order_id)
    if actor.role == Role.CUSTOMER and order.customer_id != actor.user_id:
        raise HTTPException(status_code=403, detail="FORBIDDEN")
    events = await services.store.list_events(order_id)
    return JSONResponse(
        status_code=200,
        content={"order": order_payload(order), "history": [event_payload(e) for e in events]},
    )


@router.post("/{order_id}/transitions")
async def request_transition(
    order_id: str,
    body: TransitionBody,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.authority.request_transition(order_id, body.status, actor.role, actor.user_id)
    return JSONResponse(status_code=200, content={"order": order_payload(order)})


@router.post("/{order_id}/payments")
async def retry_payment(
    order_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Start a new card payment after the previous attempt was canceled or failed."""
    attempt = await services.orders.retry_payment(order_id, actor.user_id, actor.role)
    return JSONResponse(status_code=201, content={"payment": attempt_payload(attempt)})
