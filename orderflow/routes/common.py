"""
Request-scoped dependencies and JSON projections shared by the routers.
"""
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from orderflow.models import AssignmentRecord, Order, OrderEvent, PaymentAttempt
from orderflow.roles import EXTERNAL_ROLES, Role
from orderflow.services import Services


@dataclass(frozen=True)
class Actor:
    role: Role
    user_id: str


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    x_actor_role: str = Header(..., description="Role of the authenticated caller"),
    x_actor_id: str = Header(..., description="User id of the authenticated caller"),
) -> Actor:
    """Caller identity, set by the authenticating proxy in front of this service."""
    try:
        role = Role(x_actor_role.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail="UNKNOWN_ROLE")
    if role not in EXTERNAL_ROLES:
        raise HTTPException(status_code=403, detail="FORBIDDEN")
    return Actor(role=role, user_id=x_actor_id)


def _ts(value) -> str | None:
    return value.isoformat() if value else None


def order_payload(order: Order) -> dict:
    return {
        "id": order.id,
        "customer_id": order.customer_id,
        "address_id": order.address_id,
        "payment_method": order.payment_method.value,
        "status": order.status.value,
        "is_paid": order.is_paid,
        "courier_id": order.courier_id,
        "total_cents": order.total_cents,
        "items": [
            {"item_id": i.item_id, "quantity": i.quantity, "unit_price_cents": i.unit_price_cents}
            for i in order.items
        ],
        "created_at": _ts(order.created_at),
        "confirmed_at": _ts(order.confirmed_at),
        "delivered_at": _ts(order.delivered_at),
        "closed_at": _ts(order.closed_at),
    }


def event_payload(event: OrderEvent) -> dict:
    return {
        "from_status": event.from_status.value if event.from_status else None,
        "to_status": event.to_status.value,
        "role": event.role.value,
        "actor_id": event.actor_id,
        "at": _ts(event.at),
    }


def attempt_payload(attempt: PaymentAttempt) -> dict:
    return {
        "payment_id": attempt.payment_id,
        "order_id": attempt.order_id,
        "amount_cents": attempt.amount_cents,
        "status": attempt.status.value,
        "check_count": attempt.check_count,
        "last_checked_at": _ts(attempt.last_checked_at),
        "applied": attempt.applied,
        "confirmation_url": attempt.confirmation_url,
        "created_at": _ts(attempt.created_at),
    }


def assignment_payload(record: AssignmentRecord) -> dict:
    return {
        "courier_id": record.courier_id,
        "previous_courier_id": record.previous_courier_id,
        "actor_id": record.actor_id,
        "at": _ts(record.at),
    }
