"""
Transition authority: the only code path that changes an order's status.

Every request runs inside the store's per-order critical section, so two
callers racing from the same source status cannot both advance the order.
"""
import logging

from orderflow.errors import Forbidden, InvalidTransition, OrderFlowError, OrderNotFound, PreconditionFailed
from orderflow.metrics import order_transitions_rejected_total, order_transitions_total
from orderflow.models import Order, OrderEvent, utcnow
from orderflow.order_state import (
    CONFIRMED_OR_LATER,
    COURIER_REQUIRED,
    IDEMPOTENT_TARGETS,
    STATUS_TIMESTAMPS,
    OrderStatus,
    is_valid_transition,
)
from orderflow.roles import Role, is_authorized
from orderflow.store import OrderStore

logger = logging.getLogger(__name__)


def _check_ownership(order: Order, role: Role, actor_id: str) -> None:
    if role == Role.COURIER and order.courier_id != actor_id:
        raise Forbidden(f"courier {actor_id} is not assigned to order {order.id}")
    if role == Role.CUSTOMER and order.customer_id != actor_id:
        raise Forbidden(f"order {order.id} does not belong to customer {actor_id}")


class TransitionAuthority:
    def __init__(self, store: OrderStore):
        self.store = store

    async def request_transition(
        self,
        order_id: str,
        target: OrderStatus | str,
        role: Role | str,
        actor_id: str,
        *,
        mark_paid: bool = False,
    ) -> Order:
        """
        Move order_id to target on behalf of (role, actor_id) and return the new snapshot.

        Requesting CONFIRMED for an already CONFIRMED order is a successful no-op.
        mark_paid sets is_paid in the same critical section; that write is kept even
        when the transition itself is rejected. A SYSTEM confirmation arriving after the
        order moved past CONFIRMED is absorbed as a no-op, paid or not.

        Raises OrderNotFound, Forbidden, InvalidTransition, PreconditionFailed.
        """
        target = OrderStatus(target)
        role = Role(role)
        error: OrderFlowError | None = None

        async with self.store.locked(order_id) as handle:
            if handle is None:
                raise OrderNotFound(order_id)
            order = handle.order
            current = order.status

            if not is_authorized(role, target):
                order_transitions_rejected_total.labels(reason="forbidden").inc()
                raise Forbidden(f"role {role.value} may not move orders to {target.value}")
            if role == Role.CUSTOMER and order.customer_id != actor_id:
                order_transitions_rejected_total.labels(reason="forbidden").inc()
                raise Forbidden(f"order {order_id} does not belong to customer {actor_id}")

            paid_now = mark_paid and not order.is_paid
            if paid_now:
                order.is_paid = True

            if current == target and target in IDEMPOTENT_TARGETS:
                logger.info("Order %s already %s, no-op", order_id, target.value)
            elif role == Role.SYSTEM and target == OrderStatus.CONFIRMED and current in CONFIRMED_OR_LATER:
                logger.info("Order %s already past %s (%s), no-op", order_id, target.value, current.value)
            elif not is_valid_transition(current, target):
                error = InvalidTransition(current.value, target.value)
            elif target in COURIER_REQUIRED and order.courier_id is None:
                error = PreconditionFailed(f"order {order_id} has no assigned courier")
            else:
                try:
                    _check_ownership(order, role, actor_id)
                except Forbidden as e:
                    error = e
                else:
                    order.status = target
                    stamp = STATUS_TIMESTAMPS.get(target)
                    now = utcnow()
                    if stamp:
                        setattr(order, stamp, now)
                    await handle.append_event(OrderEvent(order_id, current, target, role, actor_id, now))

            if paid_now or order.status != current:
                await handle.save()
            snapshot = order

        if error is not None:
            order_transitions_rejected_total.labels(reason=error.code.lower()).inc()
            logger.info("Rejected %s -> %s for order %s by %s/%s: %s",
                        current.value, target.value, order_id, role.value, actor_id, error.code)
            raise error

        if snapshot.status != current:
            order_transitions_total.labels(from_status=current.value, to_status=target.value).inc()
            logger.info("Order %s: %s -> %s by %s/%s", order_id, current.value, target.value, role.value, actor_id)
        return snapshot
