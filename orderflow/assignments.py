"""
Assignment registry: binds one courier to a ready order.

Shares the per-order critical section with the transition authority so an
assignment can never interleave with a READY -> DELIVERED transition.
"""
import logging

from orderflow.errors import InvalidCourier, OrderNotFound, OrderNotReady
from orderflow.models import AssignmentRecord, Order
from orderflow.order_state import OrderStatus
from orderflow.roles import Role
from orderflow.store import OrderStore

logger = logging.getLogger(__name__)

FIRST_ASSIGNMENT_STATUSES = frozenset({OrderStatus.READY})
REASSIGNMENT_STATUSES = frozenset({OrderStatus.READY, OrderStatus.DELIVERED})
UNASSIGN_STATUSES = frozenset({OrderStatus.READY})


class AssignmentRegistry:
    def __init__(self, store: OrderStore):
        self.store = store

    async def assign_courier(self, order_id: str, courier_id: str, actor_id: str) -> Order:
        """Assign or reassign courier_id. Reassignment is also allowed after delivery to fix dispatch mistakes."""
        if await self.store.get_user_role(courier_id) != Role.COURIER:
            raise InvalidCourier(courier_id)

        async with self.store.locked(order_id) as handle:
            if handle is None:
                raise OrderNotFound(order_id)
            order = handle.order
            previous = order.courier_id
            allowed = REASSIGNMENT_STATUSES if previous is not None else FIRST_ASSIGNMENT_STATUSES
            if order.status not in allowed:
                raise OrderNotReady(f"cannot assign a courier to order {order_id} in status {order.status.value}")
            if previous == courier_id:
                return order
            order.courier_id = courier_id
            await handle.save()
            await handle.append_assignment(AssignmentRecord(order_id, courier_id, previous, actor_id))

        logger.info("Order %s: courier %s -> %s by %s", order_id, previous, courier_id, actor_id)
        return order

    async def unassign_courier(self, order_id: str, actor_id: str) -> Order:
        async with self.store.locked(order_id) as handle:
            if handle is None:
                raise OrderNotFound(order_id)
            order = handle.order
            if order.status not in UNASSIGN_STATUSES:
                raise OrderNotReady(f"cannot unassign courier from order {order_id} in status {order.status.value}")
            previous = order.courier_id
            if previous is None:
                return order
            order.courier_id = None
            await handle.save()
            await handle.append_assignment(AssignmentRecord(order_id, None, previous, actor_id))

        logger.info("Order %s: courier %s unassigned by %s", order_id, previous, actor_id)
        return order

    async def history(self, order_id: str) -> list[AssignmentRecord]:
        if await self.store.get_order(order_id) is None:
            raise OrderNotFound(order_id)
        return await self.store.list_assignments(order_id)
