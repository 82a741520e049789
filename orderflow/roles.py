"""
Role action gateway: which acting roles may request which target statuses.
Checked independently of the transition table; both must pass.
"""
from enum import Enum

from orderflow.order_state import OrderStatus


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    KITCHEN = "KITCHEN"
    COURIER = "COURIER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


ROLE_PERMISSIONS: dict[Role, frozenset[OrderStatus]] = {
    Role.CUSTOMER: frozenset({OrderStatus.CANCELLED}),
    Role.KITCHEN: frozenset({OrderStatus.PREPARING, OrderStatus.READY}),
    Role.COURIER: frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED}),
    Role.ADMIN: frozenset(OrderStatus),
    Role.SYSTEM: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
}

# Roles a caller may claim over HTTP
EXTERNAL_ROLES: frozenset[Role] = frozenset(Role) - {Role.SYSTEM}

SYSTEM_ACTOR_ID = "system"


def is_authorized(role: Role, target: OrderStatus) -> bool:
    """True only if the table lists target for role. Unknown roles are denied."""
    return target in ROLE_PERMISSIONS.get(role, frozenset())
