"""
Order lifecycle state machine. Valid transitions enforce business rules.
"""
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Current status -> statuses it may move to
VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),  # terminal
    OrderStatus.CANCELLED: frozenset(),  # terminal
}

# Targets that succeed as a no-op when the order is already there
IDEMPOTENT_TARGETS: frozenset[OrderStatus] = frozenset({OrderStatus.CONFIRMED})

# Target status -> Order timestamp field stamped when it is entered
STATUS_TIMESTAMPS: dict[OrderStatus, str] = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.COMPLETED: "closed_at",
    OrderStatus.CANCELLED: "closed_at",
}

# Statuses that require an assigned courier
COURIER_REQUIRED: frozenset[OrderStatus] = frozenset({OrderStatus.DELIVERED, OrderStatus.COMPLETED})

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Statuses an order passes through after payment confirmation
CONFIRMED_OR_LATER: frozenset[OrderStatus] = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
})


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """True if target is reachable from current in one step."""
    return target in VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES
