"""
Domain records shared by the store, the transition authority and reconciliation.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from orderflow.order_state import OrderStatus
from orderflow.roles import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentMethod(str, Enum):
    CARD = "CARD"
    CASH = "CASH"


class ProviderStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    WAITING_FOR_CAPTURE = "waiting_for_capture"
    CANCELED = "canceled"
    FAILED = "failed"


@dataclass(frozen=True)
class OrderItem:
    item_id: str
    quantity: int
    unit_price_cents: int = 0


@dataclass
class Order:
    id: str
    customer_id: str
    address_id: str
    payment_method: PaymentMethod
    items: tuple[OrderItem, ...]
    status: OrderStatus = OrderStatus.PENDING
    is_paid: bool = False
    courier_id: str | None = None
    total_cents: int = 0
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    delivered_at: datetime | None = None
    closed_at: datetime | None = None


@dataclass(frozen=True)
class OrderEvent:
    """One applied status change. from_status is None for the creation event."""
    order_id: str
    from_status: OrderStatus | None
    to_status: OrderStatus
    role: Role
    actor_id: str
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AssignmentRecord:
    """Courier assignment audit entry. courier_id is None for an unassignment."""
    order_id: str
    courier_id: str | None
    previous_courier_id: str | None
    actor_id: str
    at: datetime = field(default_factory=utcnow)


@dataclass
class PaymentAttempt:
    payment_id: str
    order_id: str
    amount_cents: int
    status: ProviderStatus = ProviderStatus.PENDING
    check_count: int = 0
    last_checked_at: datetime | None = None
    applied: bool = False
    confirmation_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    applied_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        """Still worth polling: not applied and no terminal provider outcome."""
        return not self.applied and self.status not in (ProviderStatus.CANCELED, ProviderStatus.FAILED)
