"""
Shared fixtures: an in-memory store seeded with users and catalog items,
a scriptable fake payment provider, and the wired services around them.
"""
import asyncio

import pytest

from orderflow.errors import ProviderUnavailable
from orderflow.models import Order, OrderEvent, OrderItem, PaymentMethod, ProviderStatus
from orderflow.order_state import OrderStatus
from orderflow.provider_client import CreatedPayment
from orderflow.roles import Role
from orderflow.services import build_services
from orderflow.store import InMemoryOrderStore

USERS = {
    "cust-1": Role.CUSTOMER,
    "cust-2": Role.CUSTOMER,
    "kitchen-1": Role.KITCHEN,
    "courier-1": Role.COURIER,
    "courier-2": Role.COURIER,
    "admin-1": Role.ADMIN,
}

CATALOG = {
    "borscht": 45000,
    "pelmeni": 39000,
}


class FakeProvider:
    """
    In-process stand-in for the payment provider.

    statuses[payment_id] is what get_status answers. queue_statuses() scripts a
    sequence instead: items are consumed one per call (the last one repeats), and
    an exception item is raised rather than returned.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, ProviderStatus] = {}
        self.sequences: dict[str, list] = {}
        self.created: list[tuple[str, int, dict]] = []
        self.status_calls = 0
        self.fail_create = False
        self.delay = 0.0
        self._seq = 0

    def queue_statuses(self, payment_id: str, *items) -> None:
        self.sequences[payment_id] = list(items)

    async def create_payment(self, amount_cents: int, metadata: dict) -> CreatedPayment:
        if self.fail_create:
            raise ProviderUnavailable("create_payment: provider down")
        self._seq += 1
        payment_id = f"pay-{self._seq}"
        self.statuses[payment_id] = ProviderStatus.PENDING
        self.created.append((payment_id, amount_cents, metadata))
        return CreatedPayment(payment_id, f"https://pay.example/confirm/{payment_id}")

    async def get_status(self, payment_id: str) -> ProviderStatus:
        self.status_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        seq = self.sequences.get(payment_id)
        if seq:
            item = seq.pop(0) if len(seq) > 1 else seq[0]
            if isinstance(item, Exception):
                raise item
            return item
        return self.statuses[payment_id]

    async def aclose(self) -> None:
        pass


@pytest.fixture
def store() -> InMemoryOrderStore:
    s = InMemoryOrderStore()
    for user_id, role in USERS.items():
        s.add_user(user_id, role)
    for item_id, price in CATALOG.items():
        s.add_catalog_item(item_id, price)
    return s


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def enqueued() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def services(store, provider, enqueued):
    async def enqueue(payment_id: str, source: str) -> None:
        enqueued.append((payment_id, source))

    return build_services(store, provider, enqueue, provider_timeout=1.0)


@pytest.fixture
def seed_order(store):
    """Insert an order directly in a given status, bypassing the transition rules."""
    counter = iter(range(1, 10_000))

    async def _seed(
        status: OrderStatus = OrderStatus.PENDING,
        customer_id: str = "cust-1",
        courier_id: str | None = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        is_paid: bool = False,
    ) -> Order:
        order = Order(
            id=f"ord-{next(counter)}",
            customer_id=customer_id,
            address_id="addr-1",
            payment_method=payment_method,
            items=(OrderItem("borscht", 1, CATALOG["borscht"]),),
            status=status,
            is_paid=is_paid,
            courier_id=courier_id,
            total_cents=CATALOG["borscht"],
        )
        await store.insert_order(order, OrderEvent(order.id, None, status, Role.ADMIN, "admin-1"))
        return order

    return _seed
