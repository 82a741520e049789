import pytest

from orderflow.errors import Forbidden, InvalidOrder, PreconditionFailed, ProviderUnavailable, UnknownPayment
from orderflow.models import PaymentMethod, ProviderStatus
from orderflow.order_state import OrderStatus
from orderflow.orders import ItemRequest
from orderflow.roles import Role


async def test_cash_order_is_confirmed_at_creation(services, store, enqueued):
    order, attempt = await services.orders.create_order(
        "cust-1",
        [ItemRequest("borscht", 2), ItemRequest("pelmeni", 1)],
        "addr-1",
        PaymentMethod.CASH,
    )

    assert attempt is None
    assert order.status == OrderStatus.CONFIRMED
    assert not order.is_paid
    assert order.total_cents == 2 * 45000 + 39000
    events = await store.list_events(order.id)
    assert [(e.to_status, e.role) for e in events] == [
        (OrderStatus.PENDING, Role.CUSTOMER),
        (OrderStatus.CONFIRMED, Role.SYSTEM),
    ]
    assert enqueued == []


async def test_card_order_starts_payment(services, store, provider, enqueued):
    order, attempt = await services.orders.create_order(
        "cust-1", [ItemRequest("pelmeni", 2)], "addr-1", "CARD"
    )

    assert order.status == OrderStatus.PENDING
    assert attempt.order_id == order.id
    assert attempt.amount_cents == 78000
    assert attempt.confirmation_url.endswith(attempt.payment_id)
    payment_id, amount, metadata = provider.created[0]
    assert (payment_id, amount) == (attempt.payment_id, 78000)
    assert metadata["order_id"] == order.id
    assert enqueued == [(attempt.payment_id, "checkout")]
    assert await store.get_attempt(attempt.payment_id) is not None


@pytest.mark.parametrize(
    "items",
    [
        [],
        [ItemRequest("borscht", 0)],
        [ItemRequest("caviar", 1)],
    ],
)
async def test_invalid_orders_are_rejected(services, store, items):
    with pytest.raises(InvalidOrder):
        await services.orders.create_order("cust-1", items, "addr-1", PaymentMethod.CASH)
    assert await store.list_orders() == []


async def test_provider_down_at_checkout(services, store, provider):
    provider.fail_create = True
    with pytest.raises(ProviderUnavailable):
        await services.orders.create_order("cust-1", [ItemRequest("borscht", 1)], "addr-1", PaymentMethod.CARD)

    [order] = await store.list_orders()
    assert order.status == OrderStatus.PENDING
    assert await store.list_attempts(order.id) == []

    provider.fail_create = False
    attempt = await services.orders.retry_payment(order.id, "cust-1")
    assert attempt.order_id == order.id


async def test_retry_after_canceled_payment(services, store, provider, enqueued):
    order, first = await services.orders.create_order(
        "cust-1", [ItemRequest("borscht", 1)], "addr-1", PaymentMethod.CARD
    )
    with pytest.raises(PreconditionFailed):
        await services.orders.retry_payment(order.id, "cust-1")

    provider.statuses[first.payment_id] = ProviderStatus.CANCELED
    await services.engine.reconcile(first.payment_id)
    second = await services.orders.retry_payment(order.id, "cust-1")

    assert second.payment_id != first.payment_id
    assert enqueued[-1] == (second.payment_id, "checkout")
    assert [a.payment_id for a in await store.list_attempts(order.id)] == [first.payment_id, second.payment_id]


async def test_retry_rules(services, seed_order):
    cash = await seed_order(OrderStatus.PENDING)
    with pytest.raises(PreconditionFailed):
        await services.orders.retry_payment(cash.id, "cust-1")

    card = await seed_order(OrderStatus.PENDING, payment_method=PaymentMethod.CARD)
    with pytest.raises(Forbidden):
        await services.orders.retry_payment(card.id, "cust-2")
    with pytest.raises(Forbidden):
        await services.orders.retry_payment(card.id, "kitchen-1", Role.KITCHEN)

    cancelled = await seed_order(OrderStatus.CANCELLED, payment_method=PaymentMethod.CARD)
    with pytest.raises(PreconditionFailed):
        await services.orders.retry_payment(cancelled.id, "cust-1")


async def test_payment_view(services, provider):
    order, attempt = await services.orders.create_order(
        "cust-1", [ItemRequest("borscht", 1)], "addr-1", PaymentMethod.CARD
    )
    view = await services.orders.payment_view(attempt.payment_id)
    assert view["state"] == "processing"
    assert view["order_id"] == order.id

    provider.statuses[attempt.payment_id] = ProviderStatus.SUCCEEDED
    await services.engine.reconcile(attempt.payment_id)
    view = await services.orders.payment_view(attempt.payment_id)
    assert view["state"] == "paid"
    assert view["order_status"] == "CONFIRMED"
    assert view["checks"] == 1

    with pytest.raises(UnknownPayment):
        await services.orders.payment_view("pay-unknown")
