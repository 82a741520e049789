"""
Order service: creation, payment (re)initiation and read projections.

Status changes are delegated to the transition authority; card payments are
handed to the reconciliation worker through `enqueue`.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from orderflow.errors import Forbidden, InvalidOrder, OrderNotFound, PreconditionFailed, UnknownPayment
from orderflow.metrics import orders_created_total
from orderflow.models import Order, OrderEvent, OrderItem, PaymentAttempt, PaymentMethod, ProviderStatus
from orderflow.order_state import OrderStatus
from orderflow.provider_client import ProviderClient
from orderflow.roles import SYSTEM_ACTOR_ID, Role
from orderflow.store import OrderStore
from orderflow.transitions import TransitionAuthority

logger = logging.getLogger(__name__)

# (payment_id, source) -> schedules reconciliation
Enqueue = Callable[[str, str], Awaitable[None]]

PAYMENT_VIEW = {
    ProviderStatus.CANCELED: "canceled",
    ProviderStatus.FAILED: "failed",
}


@dataclass(frozen=True)
class ItemRequest:
    item_id: str
    quantity: int


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        authority: TransitionAuthority,
        provider: ProviderClient,
        enqueue: Enqueue,
    ):
        self.store = store
        self.authority = authority
        self.provider = provider
        self.enqueue = enqueue

    async def _price_items(self, items: Iterable[ItemRequest]) -> tuple[OrderItem, ...]:
        items = list(items)
        if not items:
            raise InvalidOrder("order has no items")
        for it in items:
            if it.quantity < 1:
                raise InvalidOrder(f"quantity for item {it.item_id} must be at least 1")
        prices = await self.store.get_prices({it.item_id for it in items})
        missing = sorted({it.item_id for it in items} - set(prices))
        if missing:
            raise InvalidOrder(f"unknown catalog items: {', '.join(missing)}")
        return tuple(OrderItem(it.item_id, it.quantity, prices[it.item_id]) for it in items)

    async def create_order(
        self,
        customer_id: str,
        items: Iterable[ItemRequest],
        address_id: str,
        payment_method: PaymentMethod | str,
    ) -> tuple[Order, PaymentAttempt | None]:
        """
        Create an order in PENDING.

        Cash orders are confirmed straight away. Card orders get a provider payment
        and a PaymentAttempt, and reconciliation is scheduled for it. If the provider
        is unavailable the order stays PENDING without an attempt and the error
        propagates; the customer can retry the payment later.
        """
        payment_method = PaymentMethod(payment_method)
        priced = await self._price_items(items)
        order = Order(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            address_id=address_id,
            payment_method=payment_method,
            items=priced,
            total_cents=sum(i.unit_price_cents * i.quantity for i in priced),
        )
        await self.store.insert_order(
            order,
            OrderEvent(order.id, None, OrderStatus.PENDING, Role.CUSTOMER, customer_id, order.created_at),
        )
        orders_created_total.labels(payment_method=payment_method.value).inc()
        logger.info("Created order %s for customer %s (%s, %d cents)",
                    order.id, customer_id, payment_method.value, order.total_cents)

        if payment_method == PaymentMethod.CASH:
            order = await self.authority.request_transition(
                order.id, OrderStatus.CONFIRMED, Role.SYSTEM, SYSTEM_ACTOR_ID
            )
            return order, None

        attempt = await self._start_payment(order)
        return order, attempt

    async def _start_payment(self, order: Order) -> PaymentAttempt:
        created = await self.provider.create_payment(
            order.total_cents,
            {"order_id": order.id, "customer_id": order.customer_id},
        )
        attempt = PaymentAttempt(
            payment_id=created.payment_id,
            order_id=order.id,
            amount_cents=order.total_cents,
            confirmation_url=created.confirmation_url,
        )
        await self.store.insert_attempt(attempt)
        await self.enqueue(attempt.payment_id, "checkout")
        logger.info("Payment %s started for order %s", attempt.payment_id, order.id)
        return attempt

    async def retry_payment(self, order_id: str, actor_id: str, role: Role = Role.CUSTOMER) -> PaymentAttempt:
        """Start a new payment attempt for an unpaid card order whose previous attempts all failed."""
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if role == Role.CUSTOMER and order.customer_id != actor_id:
            raise Forbidden(f"order {order_id} does not belong to customer {actor_id}")
        if role not in (Role.CUSTOMER, Role.ADMIN):
            raise Forbidden(f"role {role.value} may not start payments")
        if order.payment_method != PaymentMethod.CARD:
            raise PreconditionFailed(f"order {order_id} is not paid by card")
        if order.status != OrderStatus.PENDING or order.is_paid:
            raise PreconditionFailed(f"order {order_id} no longer awaits payment")
        attempts = await self.store.list_attempts(order_id)
        if any(a.is_open for a in attempts):
            raise PreconditionFailed(f"order {order_id} already has a payment in progress")
        return await self._start_payment(order)

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def payment_view(self, payment_id: str) -> dict:
        """Customer-facing payment state: processing until reconciliation converges."""
        attempt = await self.store.get_attempt(payment_id)
        if attempt is None:
            raise UnknownPayment(payment_id)
        order = await self.get_order(attempt.order_id)
        if order.is_paid:
            state = "paid"
        else:
            state = PAYMENT_VIEW.get(attempt.status, "processing")
        return {
            "payment_id": attempt.payment_id,
            "order_id": order.id,
            "state": state,
            "provider_status": attempt.status.value,
            "order_status": order.status.value,
            "checks": attempt.check_count,
        }
