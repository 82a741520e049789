"""
Order store contract and an in-memory implementation (tests, local experiments).

Mutations of an order go through `locked(order_id)`: the handle holds the
order's exclusive lock, exposes a private copy of the order, and commits its
buffered writes only when the block exits without an exception.
"""
import asyncio
import dataclasses
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Iterable, Protocol

from orderflow.models import AssignmentRecord, Order, OrderEvent, PaymentAttempt, ProviderStatus
from orderflow.order_state import OrderStatus
from orderflow.roles import Role

# provider statuses that still need polling or an operator
UNRESOLVED_STATUSES = frozenset({ProviderStatus.PENDING, ProviderStatus.WAITING_FOR_CAPTURE})


class LockedOrder(Protocol):
    order: Order

    async def save(self) -> None: ...

    async def append_event(self, event: OrderEvent) -> None: ...

    async def append_assignment(self, record: AssignmentRecord) -> None: ...


class OrderStore(Protocol):
    async def insert_order(self, order: Order, event: OrderEvent) -> None: ...

    async def get_order(self, order_id: str) -> Order | None: ...

    async def list_orders(
        self,
        statuses: Iterable[OrderStatus] | None = None,
        courier_id: str | None = None,
        customer_id: str | None = None,
    ) -> list[Order]: ...

    async def list_events(self, order_id: str) -> list[OrderEvent]: ...

    async def list_assignments(self, order_id: str) -> list[AssignmentRecord]: ...

    def locked(self, order_id: str) -> AsyncContextManager[LockedOrder | None]: ...

    async def insert_attempt(self, attempt: PaymentAttempt) -> None: ...

    async def get_attempt(self, payment_id: str) -> PaymentAttempt | None: ...

    async def list_attempts(self, order_id: str) -> list[PaymentAttempt]: ...

    async def record_check(self, payment_id: str, status: ProviderStatus, at: datetime) -> PaymentAttempt: ...

    async def mark_attempt_applied(self, payment_id: str, at: datetime) -> PaymentAttempt: ...

    async def list_open_attempts(self) -> list[PaymentAttempt]: ...

    async def list_stalled_attempts(self, min_checks: int) -> list[PaymentAttempt]: ...

    async def get_user_role(self, user_id: str) -> Role | None: ...

    async def get_prices(self, item_ids: Iterable[str]) -> dict[str, int]: ...


def _copy_order(order: Order) -> Order:
    return dataclasses.replace(order)


class _MemoryLockedOrder:
    def __init__(self, order: Order):
        self.order = order
        self.dirty = False
        self.events: list[OrderEvent] = []
        self.assignments: list[AssignmentRecord] = []

    async def save(self) -> None:
        self.dirty = True

    async def append_event(self, event: OrderEvent) -> None:
        self.events.append(event)

    async def append_assignment(self, record: AssignmentRecord) -> None:
        self.assignments.append(record)


class InMemoryOrderStore:
    """Dict-backed store with one asyncio.Lock per order."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._events: dict[str, list[OrderEvent]] = defaultdict(list)
        self._assignments: dict[str, list[AssignmentRecord]] = defaultdict(list)
        self._attempts: dict[str, PaymentAttempt] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, Role] = {}
        self._prices: dict[str, int] = {}

    # external collaborators, seeded directly
    def add_user(self, user_id: str, role: Role) -> None:
        self._users[user_id] = role

    def add_catalog_item(self, item_id: str, price_cents: int) -> None:
        self._prices[item_id] = price_cents

    async def insert_order(self, order: Order, event: OrderEvent) -> None:
        self._orders[order.id] = _copy_order(order)
        self._events[order.id].append(event)

    async def get_order(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return _copy_order(order) if order else None

    async def list_orders(
        self,
        statuses: Iterable[OrderStatus] | None = None,
        courier_id: str | None = None,
        customer_id: str | None = None,
    ) -> list[Order]:
        wanted = set(statuses) if statuses else None
        result = [
            _copy_order(o)
            for o in self._orders.values()
            if (wanted is None or o.status in wanted)
            and (courier_id is None or o.courier_id == courier_id)
            and (customer_id is None or o.customer_id == customer_id)
        ]
        return sorted(result, key=lambda o: o.created_at)

    async def list_events(self, order_id: str) -> list[OrderEvent]:
        return list(self._events.get(order_id, []))

    async def list_assignments(self, order_id: str) -> list[AssignmentRecord]:
        return list(self._assignments.get(order_id, []))

    @asynccontextmanager
    async def locked(self, order_id: str) -> AsyncIterator[_MemoryLockedOrder | None]:
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        async with lock:
            current = self._orders.get(order_id)
            if current is None:
                yield None
                return
            handle = _MemoryLockedOrder(_copy_order(current))
            yield handle
            # reached only when the block did not raise
            if handle.dirty:
                self._orders[order_id] = _copy_order(handle.order)
            self._events[order_id].extend(handle.events)
            self._assignments[order_id].extend(handle.assignments)

    async def insert_attempt(self, attempt: PaymentAttempt) -> None:
        self._attempts[attempt.payment_id] = dataclasses.replace(attempt)

    async def get_attempt(self, payment_id: str) -> PaymentAttempt | None:
        attempt = self._attempts.get(payment_id)
        return dataclasses.replace(attempt) if attempt else None

    async def list_attempts(self, order_id: str) -> list[PaymentAttempt]:
        return sorted(
            (dataclasses.replace(a) for a in self._attempts.values() if a.order_id == order_id),
            key=lambda a: a.created_at,
        )

    async def record_check(self, payment_id: str, status: ProviderStatus, at: datetime) -> PaymentAttempt:
        attempt = self._attempts[payment_id]
        attempt.status = status
        attempt.check_count += 1
        attempt.last_checked_at = at
        return dataclasses.replace(attempt)

    async def mark_attempt_applied(self, payment_id: str, at: datetime) -> PaymentAttempt:
        attempt = self._attempts[payment_id]
        if not attempt.applied:
            attempt.applied = True
            attempt.applied_at = at
        return dataclasses.replace(attempt)

    async def list_open_attempts(self) -> list[PaymentAttempt]:
        return [dataclasses.replace(a) for a in self._attempts.values() if a.is_open]

    async def list_stalled_attempts(self, min_checks: int) -> list[PaymentAttempt]:
        return [
            dataclasses.replace(a)
            for a in self._attempts.values()
            if a.is_open and a.status in UNRESOLVED_STATUSES and a.check_count >= min_checks
        ]

    async def get_user_role(self, user_id: str) -> Role | None:
        return self._users.get(user_id)

    async def get_prices(self, item_ids: Iterable[str]) -> dict[str, int]:
        return {i: self._prices[i] for i in item_ids if i in self._prices}
