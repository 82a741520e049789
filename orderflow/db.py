"""
Async Postgres: orders (current state per order) + order_events (status history),
payment_attempts, courier_assignments. users and catalog_items belong to other
services; they are created here only so a fresh database is usable.
Every order mutation runs in one transaction holding the order row lock (SELECT ... FOR UPDATE).
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable

import asyncpg

from orderflow.config import settings
from orderflow.models import (
    AssignmentRecord,
    Order,
    OrderEvent,
    OrderItem,
    PaymentAttempt,
    PaymentMethod,
    ProviderStatus,
)
from orderflow.order_state import OrderStatus
from orderflow.roles import Role

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=settings.database_pool_size,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR(255) PRIMARY KEY,
                role VARCHAR(20) NOT NULL
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS catalog_items (
                id VARCHAR(255) PRIMARY KEY,
                price_cents INT NOT NULL
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(255) PRIMARY KEY,
                customer_id VARCHAR(255) NOT NULL,
                address_id VARCHAR(255) NOT NULL,
                payment_method VARCHAR(10) NOT NULL,
                items JSONB NOT NULL,
                status VARCHAR(20) NOT NULL,
                is_paid BOOLEAN NOT NULL DEFAULT FALSE,
                courier_id VARCHAR(255),
                total_cents INT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                confirmed_at TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ,
                closed_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_courier_id ON orders(courier_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_events (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id),
                from_status VARCHAR(20),
                to_status VARCHAR(20) NOT NULL,
                role VARCHAR(20) NOT NULL,
                actor_id VARCHAR(255) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_events_order_id ON order_events(order_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS courier_assignments (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id),
                courier_id VARCHAR(255),
                previous_courier_id VARCHAR(255),
                actor_id VARCHAR(255) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS payment_attempts (
                payment_id VARCHAR(255) PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id),
                amount_cents INT NOT NULL,
                status VARCHAR(30) NOT NULL,
                check_count INT NOT NULL DEFAULT 0,
                last_checked_at TIMESTAMPTZ,
                applied BOOLEAN NOT NULL DEFAULT FALSE,
                applied_at TIMESTAMPTZ,
                confirmation_url TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_payment_attempts_order_id ON payment_attempts(order_id);
        """)


def _order_from_row(row: asyncpg.Record) -> Order:
    items = row["items"]
    if isinstance(items, str):
        items = json.loads(items)
    return Order(
        id=row["order_id"],
        customer_id=row["customer_id"],
        address_id=row["address_id"],
        payment_method=PaymentMethod(row["payment_method"]),
        items=tuple(OrderItem(i["item_id"], i["quantity"], i["unit_price_cents"]) for i in items),
        status=OrderStatus(row["status"]),
        is_paid=row["is_paid"],
        courier_id=row["courier_id"],
        total_cents=row["total_cents"],
        created_at=row["created_at"],
        confirmed_at=row["confirmed_at"],
        delivered_at=row["delivered_at"],
        closed_at=row["closed_at"],
    )


def _attempt_from_row(row: asyncpg.Record) -> PaymentAttempt:
    return PaymentAttempt(
        payment_id=row["payment_id"],
        order_id=row["order_id"],
        amount_cents=row["amount_cents"],
        status=ProviderStatus(row["status"]),
        check_count=row["check_count"],
        last_checked_at=row["last_checked_at"],
        applied=row["applied"],
        confirmation_url=row["confirmation_url"],
        created_at=row["created_at"],
        applied_at=row["applied_at"],
    )


def _items_json(order: Order) -> str:
    return json.dumps([
        {"item_id": i.item_id, "quantity": i.quantity, "unit_price_cents": i.unit_price_cents}
        for i in order.items
    ])


async def _insert_event(conn: asyncpg.Connection, event: OrderEvent) -> None:
    await conn.execute(
        """
        INSERT INTO order_events (order_id, from_status, to_status, role, actor_id, created_at)
        VALUES ($1, $2, $3, $4, $5, $6);
        """,
        event.order_id,
        event.from_status.value if event.from_status else None,
        event.to_status.value,
        event.role.value,
        event.actor_id,
        event.at,
    )


class _PostgresLockedOrder:
    """Handle bound to an open transaction that holds the order row lock."""

    def __init__(self, conn: asyncpg.Connection, order: Order):
        self._conn = conn
        self.order = order

    async def save(self) -> None:
        o = self.order
        await self._conn.execute(
            """
            UPDATE orders
            SET status = $1, is_paid = $2, courier_id = $3, confirmed_at = $4,
                delivered_at = $5, closed_at = $6, updated_at = NOW()
            WHERE order_id = $7;
            """,
            o.status.value,
            o.is_paid,
            o.courier_id,
            o.confirmed_at,
            o.delivered_at,
            o.closed_at,
            o.id,
        )

    async def append_event(self, event: OrderEvent) -> None:
        await _insert_event(self._conn, event)

    async def append_assignment(self, record: AssignmentRecord) -> None:
        await self._conn.execute(
            """
            INSERT INTO courier_assignments (order_id, courier_id, previous_courier_id, actor_id, created_at)
            VALUES ($1, $2, $3, $4, $5);
            """,
            record.order_id,
            record.courier_id,
            record.previous_courier_id,
            record.actor_id,
            record.at,
        )


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def insert_order(self, order: Order, event: OrderEvent) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO orders (order_id, customer_id, address_id, payment_method, items, status,
                                        is_paid, courier_id, total_cents, created_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10);
                    """,
                    order.id,
                    order.customer_id,
                    order.address_id,
                    order.payment_method.value,
                    _items_json(order),
                    order.status.value,
                    order.is_paid,
                    order.courier_id,
                    order.total_cents,
                    order.created_at,
                )
                await _insert_event(conn, event)

    async def get_order(self, order_id: str) -> Order | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE order_id = $1;", order_id)
        return _order_from_row(row) if row else None

    async def list_orders(
        self,
        statuses: Iterable[OrderStatus] | None = None,
        courier_id: str | None = None,
        customer_id: str | None = None,
    ) -> list[Order]:
        clauses: list[str] = []
        args: list = []
        if statuses:
            args.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(args)}::varchar[])")
        if courier_id is not None:
            args.append(courier_id)
            clauses.append(f"courier_id = ${len(args)}")
        if customer_id is not None:
            args.append(customer_id)
            clauses.append(f"customer_id = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT * FROM orders {where} ORDER BY created_at ASC;", *args)
        return [_order_from_row(r) for r in rows]

    async def list_events(self, order_id: str) -> list[OrderEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM order_events WHERE order_id = $1 ORDER BY id ASC;",
                order_id,
            )
        return [
            OrderEvent(
                order_id=r["order_id"],
                from_status=OrderStatus(r["from_status"]) if r["from_status"] else None,
                to_status=OrderStatus(r["to_status"]),
                role=Role(r["role"]),
                actor_id=r["actor_id"],
                at=r["created_at"],
            )
            for r in rows
        ]

    async def list_assignments(self, order_id: str) -> list[AssignmentRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM courier_assignments WHERE order_id = $1 ORDER BY id ASC;",
                order_id,
            )
        return [
            AssignmentRecord(
                order_id=r["order_id"],
                courier_id=r["courier_id"],
                previous_courier_id=r["previous_courier_id"],
                actor_id=r["actor_id"],
                at=r["created_at"],
            )
            for r in rows
        ]

    @asynccontextmanager
    async def locked(self, order_id: str) -> AsyncIterator[_PostgresLockedOrder | None]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM orders WHERE order_id = $1 FOR UPDATE;",
                    order_id,
                )
                if row is None:
                    yield None
                    return
                yield _PostgresLockedOrder(conn, _order_from_row(row))

    async def insert_attempt(self, attempt: PaymentAttempt) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO payment_attempts (payment_id, order_id, amount_cents, status, check_count,
                                              applied, confirmation_url, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8);
                """,
                attempt.payment_id,
                attempt.order_id,
                attempt.amount_cents,
                attempt.status.value,
                attempt.check_count,
                attempt.applied,
                attempt.confirmation_url,
                attempt.created_at,
            )

    async def get_attempt(self, payment_id: str) -> PaymentAttempt | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM payment_attempts WHERE payment_id = $1;", payment_id)
        return _attempt_from_row(row) if row else None

    async def list_attempts(self, order_id: str) -> list[PaymentAttempt]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM payment_attempts WHERE order_id = $1 ORDER BY created_at ASC;",
                order_id,
            )
        return [_attempt_from_row(r) for r in rows]

    async def record_check(self, payment_id: str, status: ProviderStatus, at: datetime) -> PaymentAttempt:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payment_attempts
                SET status = $2, check_count = check_count + 1, last_checked_at = $3
                WHERE payment_id = $1
                RETURNING *;
                """,
                payment_id,
                status.value,
                at,
            )
        return _attempt_from_row(row)

    async def mark_attempt_applied(self, payment_id: str, at: datetime) -> PaymentAttempt:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payment_attempts
                SET applied = TRUE, applied_at = COALESCE(applied_at, $2)
                WHERE payment_id = $1
                RETURNING *;
                """,
                payment_id,
                at,
            )
        return _attempt_from_row(row)

    async def list_open_attempts(self) -> list[PaymentAttempt]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM payment_attempts
                WHERE applied = FALSE AND status NOT IN ('canceled', 'failed')
                ORDER BY created_at ASC;
                """
            )
        return [_attempt_from_row(r) for r in rows]

    async def list_stalled_attempts(self, min_checks: int) -> list[PaymentAttempt]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM payment_attempts
                WHERE applied = FALSE AND status IN ('pending', 'waiting_for_capture') AND check_count >= $1
                ORDER BY created_at ASC;
                """,
                min_checks,
            )
        return [_attempt_from_row(r) for r in rows]

    async def get_user_role(self, user_id: str) -> Role | None:
        async with self._pool.acquire() as conn:
            role = await conn.fetchval("SELECT role FROM users WHERE id = $1;", user_id)
        if role is None:
            return None
        try:
            return Role(role)
        except ValueError:
            return None

    async def get_prices(self, item_ids: Iterable[str]) -> dict[str, int]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, price_cents FROM catalog_items WHERE id = ANY($1::varchar[]);",
                list(item_ids),
            )
        return {r["id"]: r["price_cents"] for r in rows}
