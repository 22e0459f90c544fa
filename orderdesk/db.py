"""
Async Postgres: orders (current state per order), order_state_history (audit trail), payments.
Each write scope runs in a single transaction; order updates are a compare-and-swap on updated_at.
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable

import asyncpg

from orderdesk.config import settings
from orderdesk.domain import Order, OrderStateHistory, OrderStatus, Payment
from orderdesk.errors import OrderNotFound, StorageFailure, VersionConflict
from orderdesk.storage import Storage, Transaction

logger = logging.getLogger(__name__)

# Driver and connection errors surface to the core as StorageFailure.
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

ORDER_COLUMNS = """
    id, customer_id, seller_id, items, subtotal, delivery_charges, total, payment_method,
    prepayment_amount, status, payment_status, delivery_address, contact_attempts,
    seller_response, buyer_response, reject_reason, verified_by_admin_id, created_at, updated_at
"""


async def create_pool() -> asyncpg.Pool:
    try:
        return await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=settings.db_command_timeout,
        )
    except DRIVER_ERRORS as exc:
        raise StorageFailure(f"Could not connect to database: {exc}") from exc


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                customer_id VARCHAR(64) NOT NULL,
                seller_id VARCHAR(64) NOT NULL,
                items JSONB NOT NULL,
                subtotal NUMERIC(10, 2) NOT NULL,
                delivery_charges NUMERIC(10, 2) NOT NULL DEFAULT 0,
                total NUMERIC(10, 2) NOT NULL,
                payment_method VARCHAR(20) NOT NULL,
                prepayment_amount NUMERIC(10, 2),
                status VARCHAR(50) NOT NULL,
                payment_status VARCHAR(50) NOT NULL,
                delivery_address JSONB NOT NULL,
                contact_attempts INT NOT NULL DEFAULT 0 CHECK (contact_attempts >= 0),
                seller_response TEXT,
                buyer_response TEXT,
                reject_reason TEXT,
                verified_by_admin_id VARCHAR(64),
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                CHECK (total = subtotal + delivery_charges)
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_seller_id ON orders(seller_id);")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_state_history (
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                status VARCHAR(50) NOT NULL,
                changed_by VARCHAR(64),
                note TEXT,
                created_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_order_state_history_order_id ON order_state_history(order_id);"
        )
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                provider_id TEXT,
                amount NUMERIC(10, 2) NOT NULL,
                status VARCHAR(20) NOT NULL,
                type VARCHAR(20) NOT NULL,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_order_id ON payments(order_id);")


def _order_from_row(row: asyncpg.Record) -> Order:
    data = dict(row)
    data["items"] = json.loads(data["items"])
    data["delivery_address"] = json.loads(data["delivery_address"])
    return Order.model_validate(data)


def _payment_from_row(row: asyncpg.Record) -> Payment:
    data = dict(row)
    data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
    return Payment.model_validate(data)


def _order_params(order: Order) -> list:
    return [
        order.id,
        order.customer_id,
        order.seller_id,
        json.dumps([item.model_dump(mode="json") for item in order.items]),
        order.subtotal,
        order.delivery_charges,
        order.total,
        order.payment_method.value,
        order.prepayment_amount,
        order.status.value,
        order.payment_status.value,
        order.delivery_address.model_dump_json(),
        order.contact_attempts,
        order.seller_response,
        order.buyer_response,
        order.reject_reason,
        order.verified_by_admin_id,
        order.created_at,
        order.updated_at,
    ]


class PostgresTransaction(Transaction):
    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def insert_order(self, order: Order) -> None:
        await self._conn.execute(
            f"""
            INSERT INTO orders ({ORDER_COLUMNS})
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14, $15, $16, $17, $18, $19);
            """,
            *_order_params(order),
        )

    async def save_order(self, order: Order, expected_version: datetime) -> None:
        # Items, address, amounts and created_at are fixed at creation and never rewritten.
        result = await self._conn.execute(
            """
            UPDATE orders SET
                status = $2, payment_status = $3, contact_attempts = $4, seller_response = $5,
                buyer_response = $6, reject_reason = $7, verified_by_admin_id = $8, updated_at = $9
            WHERE id = $1 AND updated_at = $10;
            """,
            order.id,
            order.status.value,
            order.payment_status.value,
            order.contact_attempts,
            order.seller_response,
            order.buyer_response,
            order.reject_reason,
            order.verified_by_admin_id,
            order.updated_at,
            expected_version,
        )
        if result == "UPDATE 0":
            exists = await self._conn.fetchval("SELECT 1 FROM orders WHERE id = $1;", order.id)
            if exists is None:
                raise OrderNotFound(order.id)
            raise VersionConflict(order.id)

    async def append_history(self, entry: OrderStateHistory) -> None:
        await self._conn.execute(
            """
            INSERT INTO order_state_history (id, order_id, status, changed_by, note, created_at)
            VALUES ($1, $2, $3, $4, $5, $6);
            """,
            entry.id,
            entry.order_id,
            entry.status.value,
            entry.changed_by,
            entry.note,
            entry.created_at,
        )

    async def add_payment(self, payment: Payment) -> None:
        await self._conn.execute(
            """
            INSERT INTO payments (id, order_id, provider_id, amount, status, type, metadata, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8);
            """,
            payment.id,
            payment.order_id,
            payment.provider_id,
            payment.amount,
            payment.status.value,
            payment.type.value,
            json.dumps(payment.metadata),
            payment.created_at,
        )


class PostgresStorage(Storage):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @classmethod
    async def connect(cls) -> "PostgresStorage":
        pool = await create_pool()
        try:
            await init_schema(pool)
        except DRIVER_ERRORS as exc:
            await pool.close()
            raise StorageFailure(f"Could not initialise schema: {exc}") from exc
        logger.info("Schema ready. Postgres pool size %d..%d", settings.db_pool_min_size, settings.db_pool_max_size)
        return cls(pool)

    async def close(self) -> None:
        await self._pool.close()

    async def _fetch(self, query: str, *args) -> list[asyncpg.Record]:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except DRIVER_ERRORS as exc:
            raise StorageFailure(str(exc)) from exc

    async def get_order(self, order_id: str) -> Order:
        rows = await self._fetch(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = $1;", order_id)
        if not rows:
            raise OrderNotFound(order_id)
        return _order_from_row(rows[0])

    async def list_orders_by_status(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        values = [OrderStatus(s).value for s in statuses]
        if not values:
            return []
        rows = await self._fetch(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE status = ANY($1::varchar[]) ORDER BY created_at DESC;",
            values,
        )
        return [_order_from_row(r) for r in rows]

    async def list_orders_by_customer(self, customer_id: str) -> list[Order]:
        rows = await self._fetch(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE customer_id = $1 ORDER BY created_at DESC;",
            customer_id,
        )
        return [_order_from_row(r) for r in rows]

    async def list_orders_by_seller(self, seller_id: str) -> list[Order]:
        rows = await self._fetch(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE seller_id = $1 ORDER BY created_at DESC;",
            seller_id,
        )
        return [_order_from_row(r) for r in rows]

    async def get_history(self, order_id: str) -> list[OrderStateHistory]:
        rows = await self._fetch(
            """
            SELECT id, order_id, status, changed_by, note, created_at FROM order_state_history
            WHERE order_id = $1 ORDER BY created_at ASC;
            """,
            order_id,
        )
        return [OrderStateHistory.model_validate(dict(r)) for r in rows]

    async def list_payments(self, order_id: str) -> list[Payment]:
        rows = await self._fetch(
            """
            SELECT id, order_id, provider_id, amount, status, type, metadata, created_at FROM payments
            WHERE order_id = $1 ORDER BY created_at ASC;
            """,
            order_id,
        )
        return [_payment_from_row(r) for r in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresTransaction(conn)
        except DRIVER_ERRORS as exc:
            raise StorageFailure(str(exc)) from exc
