"""
Storage collaborator contract and the in-process implementation.

Writes go through a transaction scope: every write staged inside `async with storage.transaction()`
is applied together on exit, or not at all if the block raises. save_order is a compare-and-swap on
the order's updated_at.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable

from orderdesk.domain import Order, OrderStateHistory, OrderStatus, Payment
from orderdesk.errors import OrderNotFound, StorageFailure, VersionConflict


class Transaction(ABC):
    @abstractmethod
    async def insert_order(self, order: Order) -> None: ...

    @abstractmethod
    async def save_order(self, order: Order, expected_version: datetime) -> None:
        """Persist order if the stored updated_at still equals expected_version, else VersionConflict."""

    @abstractmethod
    async def append_history(self, entry: OrderStateHistory) -> None: ...

    @abstractmethod
    async def add_payment(self, payment: Payment) -> None: ...


class Storage(ABC):
    @abstractmethod
    async def get_order(self, order_id: str) -> Order:
        """Raises OrderNotFound."""

    @abstractmethod
    async def list_orders_by_status(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        """Newest first."""

    @abstractmethod
    async def list_orders_by_customer(self, customer_id: str) -> list[Order]: ...

    @abstractmethod
    async def list_orders_by_seller(self, seller_id: str) -> list[Order]: ...

    @abstractmethod
    async def get_history(self, order_id: str) -> list[OrderStateHistory]:
        """Oldest first."""

    @abstractmethod
    async def list_payments(self, order_id: str) -> list[Payment]: ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Transaction]: ...

    async def close(self) -> None:
        return None


class _MemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryStorage"):
        self._store = store
        self.inserts: list[Order] = []
        self.saves: list[tuple[Order, datetime]] = []
        self.history: list[OrderStateHistory] = []
        self.payments: list[Payment] = []

    def _known(self, order_id: str) -> bool:
        return order_id in self._store._orders or any(o.id == order_id for o in self.inserts)

    async def insert_order(self, order: Order) -> None:
        if self._known(order.id):
            raise StorageFailure(f"Order {order.id} already exists")
        self.inserts.append(order.model_copy())

    async def save_order(self, order: Order, expected_version: datetime) -> None:
        self._store._check_version(order.id, expected_version)
        self.saves.append((order.model_copy(), expected_version))

    async def append_history(self, entry: OrderStateHistory) -> None:
        if not self._known(entry.order_id):
            raise StorageFailure(f"History for unknown order {entry.order_id}")
        self.history.append(entry)

    async def add_payment(self, payment: Payment) -> None:
        if not self._known(payment.order_id):
            raise StorageFailure(f"Payment for unknown order {payment.order_id}")
        self.payments.append(payment)


class InMemoryStorage(Storage):
    """Process-local store. Commit runs without awaiting, so it is atomic within the event loop."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._history: dict[str, list[OrderStateHistory]] = {}
        self._payments: dict[str, list[Payment]] = {}

    def _check_version(self, order_id: str, expected_version: datetime) -> None:
        current = self._orders.get(order_id)
        if current is None:
            raise OrderNotFound(order_id)
        if current.updated_at != expected_version:
            raise VersionConflict(order_id)

    async def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order.model_copy()

    def _newest_first(self, orders: Iterable[Order]) -> list[Order]:
        return [o.model_copy() for o in sorted(orders, key=lambda o: o.created_at, reverse=True)]

    async def list_orders_by_status(self, statuses: Iterable[OrderStatus]) -> list[Order]:
        wanted = set(statuses)
        if not wanted:
            return []
        return self._newest_first(o for o in self._orders.values() if o.status in wanted)

    async def list_orders_by_customer(self, customer_id: str) -> list[Order]:
        return self._newest_first(o for o in self._orders.values() if o.customer_id == customer_id)

    async def list_orders_by_seller(self, seller_id: str) -> list[Order]:
        return self._newest_first(o for o in self._orders.values() if o.seller_id == seller_id)

    async def get_history(self, order_id: str) -> list[OrderStateHistory]:
        return list(self._history.get(order_id, []))

    async def list_payments(self, order_id: str) -> list[Payment]:
        return list(self._payments.get(order_id, []))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        tx = _MemoryTransaction(self)
        yield tx
        self._commit(tx)

    def _commit(self, tx: _MemoryTransaction) -> None:
        for order, expected_version in tx.saves:
            self._check_version(order.id, expected_version)
        for order in tx.inserts:
            self._orders[order.id] = order
        for order, _ in tx.saves:
            self._orders[order.id] = order
        for entry in tx.history:
            self._history.setdefault(entry.order_id, []).append(entry)
        for payment in tx.payments:
            self._payments.setdefault(payment.order_id, []).append(payment)
