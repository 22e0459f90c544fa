"""
Shared fixtures: an in-process store, the lifecycle service over it, and checkout data.
"""
from decimal import Decimal

import pytest

from orderdesk.domain import DeliveryAddress, NewOrder, OrderItem, PaymentMethod
from orderdesk.service import OrderLifecycleService
from orderdesk.storage import InMemoryStorage

ADMIN_ID = "admin-1"


def make_new_order(payment_method: PaymentMethod = PaymentMethod.ONLINE, **overrides) -> NewOrder:
    data = {
        "customer_id": "cust-1",
        "seller_id": "seller-1",
        "items": [
            OrderItem(product_id="prod-cement", title="OPC Cement 53 grade", quantity=10,
                      unit_price=Decimal("350.00"), unit="bag"),
            OrderItem(product_id="prod-sand", title="River sand", quantity=2,
                      unit_price=Decimal("1200.50"), unit="ton"),
        ],
        "payment_method": payment_method,
        "delivery_address": DeliveryAddress(
            address_line1="12 Station Road", city="Pune", state="Maharashtra", pin_code="411001"
        ),
    }
    data.update(overrides)
    return NewOrder(**data)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def service(storage) -> OrderLifecycleService:
    return OrderLifecycleService(storage)


@pytest.fixture
def place(service):
    async def _place(payment_method: PaymentMethod = PaymentMethod.ONLINE, **overrides):
        return await service.place_order(make_new_order(payment_method, **overrides))
    return _place


@pytest.fixture
def advance(service):
    """Apply a sequence of admin actions and return the final order."""
    async def _advance(order_id: str, *actions: str, note: str | None = None):
        order = None
        for action in actions:
            order = await service.apply_transition(order_id, action, ADMIN_ID, note=note)
        return order
    return _advance
