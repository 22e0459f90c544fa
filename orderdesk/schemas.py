from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from orderdesk.config import settings
from orderdesk.domain import (
    Action,
    ActorRole,
    DeliveryAddress,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentType,
)
from orderdesk.order_state import allowed_actions


class PlaceOrderBody(BaseModel):
    customer_id: str
    seller_id: str
    items: list[OrderItem] = Field(..., min_length=1)
    payment_method: PaymentMethod
    delivery_address: DeliveryAddress
    delivery_charges: Decimal | None = Field(default=None, ge=0, description="Defaults to the flat delivery charge")


class TransitionBody(BaseModel):
    action: Action = Field(..., description="Verification action to apply")
    actor_id: str = Field(..., description="Admin performing the action")
    note: str | None = Field(default=None, description="Response or reject reason")
    expected_version: datetime | None = Field(
        default=None, description="updated_at the caller last saw; mismatch -> 409"
    )


class FulfillmentBody(BaseModel):
    action: Action = Field(..., description="dispatch | deliver | complete | cancel")
    actor_id: str | None = None
    note: str | None = None
    expected_version: datetime | None = None


class StatusFilterBody(BaseModel):
    statuses: list[OrderStatus]


class RecordPaymentBody(BaseModel):
    amount: Decimal = Field(..., ge=0)
    type: PaymentType
    status: PaymentRecordStatus
    provider_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueueEntry(BaseModel):
    order: Order
    needs_attention: bool = Field(
        ..., description="Contact attempts reached the configured warning threshold"
    )
    next_actions: list[Action] = Field(..., description="Verification actions allowed from the current status")

    @classmethod
    def from_order(cls, order: Order) -> "QueueEntry":
        return cls(
            order=order,
            needs_attention=order.contact_attempts >= settings.contact_attempts_warn_after,
            next_actions=allowed_actions(order.status, ActorRole.ADMIN),
        )
