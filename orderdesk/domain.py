"""
Order records: Order, OrderStateHistory, Payment and the enums they use.
Orders are only mutated through the lifecycle service; these models hold data and creation invariants.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

CENT = Decimal("0.01")
PREPAYMENT_RATE = Decimal("0.20")  # share of the total paid upfront on cash-on-delivery orders


class OrderStatus(str, Enum):
    CREATED = "created"
    PENDING_VERIFICATION = "pending_verification"
    SELLER_CONTACTED = "seller_contacted"
    SELLER_ACCEPTED = "seller_accepted"
    SELLER_REJECTED = "seller_rejected"
    BUYER_CONTACTED = "buyer_contacted"
    BUYER_CONFIRMED = "buyer_confirmed"
    BUYER_REJECTED = "buyer_rejected"
    CONFIRMED = "confirmed"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL_PENDING = "partial_pending"
    PARTIAL_PAID = "partial_paid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    COD = "cod"


class PaymentType(str, Enum):
    FULL = "full"
    PREPAYMENT = "prepayment"
    SETTLEMENT = "settlement"
    REFUND = "refund"


class PaymentRecordStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Action(str, Enum):
    # admin verification workflow
    CONTACT_SELLER = "contact_seller"
    SELLER_ACCEPT = "seller_accept"
    SELLER_REJECT = "seller_reject"
    CONTACT_BUYER = "contact_buyer"
    BUYER_CONFIRM = "buyer_confirm"
    BUYER_REJECT = "buyer_reject"
    # system: placement and fulfillment
    SUBMIT_FOR_VERIFICATION = "submit_for_verification"
    DISPATCH = "dispatch"
    DELIVER = "deliver"
    COMPLETE = "complete"
    CANCEL = "cancel"


VERIFICATION_ACTIONS = frozenset({
    Action.CONTACT_SELLER,
    Action.SELLER_ACCEPT,
    Action.SELLER_REJECT,
    Action.CONTACT_BUYER,
    Action.BUYER_CONFIRM,
    Action.BUYER_REJECT,
})

FULFILLMENT_ACTIONS = frozenset({Action.DISPATCH, Action.DELIVER, Action.COMPLETE, Action.CANCEL})


class ActorRole(str, Enum):
    ADMIN = "admin"
    SYSTEM = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_version(previous: datetime) -> datetime:
    """New updated_at, strictly later than the previous one so it stays usable as a CAS token."""
    now = utcnow()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def to_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_prepayment(total: Decimal) -> Decimal:
    return to_cents(total * PREPAYMENT_RATE)


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    title: str
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    unit: str = "piece"

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class DeliveryAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    address_line1: str
    address_line2: str | None = None
    city: str
    state: str
    pin_code: str


class Order(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer_id: str
    seller_id: str
    items: tuple[OrderItem, ...]
    subtotal: Decimal = Field(..., ge=0)
    delivery_charges: Decimal = Field(default=Decimal("0.00"), ge=0)
    total: Decimal = Field(..., ge=0)
    payment_method: PaymentMethod
    prepayment_amount: Decimal | None = None
    status: OrderStatus = OrderStatus.CREATED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    delivery_address: DeliveryAddress
    contact_attempts: int = Field(default=0, ge=0)
    seller_response: str | None = None
    buyer_response: str | None = None
    reject_reason: str | None = None
    verified_by_admin_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_amounts(self) -> "Order":
        if not self.items:
            raise ValueError("order must contain at least one item")
        if self.total != self.subtotal + self.delivery_charges:
            raise ValueError(
                f"total {self.total} != subtotal {self.subtotal} + delivery charges {self.delivery_charges}"
            )
        if self.payment_method == PaymentMethod.COD:
            if self.prepayment_amount is None:
                raise ValueError("cash-on-delivery order requires a prepayment amount")
            expected = compute_prepayment(self.total)
            if self.prepayment_amount != expected:
                raise ValueError(
                    f"prepayment amount {self.prepayment_amount} != {expected} (20% of total {self.total})"
                )
        elif self.prepayment_amount is not None:
            raise ValueError("prepayment amount is only allowed for cash-on-delivery orders")
        return self


class OrderStateHistory(BaseModel):
    """One audit row per status change. Never mutated or deleted."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    status: OrderStatus
    changed_by: str | None = None
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    amount: Decimal
    status: PaymentRecordStatus = PaymentRecordStatus.PENDING
    type: PaymentType
    provider_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class NewOrder(BaseModel):
    """Already-validated checkout data handed to the core by the placing flow."""
    customer_id: str
    seller_id: str
    items: list[OrderItem] = Field(..., min_length=1)
    payment_method: PaymentMethod
    delivery_address: DeliveryAddress
    delivery_charges: Decimal | None = None
