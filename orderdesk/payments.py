"""
Payment status projection and payment recording.

payment_status on an order is always derived from the order and its Payment rows, never trusted from a
previously stored value, so a payment inserted out of order still yields a consistent result.
"""
import logging
from decimal import Decimal
from typing import Any, Iterable

from orderdesk.domain import (
    Order,
    Payment,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentStatus,
    PaymentType,
    next_version,
)
from orderdesk.metrics import payments_recorded_total
from orderdesk.storage import Storage

logger = logging.getLogger(__name__)


def _leg_state(payments: list[Payment], leg: PaymentType) -> PaymentRecordStatus | None:
    """
    Outcome of one payment leg: succeeded if any attempt succeeded, failed if any attempt failed and
    none succeeded, otherwise the status of the latest attempt. None if the leg was never attempted.
    """
    attempts = [p for p in payments if p.type == leg]
    if not attempts:
        return None
    if any(p.status == PaymentRecordStatus.SUCCEEDED for p in attempts):
        return PaymentRecordStatus.SUCCEEDED
    if any(p.status == PaymentRecordStatus.FAILED for p in attempts):
        return PaymentRecordStatus.FAILED
    return attempts[-1].status


def project_payment_status(order: Order, payments: Iterable[Payment]) -> PaymentStatus:
    ordered = sorted((p for p in payments if p.order_id == order.id), key=lambda p: p.created_at)

    if _leg_state(ordered, PaymentType.REFUND) == PaymentRecordStatus.SUCCEEDED:
        return PaymentStatus.REFUNDED

    if order.payment_method == PaymentMethod.ONLINE:
        full = _leg_state(ordered, PaymentType.FULL)
        if full == PaymentRecordStatus.SUCCEEDED:
            return PaymentStatus.PAID
        if full == PaymentRecordStatus.FAILED:
            return PaymentStatus.FAILED
        return PaymentStatus.PENDING

    # cash on delivery: prepayment leg, then settlement at delivery
    settlement = _leg_state(ordered, PaymentType.SETTLEMENT)
    if settlement == PaymentRecordStatus.SUCCEEDED:
        return PaymentStatus.PAID
    prepayment = _leg_state(ordered, PaymentType.PREPAYMENT)
    if prepayment == PaymentRecordStatus.SUCCEEDED:
        if settlement == PaymentRecordStatus.FAILED:
            return PaymentStatus.FAILED
        return PaymentStatus.PARTIAL_PAID
    if prepayment == PaymentRecordStatus.FAILED:
        return PaymentStatus.FAILED
    return PaymentStatus.PARTIAL_PENDING


async def record_payment(
    storage: Storage,
    order_id: str,
    amount: Decimal,
    payment_type: PaymentType,
    status: PaymentRecordStatus,
    provider_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[Order, Payment]:
    """
    Store a payment reported by the external processor and re-project the order's payment status.
    Both writes share one transaction guarded by the order's version.
    """
    order = await storage.get_order(order_id)
    payment = Payment(
        order_id=order.id,
        amount=amount,
        status=status,
        type=payment_type,
        provider_id=provider_id,
        metadata=metadata or {},
    )
    existing = await storage.list_payments(order.id)
    projected = project_payment_status(order, [*existing, payment])
    updated = order.model_copy(update={"payment_status": projected, "updated_at": next_version(order.updated_at)})

    async with storage.transaction() as tx:
        await tx.add_payment(payment)
        await tx.save_order(updated, expected_version=order.updated_at)

    payments_recorded_total.labels(type=payment_type.value, status=status.value).inc()
    logger.info(
        "Recorded %s payment order_id=%s status=%s amount=%s -> payment_status=%s",
        payment_type.value, order.id, status.value, amount, projected.value,
    )
    return updated, payment
