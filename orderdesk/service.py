"""
Order lifecycle service: the only code path that changes an order's status.

Each call reads the order, resolves the transition from the table in order_state, applies exactly the
side effects the table names, and writes the order together with one history row in a single
transaction. The write is a compare-and-swap on updated_at; a lost race surfaces as VersionConflict
and is never retried here.
"""
import logging
from datetime import datetime
from decimal import Decimal

from pydantic import ValidationError

from orderdesk.config import settings
from orderdesk.domain import (
    FULFILLMENT_ACTIONS,
    VERIFICATION_ACTIONS,
    Action,
    ActorRole,
    NewOrder,
    Order,
    OrderStateHistory,
    OrderStatus,
    PaymentMethod,
    compute_prepayment,
    next_version,
    to_cents,
)
from orderdesk.errors import InvalidOrder, InvalidTransition, VersionConflict
from orderdesk.metrics import (
    order_transitions_rejected_total,
    order_transitions_total,
    order_version_conflicts_total,
    orders_placed_total,
)
from orderdesk.order_state import ADMIN_QUEUE_STATUSES, Effect, Transition, resolve_transition
from orderdesk.payments import project_payment_status
from orderdesk.storage import Storage

logger = logging.getLogger(__name__)


def _parse_action(action: Action | str, current_status: OrderStatus, allowed: frozenset) -> Action:
    try:
        parsed = Action(action)
    except ValueError:
        raise InvalidTransition(current_status.value, str(action))
    if parsed not in allowed:
        raise InvalidTransition(current_status.value, parsed.value)
    return parsed


def apply_effects(order: Order, transition: Transition, actor_id: str | None, note: str | None) -> dict:
    """Field updates for a transition. Only the fields the table's effects name are touched."""
    changes: dict = {"status": transition.next_status}
    for effect in transition.effects:
        if effect == Effect.INCREMENT_CONTACT_ATTEMPTS:
            changes["contact_attempts"] = order.contact_attempts + 1
        elif effect == Effect.STORE_SELLER_RESPONSE:
            changes["seller_response"] = note
        elif effect == Effect.STORE_BUYER_RESPONSE:
            changes["buyer_response"] = note
        elif effect == Effect.STORE_REJECT_REASON:
            changes["reject_reason"] = note
        elif effect == Effect.CLEAR_REJECT_REASON:
            changes["reject_reason"] = None
        elif effect == Effect.SET_VERIFIED_BY:
            changes["verified_by_admin_id"] = actor_id
    return changes


class OrderLifecycleService:
    def __init__(self, storage: Storage):
        self.storage = storage

    async def place_order(self, new_order: NewOrder) -> Order:
        """
        Create an order from validated checkout data and submit it for verification.
        The row and its first history entry are written together, already in pending_verification.
        """
        subtotal = to_cents(sum((item.line_total for item in new_order.items), Decimal("0")))
        delivery_charges = to_cents(
            settings.default_delivery_charges if new_order.delivery_charges is None else new_order.delivery_charges
        )
        total = subtotal + delivery_charges
        prepayment = None
        if new_order.payment_method == PaymentMethod.COD:
            prepayment = compute_prepayment(total)
        try:
            order = Order(
                customer_id=new_order.customer_id,
                seller_id=new_order.seller_id,
                items=tuple(new_order.items),
                subtotal=subtotal,
                delivery_charges=delivery_charges,
                total=total,
                payment_method=new_order.payment_method,
                prepayment_amount=prepayment,
                delivery_address=new_order.delivery_address,
            )
        except ValidationError as exc:
            raise InvalidOrder(str(exc)) from exc

        transition = resolve_transition(order.status, Action.SUBMIT_FOR_VERIFICATION, ActorRole.SYSTEM)
        order = order.model_copy(update={
            "status": transition.next_status,
            "payment_status": project_payment_status(order, []),
        })

        async with self.storage.transaction() as tx:
            await tx.insert_order(order)
            await tx.append_history(OrderStateHistory(
                order_id=order.id,
                status=order.status,
                changed_by=order.customer_id,
                note="Order placed",
                created_at=order.created_at,
            ))

        orders_placed_total.labels(payment_method=order.payment_method.value).inc()
        logger.info(
            "Placed order_id=%s customer_id=%s seller_id=%s total=%s method=%s",
            order.id, order.customer_id, order.seller_id, order.total, order.payment_method.value,
        )
        return order

    async def apply_transition(
        self,
        order_id: str,
        action: Action | str,
        actor_id: str,
        note: str | None = None,
        expected_version: datetime | None = None,
    ) -> Order:
        """Apply an admin verification action (contact_seller, seller_accept, ... buyer_reject)."""
        return await self._transition(
            order_id, action, actor_id, note, expected_version, ActorRole.ADMIN, VERIFICATION_ACTIONS
        )

    async def advance_fulfillment(
        self,
        order_id: str,
        action: Action | str,
        actor_id: str | None = None,
        note: str | None = None,
        expected_version: datetime | None = None,
    ) -> Order:
        """Move a confirmed order along dispatch -> deliver -> complete, or cancel it before dispatch."""
        return await self._transition(
            order_id, action, actor_id, note, expected_version, ActorRole.SYSTEM, FULFILLMENT_ACTIONS
        )

    async def _transition(
        self,
        order_id: str,
        action: Action | str,
        actor_id: str | None,
        note: str | None,
        expected_version: datetime | None,
        role: ActorRole,
        allowed: frozenset,
    ) -> Order:
        order = await self.storage.get_order(order_id)
        if expected_version is not None and order.updated_at != expected_version:
            order_version_conflicts_total.inc()
            logger.warning("Stale version for order_id=%s (action=%s)", order_id, action)
            raise VersionConflict(order_id)

        try:
            parsed = _parse_action(action, order.status, allowed)
            transition = resolve_transition(order.status, parsed, role)
        except InvalidTransition as exc:
            order_transitions_rejected_total.labels(current_status=exc.current_status, action=exc.action).inc()
            logger.warning("Rejected transition order_id=%s: %s", order_id, exc)
            raise

        changes = apply_effects(order, transition, actor_id, note)
        changes["updated_at"] = next_version(order.updated_at)
        updated = order.model_copy(update=changes)
        # payment_status is derived from payment rows, not a transition effect; recompute it on every write
        payments = await self.storage.list_payments(order_id)
        updated = updated.model_copy(update={"payment_status": project_payment_status(updated, payments)})

        try:
            async with self.storage.transaction() as tx:
                await tx.save_order(updated, expected_version=order.updated_at)
                await tx.append_history(OrderStateHistory(
                    order_id=order_id,
                    status=updated.status,
                    changed_by=actor_id,
                    note=note,
                    created_at=updated.updated_at,
                ))
        except VersionConflict:
            order_version_conflicts_total.inc()
            logger.warning("Version conflict on order_id=%s (action=%s)", order_id, parsed.value)
            raise

        order_transitions_total.labels(action=parsed.value).inc()
        logger.info(
            "Order %s: %s -> %s via %s by %s",
            order_id, order.status.value, updated.status.value, parsed.value, actor_id,
        )
        return updated

    # read-only queries

    async def get_order(self, order_id: str) -> Order:
        return await self.storage.get_order(order_id)

    async def list_orders_by_status(self, statuses) -> list[Order]:
        return await self.storage.list_orders_by_status([OrderStatus(s) for s in statuses])

    async def admin_queue(self) -> list[Order]:
        return await self.storage.list_orders_by_status(ADMIN_QUEUE_STATUSES)

    async def list_orders_by_customer(self, customer_id: str) -> list[Order]:
        return await self.storage.list_orders_by_customer(customer_id)

    async def list_orders_by_seller(self, seller_id: str) -> list[Order]:
        return await self.storage.list_orders_by_seller(seller_id)

    async def get_history(self, order_id: str) -> list[OrderStateHistory]:
        await self.storage.get_order(order_id)
        return await self.storage.get_history(order_id)

    async def list_payments(self, order_id: str):
        await self.storage.get_order(order_id)
        return await self.storage.list_payments(order_id)
