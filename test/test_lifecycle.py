import asyncio
from decimal import Decimal

import pytest

from conftest import ADMIN_ID
from orderdesk.domain import OrderStatus, PaymentMethod, PaymentStatus
from orderdesk.errors import InvalidOrder, InvalidTransition, OrderNotFound, StorageFailure, VersionConflict
from orderdesk.storage import _MemoryTransaction

S = OrderStatus


async def test_place_order_computes_amounts(place):
    order = await place()
    assert order.status == S.PENDING_VERIFICATION
    assert order.subtotal == Decimal("5901.00")
    assert order.delivery_charges == Decimal("50.00")
    assert order.total == order.subtotal + order.delivery_charges
    assert order.prepayment_amount is None
    assert order.payment_status == PaymentStatus.PENDING


async def test_place_cod_order_sets_prepayment(place):
    order = await place(PaymentMethod.COD, delivery_charges=Decimal("49.00"))
    assert order.total == Decimal("5950.00")
    assert order.prepayment_amount == Decimal("1190.00")
    assert order.payment_status == PaymentStatus.PARTIAL_PENDING


async def test_place_order_writes_first_history_row(place, service):
    order = await place()
    history = await service.get_history(order.id)
    assert [h.status for h in history] == [S.PENDING_VERIFICATION]
    assert history[0].changed_by == order.customer_id


async def test_place_order_rejects_negative_delivery(place):
    with pytest.raises(InvalidOrder):
        await place(delivery_charges=Decimal("-100000.00"))


async def test_contact_seller_scenario(place, service):
    order = await place()
    updated = await service.apply_transition(order.id, "contact_seller", ADMIN_ID)
    assert updated.status == S.SELLER_CONTACTED
    assert updated.contact_attempts == 1
    assert updated.updated_at > order.updated_at
    history = await service.get_history(order.id)
    assert len(history) == 2
    assert history[-1].status == S.SELLER_CONTACTED
    assert history[-1].changed_by == ADMIN_ID


async def test_seller_reject_is_terminal(place, service, advance):
    order = await place()
    await advance(order.id, "contact_seller")
    rejected = await service.apply_transition(order.id, "seller_reject", ADMIN_ID, note="out of stock")
    assert rejected.status == S.SELLER_REJECTED
    assert rejected.reject_reason == "out of stock"
    assert rejected.seller_response is None

    with pytest.raises(InvalidTransition) as exc_info:
        await service.apply_transition(order.id, "seller_accept", ADMIN_ID)
    assert exc_info.value.current_status == "seller_rejected"
    assert exc_info.value.action == "seller_accept"


async def test_full_verification_path(place, service, advance):
    order = await place()
    await advance(order.id, "contact_seller")
    accepted = await service.apply_transition(order.id, "seller_accept", ADMIN_ID, note="dispatching tomorrow")
    assert accepted.seller_response == "dispatching tomorrow"
    assert accepted.reject_reason is None

    await advance(order.id, "contact_buyer")
    confirmed = await service.apply_transition(order.id, "buyer_confirm", "admin-7", note="buyer ok")
    assert confirmed.status == S.CONFIRMED
    assert confirmed.buyer_response == "buyer ok"
    assert confirmed.verified_by_admin_id == "admin-7"
    assert confirmed.contact_attempts == 2

    history = await service.get_history(order.id)
    assert [h.status for h in history] == [
        S.PENDING_VERIFICATION,
        S.SELLER_CONTACTED,
        S.SELLER_ACCEPTED,
        S.BUYER_CONTACTED,
        S.CONFIRMED,
    ]


async def test_buyer_reject_accepts_empty_reason(place, service, advance):
    order = await place()
    await advance(order.id, "contact_seller", "seller_accept", "contact_buyer")
    rejected = await service.apply_transition(order.id, "buyer_reject", ADMIN_ID, note="")
    assert rejected.status == S.BUYER_REJECTED
    assert rejected.reject_reason == ""
    assert rejected.verified_by_admin_id is None


async def test_transition_leaves_totals_untouched(place, advance):
    order = await place(PaymentMethod.COD)
    final = await advance(order.id, "contact_seller", "seller_accept", "contact_buyer", "buyer_confirm")
    assert (final.subtotal, final.delivery_charges, final.total, final.prepayment_amount) == (
        order.subtotal, order.delivery_charges, order.total, order.prepayment_amount,
    )
    assert final.items == order.items
    assert final.delivery_address == order.delivery_address
    assert final.created_at == order.created_at


async def test_invalid_transition_changes_nothing(place, service, storage):
    order = await place()
    with pytest.raises(InvalidTransition):
        await service.apply_transition(order.id, "buyer_confirm", ADMIN_ID)
    assert (await storage.get_order(order.id)).model_dump() == order.model_dump()
    assert len(await service.get_history(order.id)) == 1


async def test_unknown_action_is_invalid_transition(place, service):
    order = await place()
    with pytest.raises(InvalidTransition) as exc_info:
        await service.apply_transition(order.id, "reopen", ADMIN_ID)
    assert exc_info.value.action == "reopen"


async def test_admin_cannot_use_fulfillment_actions(place, service):
    order = await place()
    with pytest.raises(InvalidTransition):
        await service.apply_transition(order.id, "dispatch", ADMIN_ID)


async def test_replaying_a_transition_is_rejected(place, service):
    order = await place()
    await service.apply_transition(order.id, "contact_seller", ADMIN_ID)
    with pytest.raises(InvalidTransition):
        await service.apply_transition(order.id, "contact_seller", ADMIN_ID)
    history = await service.get_history(order.id)
    assert [h.status for h in history].count(S.SELLER_CONTACTED) == 1
    assert (await service.get_order(order.id)).contact_attempts == 1


async def test_unknown_order(service):
    with pytest.raises(OrderNotFound):
        await service.apply_transition("missing", "contact_seller", ADMIN_ID)
    with pytest.raises(OrderNotFound):
        await service.get_history("missing")


async def test_stale_expected_version_conflicts(place, service):
    order = await place()
    stale = order.updated_at
    results = await asyncio.gather(
        service.apply_transition(order.id, "contact_seller", "admin-1", expected_version=stale),
        service.apply_transition(order.id, "contact_seller", "admin-2", expected_version=stale),
        return_exceptions=True,
    )
    successes = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, VersionConflict)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert (await service.get_order(order.id)).contact_attempts == 1
    assert len(await service.get_history(order.id)) == 2


async def test_store_compare_and_swap(place, storage):
    order = await place()
    first = order.model_copy(update={"contact_attempts": 1, "updated_at": order.updated_at.replace(year=2099)})
    second = order.model_copy(update={"contact_attempts": 5, "updated_at": order.updated_at.replace(year=2098)})
    async with storage.transaction() as tx:
        await tx.save_order(first, expected_version=order.updated_at)
    with pytest.raises(VersionConflict):
        async with storage.transaction() as tx:
            await tx.save_order(second, expected_version=order.updated_at)
    assert (await storage.get_order(order.id)).contact_attempts == 1


async def test_failed_history_append_rolls_back(place, service, storage, monkeypatch):
    order = await place()

    async def broken_append(self, entry):
        raise StorageFailure("disk full")

    monkeypatch.setattr(_MemoryTransaction, "append_history", broken_append)
    with pytest.raises(StorageFailure):
        await service.apply_transition(order.id, "contact_seller", ADMIN_ID)
    monkeypatch.undo()

    assert (await storage.get_order(order.id)).status == S.PENDING_VERIFICATION
    assert len(await service.get_history(order.id)) == 1


async def test_fulfillment_path(place, service, advance):
    order = await place()
    await advance(order.id, "contact_seller", "seller_accept", "contact_buyer", "buyer_confirm")
    for action, status in (("dispatch", S.OUT_FOR_DELIVERY), ("deliver", S.DELIVERED), ("complete", S.COMPLETED)):
        order = await service.advance_fulfillment(order.id, action, "system")
        assert order.status == status
    with pytest.raises(InvalidTransition):
        await service.advance_fulfillment(order.id, "dispatch")
    assert len(await service.get_history(order.id)) == 8


async def test_fulfillment_requires_confirmation(place, service):
    order = await place()
    with pytest.raises(InvalidTransition):
        await service.advance_fulfillment(order.id, "dispatch")


async def test_cancel_after_confirmation(place, service, advance):
    order = await place()
    await advance(order.id, "contact_seller", "seller_accept", "contact_buyer", "buyer_confirm")
    cancelled = await service.advance_fulfillment(order.id, "cancel", note="seller closed")
    assert cancelled.status == S.REJECTED
    assert cancelled.reject_reason == "seller closed"


async def test_admin_queue_and_status_queries(place, service, advance):
    waiting = await place()
    in_progress = await place()
    done = await place(customer_id="cust-2")
    await advance(in_progress.id, "contact_seller")
    await advance(done.id, "contact_seller", "seller_reject")

    queue_ids = {o.id for o in await service.admin_queue()}
    assert queue_ids == {waiting.id, in_progress.id}

    rejected = await service.list_orders_by_status(["seller_rejected"])
    assert [o.id for o in rejected] == [done.id]
    assert await service.list_orders_by_status([]) == []
    assert [o.id for o in await service.list_orders_by_customer("cust-2")] == [done.id]
    assert len(await service.list_orders_by_seller("seller-1")) == 3
