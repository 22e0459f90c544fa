from fastapi import APIRouter, Depends

from orderdesk.deps import get_service, get_storage
from orderdesk.domain import NewOrder, Order, Payment
from orderdesk.payments import record_payment
from orderdesk.schemas import FulfillmentBody, PlaceOrderBody, RecordPaymentBody, StatusFilterBody
from orderdesk.service import OrderLifecycleService
from orderdesk.storage import Storage

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=Order, status_code=201)
async def place_order(body: PlaceOrderBody, service: OrderLifecycleService = Depends(get_service)) -> Order:
    return await service.place_order(NewOrder(**body.model_dump()))


@router.post("/by-status", response_model=list[Order])
async def orders_by_status(
    body: StatusFilterBody,
    service: OrderLifecycleService = Depends(get_service),
) -> list[Order]:
    return await service.list_orders_by_status(body.statuses)


@router.get("/customer/{customer_id}", response_model=list[Order])
async def orders_for_customer(customer_id: str, service: OrderLifecycleService = Depends(get_service)) -> list[Order]:
    return await service.list_orders_by_customer(customer_id)


@router.get("/seller/{seller_id}", response_model=list[Order])
async def orders_for_seller(seller_id: str, service: OrderLifecycleService = Depends(get_service)) -> list[Order]:
    return await service.list_orders_by_seller(seller_id)


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, service: OrderLifecycleService = Depends(get_service)) -> Order:
    return await service.get_order(order_id)


@router.post("/{order_id}/fulfillment", response_model=Order)
async def advance_fulfillment(
    order_id: str,
    body: FulfillmentBody,
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.advance_fulfillment(
        order_id,
        body.action,
        body.actor_id,
        note=body.note,
        expected_version=body.expected_version,
    )


@router.get("/{order_id}/payments", response_model=list[Payment])
async def list_payments(order_id: str, service: OrderLifecycleService = Depends(get_service)) -> list[Payment]:
    return await service.list_payments(order_id)


@router.post("/{order_id}/payments", response_model=Order, status_code=201)
async def add_payment(
    order_id: str,
    body: RecordPaymentBody,
    storage: Storage = Depends(get_storage),
) -> Order:
    """Payment processor callback: store the payment and return the order with re-projected payment status."""
    order, _ = await record_payment(
        storage,
        order_id,
        body.amount,
        body.type,
        body.status,
        provider_id=body.provider_id,
        metadata=body.metadata,
    )
    return order
