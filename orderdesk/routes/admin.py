from fastapi import APIRouter, Depends

from orderdesk.deps import get_service
from orderdesk.domain import Order, OrderStateHistory
from orderdesk.schemas import QueueEntry, TransitionBody
from orderdesk.service import OrderLifecycleService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/queue", response_model=list[QueueEntry])
async def verification_queue(service: OrderLifecycleService = Depends(get_service)) -> list[QueueEntry]:
    """Orders awaiting admin verification, newest first. Computed from storage on every request."""
    return [QueueEntry.from_order(o) for o in await service.admin_queue()]


@router.post("/orders/{order_id}/transitions", response_model=Order)
async def apply_transition(
    order_id: str,
    body: TransitionBody,
    service: OrderLifecycleService = Depends(get_service),
) -> Order:
    return await service.apply_transition(
        order_id,
        body.action,
        body.actor_id,
        note=body.note,
        expected_version=body.expected_version,
    )


@router.get("/orders/{order_id}/history", response_model=list[OrderStateHistory])
async def order_history(
    order_id: str,
    service: OrderLifecycleService = Depends(get_service),
) -> list[OrderStateHistory]:
    return await service.get_history(order_id)
