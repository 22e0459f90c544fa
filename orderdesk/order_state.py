"""
Order lifecycle state machine. Valid transitions enforce business rules.

The table is static data keyed by (current status, action). Each entry names the actor role allowed
to invoke it, the resulting status and the side effects the lifecycle service must apply.
"""
from enum import Enum
from typing import NamedTuple

from orderdesk.domain import Action, ActorRole, OrderStatus
from orderdesk.errors import InvalidTransition


class Effect(str, Enum):
    INCREMENT_CONTACT_ATTEMPTS = "increment_contact_attempts"
    STORE_SELLER_RESPONSE = "store_seller_response"
    STORE_BUYER_RESPONSE = "store_buyer_response"
    STORE_REJECT_REASON = "store_reject_reason"
    CLEAR_REJECT_REASON = "clear_reject_reason"
    SET_VERIFIED_BY = "set_verified_by"


class Transition(NamedTuple):
    next_status: OrderStatus
    role: ActorRole
    effects: tuple[Effect, ...] = ()


S = OrderStatus

# (current status, action) -> transition
TRANSITIONS: dict[tuple[OrderStatus, Action], Transition] = {
    (S.CREATED, Action.SUBMIT_FOR_VERIFICATION): Transition(S.PENDING_VERIFICATION, ActorRole.SYSTEM),
    # admin two-step phone verification
    (S.PENDING_VERIFICATION, Action.CONTACT_SELLER): Transition(
        S.SELLER_CONTACTED, ActorRole.ADMIN, (Effect.INCREMENT_CONTACT_ATTEMPTS,)
    ),
    (S.SELLER_CONTACTED, Action.SELLER_ACCEPT): Transition(
        S.SELLER_ACCEPTED, ActorRole.ADMIN, (Effect.STORE_SELLER_RESPONSE, Effect.CLEAR_REJECT_REASON)
    ),
    (S.SELLER_CONTACTED, Action.SELLER_REJECT): Transition(
        S.SELLER_REJECTED, ActorRole.ADMIN, (Effect.STORE_REJECT_REASON,)
    ),
    (S.SELLER_ACCEPTED, Action.CONTACT_BUYER): Transition(
        S.BUYER_CONTACTED, ActorRole.ADMIN, (Effect.INCREMENT_CONTACT_ATTEMPTS,)
    ),
    (S.BUYER_CONTACTED, Action.BUYER_CONFIRM): Transition(
        S.CONFIRMED,
        ActorRole.ADMIN,
        (Effect.STORE_BUYER_RESPONSE, Effect.CLEAR_REJECT_REASON, Effect.SET_VERIFIED_BY),
    ),
    (S.BUYER_CONTACTED, Action.BUYER_REJECT): Transition(
        S.BUYER_REJECTED, ActorRole.ADMIN, (Effect.STORE_REJECT_REASON,)
    ),
    # fulfillment, driven by the system after confirmation
    (S.CONFIRMED, Action.DISPATCH): Transition(S.OUT_FOR_DELIVERY, ActorRole.SYSTEM),
    (S.OUT_FOR_DELIVERY, Action.DELIVER): Transition(S.DELIVERED, ActorRole.SYSTEM),
    (S.DELIVERED, Action.COMPLETE): Transition(S.COMPLETED, ActorRole.SYSTEM),
    (S.CONFIRMED, Action.CANCEL): Transition(S.REJECTED, ActorRole.SYSTEM, (Effect.STORE_REJECT_REASON,)),
}

TERMINAL_STATES = frozenset({S.COMPLETED, S.REJECTED, S.SELLER_REJECTED, S.BUYER_REJECTED})

# Lifecycle progress. Every edge in TRANSITIONS must strictly increase rank.
RANK: dict[OrderStatus, int] = {
    S.CREATED: 0,
    S.PENDING_VERIFICATION: 1,
    S.SELLER_CONTACTED: 2,
    S.SELLER_ACCEPTED: 3,
    S.SELLER_REJECTED: 3,
    S.BUYER_CONTACTED: 4,
    S.BUYER_CONFIRMED: 5,
    S.BUYER_REJECTED: 5,
    S.CONFIRMED: 6,
    S.OUT_FOR_DELIVERY: 7,
    S.DELIVERED: 8,
    S.COMPLETED: 9,
    S.REJECTED: 9,
}

# Statuses the admin verification queue polls.
ADMIN_QUEUE_STATUSES = (
    S.PENDING_VERIFICATION,
    S.SELLER_CONTACTED,
    S.SELLER_ACCEPTED,
    S.BUYER_CONTACTED,
)


def resolve_transition(current_status: OrderStatus, action: Action, role: ActorRole) -> Transition:
    """Look up the transition for (status, action, role). Raises InvalidTransition if there is none."""
    transition = TRANSITIONS.get((current_status, action))
    if transition is None or transition.role != role:
        raise InvalidTransition(current_status.value, action.value)
    return transition


def allowed_actions(current_status: OrderStatus, role: ActorRole) -> list[Action]:
    return [
        action
        for (status, action), transition in TRANSITIONS.items()
        if status == current_status and transition.role == role
    ]
