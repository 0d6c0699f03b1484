"""
Order lifecycle state machine.

    created ──checkout──▶ awaiting_payment ──capture completed──▶ paid ──delivery──▶ delivered
                               │      ▲                           ▲
                    capture denied   checkout          late capture completed
                               ▼      │                           │
                             payment_failed ──────────────────────┘

A capture event may also hit a ``created`` order when the webhook beats the
checkout record. Repeated or stale provider events against an order that already moved past
them are no-ops, never errors. Only the transition *into* PAID triggers the
stock commit, so stock is decremented at most once per order.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from boutique.errors import InvalidTransitionError
from boutique.orders.models import OrderStatus


class LifecycleEvent(str, Enum):
    ORDER_CREATED = "order_created"
    CHECKOUT_STARTED = "checkout_started"
    CAPTURE_COMPLETED = "capture_completed"
    CAPTURE_DENIED = "capture_denied"
    DELIVERY_CONFIRMED = "delivery_confirmed"


class Transition(BaseModel):
    source: Optional[OrderStatus]
    event: LifecycleEvent
    target: OrderStatus
    noop: bool = False
    reason: Optional[str] = None


# (from, event) -> (target, noop, reason)
_TRANSITIONS: dict[tuple[OrderStatus, LifecycleEvent], tuple[OrderStatus, bool, Optional[str]]] = {
    (OrderStatus.CREATED, LifecycleEvent.CHECKOUT_STARTED): (OrderStatus.AWAITING_PAYMENT, False, None),
    (OrderStatus.CREATED, LifecycleEvent.CAPTURE_COMPLETED): (OrderStatus.PAID, False, None),
    (OrderStatus.CREATED, LifecycleEvent.CAPTURE_DENIED): (OrderStatus.PAYMENT_FAILED, False, None),

    (OrderStatus.AWAITING_PAYMENT, LifecycleEvent.CHECKOUT_STARTED): (OrderStatus.AWAITING_PAYMENT, False, None),
    (OrderStatus.AWAITING_PAYMENT, LifecycleEvent.CAPTURE_COMPLETED): (OrderStatus.PAID, False, None),
    (OrderStatus.AWAITING_PAYMENT, LifecycleEvent.CAPTURE_DENIED): (OrderStatus.PAYMENT_FAILED, False, None),

    (OrderStatus.PAYMENT_FAILED, LifecycleEvent.CHECKOUT_STARTED): (OrderStatus.AWAITING_PAYMENT, False, None),
    (OrderStatus.PAYMENT_FAILED, LifecycleEvent.CAPTURE_COMPLETED): (OrderStatus.PAID, False, None),
    (OrderStatus.PAYMENT_FAILED, LifecycleEvent.CAPTURE_DENIED): (OrderStatus.PAYMENT_FAILED, True, "already_failed"),

    (OrderStatus.PAID, LifecycleEvent.CAPTURE_COMPLETED): (OrderStatus.PAID, True, "already_paid"),
    (OrderStatus.PAID, LifecycleEvent.CAPTURE_DENIED): (OrderStatus.PAID, True, "stale_denial"),
    (OrderStatus.PAID, LifecycleEvent.DELIVERY_CONFIRMED): (OrderStatus.DELIVERED, False, None),

    (OrderStatus.DELIVERED, LifecycleEvent.CAPTURE_COMPLETED): (OrderStatus.DELIVERED, True, "already_paid"),
    (OrderStatus.DELIVERED, LifecycleEvent.CAPTURE_DENIED): (OrderStatus.DELIVERED, True, "stale_denial"),
    (OrderStatus.DELIVERED, LifecycleEvent.DELIVERY_CONFIRMED): (OrderStatus.DELIVERED, True, "already_delivered"),
}


def plan_transition(status: Optional[OrderStatus], event: LifecycleEvent) -> Transition:
    """Decide what ``event`` does to an order in ``status``.

    ``status`` is None only for ORDER_CREATED, the initial event.
    Raises InvalidTransitionError for combinations the lifecycle forbids.
    """
    if event == LifecycleEvent.ORDER_CREATED:
        if status is not None:
            raise InvalidTransitionError(status.value, event.value)
        return Transition(source=None, event=event, target=OrderStatus.CREATED)

    if status is None:
        raise InvalidTransitionError("none", event.value)

    entry = _TRANSITIONS.get((status, event))
    if entry is None:
        raise InvalidTransitionError(status.value, event.value)

    target, noop, reason = entry
    return Transition(source=status, event=event, target=target, noop=noop, reason=reason)


def enters_paid(transition: Transition) -> bool:
    return not transition.noop and transition.target == OrderStatus.PAID
