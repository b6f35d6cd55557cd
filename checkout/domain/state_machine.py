from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional

from checkout.domain.models import Order, OrderStatus
from checkout.domain.exceptions import InvalidTransitionError, RefundWindowExpiredError


TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.REFUNDED,
    }),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

_missing = set(OrderStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Order statuses without a transition entry: {sorted(s.value for s in _missing)}")


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return current == requested or requested in TRANSITIONS[current]


def apply_transition(
    order: Order,
    requested: OrderStatus,
    now: datetime,
    refund_window_days: Optional[int] = None,
) -> bool:
    """Moves the order to `requested`.

    Returns False when the order is already in that status (no-op) and True
    when the status changed. Raises InvalidTransitionError without touching
    the order for every edge missing from TRANSITIONS.
    """
    current = order.status
    if current == requested:
        return False
    if requested not in TRANSITIONS[current]:
        raise InvalidTransitionError(current, requested)

    if (
        current == OrderStatus.DELIVERED
        and requested == OrderStatus.REFUNDED
        and refund_window_days is not None
    ):
        delivered_at = order.delivered_at or order.updated_at
        if now - delivered_at > timedelta(days=refund_window_days):
            raise RefundWindowExpiredError(current, requested, refund_window_days)

    order.status = requested
    order.updated_at = now
    if requested == OrderStatus.DELIVERED:
        order.delivered_at = now
    return True
