"""
Order lifecycle state machine.

    PENDING_SUBMIT -> SUBMITTED -> ACKNOWLEDGED -> PARTIALLY_FILLED -> FILLED
    SUBMITTED / ACKNOWLEDGED / PARTIALLY_FILLED -> CANCELLED | REJECTED | EXPIRED

Extra edges:
    PENDING_SUBMIT -> REJECTED      broker refused the submission outright
    PENDING_SUBMIT -> CANCELLED     cancelled before any broker accepted it
    SUBMITTED -> PARTIALLY_FILLED | FILLED
                                    a fill implies the acknowledgement
                                    (reordered delivery)

Nothing leaves a terminal state.
"""

from typing import Dict, FrozenSet, Optional

from contracts.validators import BrokerEventType
from shared.errors import AlreadyTerminal, InvalidTransition
from shared.models.base import utc_now
from shared.models.order import Order, OrderState, TERMINAL_STATES

S = OrderState

_EXITS = frozenset({S.CANCELLED, S.REJECTED, S.EXPIRED})

ALLOWED_TRANSITIONS: Dict[OrderState, FrozenSet[OrderState]] = {
    S.PENDING_SUBMIT: frozenset({S.SUBMITTED, S.REJECTED, S.CANCELLED}),
    S.SUBMITTED: frozenset({S.ACKNOWLEDGED, S.PARTIALLY_FILLED, S.FILLED}) | _EXITS,
    S.ACKNOWLEDGED: frozenset({S.PARTIALLY_FILLED, S.FILLED}) | _EXITS,
    # repeated partial fills keep the state
    S.PARTIALLY_FILLED: frozenset({S.PARTIALLY_FILLED, S.FILLED}) | _EXITS,
    S.FILLED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REJECTED: frozenset(),
    S.EXPIRED: frozenset(),
}

#: progress order used to detect events that point backwards
STATE_RANK: Dict[OrderState, int] = {
    S.PENDING_SUBMIT: 0,
    S.SUBMITTED: 1,
    S.ACKNOWLEDGED: 2,
    S.PARTIALLY_FILLED: 3,
    S.FILLED: 4,
    S.CANCELLED: 4,
    S.REJECTED: 4,
    S.EXPIRED: 4,
}

_TERMINAL_FOR_EVENT = {
    BrokerEventType.REJECT: S.REJECTED,
    BrokerEventType.CANCEL_CONFIRM: S.CANCELLED,
    BrokerEventType.EXPIRE: S.EXPIRED,
}

QTY_TOLERANCE = 1e-9


def can_transition(current: OrderState, target: OrderState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(order: Order, target: OrderState) -> OrderState:
    """Move ``order`` to ``target``; returns the previous state.

    Raises AlreadyTerminal from a terminal state and InvalidTransition for
    any other edge that is not allowed.
    """
    current = order.state
    if current in TERMINAL_STATES:
        raise AlreadyTerminal(
            f"order {order.order_id} is already {current.value}",
            order_id=order.order_id, state=current.value,
        )
    if not can_transition(current, target):
        raise InvalidTransition(
            f"order {order.order_id}: {current.value} -> {target.value} not allowed",
            order_id=order.order_id, current=current.value, target=target.value,
        )
    order.state = target
    order.updated_at = utc_now()
    return current


def target_state(event_type: BrokerEventType, filled_qty: float, quantity: float) -> OrderState:
    """State a broker event points to, given its cumulative filled quantity.

    A terminal cancel/expire/reject that reports the whole quantity filled
    means the order actually completed.
    """
    complete = filled_qty >= quantity - QTY_TOLERANCE
    if event_type == BrokerEventType.ACK:
        return S.ACKNOWLEDGED
    if event_type in (BrokerEventType.PARTIAL_FILL, BrokerEventType.FILL):
        return S.FILLED if complete else S.PARTIALLY_FILLED
    if complete and filled_qty > 0:
        return S.FILLED
    return _TERMINAL_FOR_EVENT[event_type]


def is_behind(current: OrderState, target: OrderState) -> bool:
    return STATE_RANK[target] < STATE_RANK[current]


def path_to(current: OrderState, target: OrderState, filling: bool) -> Optional[list]:
    """States to walk through to reach ``target``.

    A fill delta carried by a terminal cancel/expire/reject is booked as a
    partial fill first, so the audit trail shows both steps.
    """
    if filling and target in _EXITS and current != S.PARTIALLY_FILLED:
        if can_transition(current, S.PARTIALLY_FILLED):
            return [S.PARTIALLY_FILLED, target]
        return None
    if current == target and target != S.PARTIALLY_FILLED:
        return []
    if not can_transition(current, target):
        return None
    return [target]
