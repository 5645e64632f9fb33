from order_plane.reconciliation.engine import EventOutcome, ReconciliationEngine
from order_plane.reconciliation.state_machine import ALLOWED_TRANSITIONS, can_transition, transition

__all__ = [
    "ReconciliationEngine",
    "EventOutcome",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "transition",
]
