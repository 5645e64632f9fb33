"""
Shared data models for the order plane.

These models are the single source of truth for records handed across
component boundaries:
- Orders and fills (reconciliation engine)
- Positions (position aggregator)
- Broker sessions (session manager / health monitor)
- Routing decisions (routing engine audit trail)
"""

from shared.models.base import BaseModel, SymbolMixin, as_utc, normalize_symbol, utc_now
from shared.models.order import (
    Order, OrderSnapshot, Fill, OrderSide, OrderType, TimeInForce, OrderState,
    TERMINAL_STATES, PRICE_FIELDS,
)
from shared.models.position import (
    Lot, Position, PositionSnapshot, SubPositionSnapshot, PositionDiscrepancy,
)
from shared.models.session import (
    BrokerSession, SessionContext, SessionSnapshot, AuthGrant, AccountSnapshot,
    HealthStatus, OverallHealth,
)
from shared.models.routing import RoutingDecision, CandidateScore, RoutingOutcome

__all__ = [
    # Base
    "BaseModel",
    "as_utc",
    "SymbolMixin",
    "normalize_symbol",
    "utc_now",
    # Order
    "Order",
    "OrderSnapshot",
    "Fill",
    "OrderSide",
    "OrderType",
    "TimeInForce",
    "OrderState",
    "TERMINAL_STATES",
    "PRICE_FIELDS",
    # Position
    "Lot",
    "Position",
    "PositionSnapshot",
    "SubPositionSnapshot",
    "PositionDiscrepancy",
    # Session
    "BrokerSession",
    "SessionContext",
    "SessionSnapshot",
    "AuthGrant",
    "AccountSnapshot",
    "HealthStatus",
    "OverallHealth",
    # Routing
    "RoutingDecision",
    "CandidateScore",
    "RoutingOutcome",
]
