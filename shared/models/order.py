"""
Order models for the order plane.

Defines:
- OrderSide / OrderType / TimeInForce / OrderState enums
- Order: the canonical, engine-owned mutable record
- OrderSnapshot: immutable view handed to callers and event subscribers
- Fill: one applied fill delta (the durable fill ledger)

Only the reconciliation engine mutates Order. Everyone else reads
snapshots.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Annotated, Optional, Set, Tuple

from pydantic import Field

from shared.models.base import BaseModel, SymbolMixin, utc_now


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is OrderSide.BUY else -1


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"                # trigger_price required
    STOP_LIMIT = "STOP_LIMIT"    # trigger_price + limit_price
    BRACKET = "BRACKET"          # entry (market or limit) + target + stop


class TimeInForce(str, Enum):
    DAY = "DAY"
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


class OrderState(str, Enum):
    PENDING_SUBMIT = "PENDING_SUBMIT"
    SUBMITTED = "SUBMITTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    OrderState.FILLED,
    OrderState.CANCELLED,
    OrderState.REJECTED,
    OrderState.EXPIRED,
})

PRICE_FIELDS = ("limit_price", "trigger_price", "target_price", "stop_price")


@dataclass
class Order:
    """Canonical order record (engine-owned, mutable)."""
    order_id: str
    user_id: str
    symbol: str
    side: OrderSide
    quantity: float
    order_type: OrderType
    time_in_force: TimeInForce = TimeInForce.DAY
    limit_price: Optional[float] = None
    trigger_price: Optional[float] = None
    target_price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    correlation_id: Optional[str] = None
    preferred_brokers: Tuple[str, ...] = ()
    excluded_brokers: Tuple[str, ...] = ()

    # Broker assignment
    broker_id: Optional[str] = None
    broker_order_id: Optional[str] = None

    # Lifecycle
    state: OrderState = OrderState.PENDING_SUBMIT
    filled_quantity: float = 0.0
    average_fill_price: float = 0.0
    revision: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # Reconciliation bookkeeping
    last_sequence_no: Optional[int] = None
    last_event_at: Optional[datetime] = None
    logical_clock: int = 0
    applied_event_keys: Set[str] = field(default_factory=set)

    # Flags
    reject_reason: Optional[str] = None
    last_error: Optional[str] = None
    frozen: bool = False
    freeze_reason: Optional[str] = None
    needs_reconciliation: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def remaining_quantity(self) -> float:
        return max(self.quantity - self.filled_quantity, 0.0)

    def reference_price(self) -> Optional[float]:
        """Best known price for notional estimates (limit, then trigger)."""
        return self.limit_price or self.trigger_price

    def copy(self) -> "Order":
        """Working copy; mutations are applied to it and swapped in after persisting."""
        return replace(self, applied_event_keys=set(self.applied_event_keys))

    def snapshot(self) -> "OrderSnapshot":
        return OrderSnapshot(
            order_id=self.order_id,
            user_id=self.user_id,
            symbol=self.symbol,
            side=self.side,
            quantity=self.quantity,
            order_type=self.order_type,
            time_in_force=self.time_in_force,
            limit_price=self.limit_price,
            trigger_price=self.trigger_price,
            target_price=self.target_price,
            stop_price=self.stop_price,
            client_order_id=self.client_order_id,
            correlation_id=self.correlation_id,
            broker_id=self.broker_id,
            broker_order_id=self.broker_order_id,
            state=self.state,
            filled_quantity=self.filled_quantity,
            average_fill_price=self.average_fill_price,
            revision=self.revision,
            created_at=self.created_at,
            updated_at=self.updated_at,
            reject_reason=self.reject_reason,
            last_error=self.last_error,
            frozen=self.frozen,
            freeze_reason=self.freeze_reason,
            needs_reconciliation=self.needs_reconciliation,
        )


class OrderSnapshot(BaseModel, SymbolMixin):
    """Read-only view of an order at one point in time."""

    order_id: str
    user_id: str
    side: OrderSide
    quantity: Annotated[float, Field(gt=0)]
    order_type: OrderType
    time_in_force: TimeInForce
    limit_price: Optional[float] = None
    trigger_price: Optional[float] = None
    target_price: Optional[float] = None
    stop_price: Optional[float] = None
    client_order_id: Optional[str] = None
    correlation_id: Optional[str] = None
    broker_id: Optional[str] = None
    broker_order_id: Optional[str] = None
    state: OrderState
    filled_quantity: Annotated[float, Field(ge=0)]
    average_fill_price: Annotated[float, Field(ge=0)]
    revision: int
    created_at: datetime
    updated_at: datetime
    reject_reason: Optional[str] = None
    last_error: Optional[str] = None
    frozen: bool = False
    freeze_reason: Optional[str] = None
    needs_reconciliation: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class Fill(BaseModel, SymbolMixin):
    """One applied fill delta, as recorded in the fill ledger."""

    order_id: str
    user_id: str
    broker_id: str
    side: OrderSide
    quantity: Annotated[float, Field(gt=0, description="Fill delta (not cumulative)")]
    price: Annotated[float, Field(gt=0)]
    sequence_no: Optional[int] = None
    timestamp: datetime
