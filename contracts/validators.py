"""
Message contract validators for the order plane.

Defines Pydantic models for every message crossing the order plane boundary:
- OrderIntent: inbound order request (UI/API -> order plane)
- ModifyRequest: inbound modification of a live order
- BrokerEvent: normalized broker notification (adapter -> reconciliation)

All models include validation logic and custom validators. Structural
validation happens here; instrument rules (tick/lot) and broker support are
checked by the translation layer.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.models.base import as_utc, normalize_symbol
from shared.models.order import OrderSide, OrderType, TimeInForce


# ============================================================================
# Order Intent (UI/API -> Order Plane)
# ============================================================================

class OrderIntent(BaseModel):
    """
    Canonical order request.

    Price fields by order type:
    - MARKET: none
    - LIMIT: limit_price
    - STOP: trigger_price
    - STOP_LIMIT: trigger_price and limit_price
    - BRACKET: target_price and stop_price, optional limit_price for the entry
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "user_id": "user-42",
                "symbol": "INFY",
                "side": "BUY",
                "quantity": 100,
                "order_type": "LIMIT",
                "limit_price": 1520.5,
                "time_in_force": "DAY",
                "client_order_id": "ui-7f3a",
            }
        },
    )

    user_id: str = Field(..., min_length=1, max_length=64)
    symbol: str = Field(..., min_length=1, max_length=20)
    side: OrderSide
    quantity: float = Field(..., gt=0, description="Requested quantity")
    order_type: OrderType = OrderType.MARKET
    time_in_force: TimeInForce = TimeInForce.DAY

    # Optional price fields
    limit_price: Optional[float] = Field(None, gt=0, description="Limit price (LIMIT, STOP_LIMIT, BRACKET entry)")
    trigger_price: Optional[float] = Field(None, gt=0, description="Stop trigger (STOP, STOP_LIMIT)")
    target_price: Optional[float] = Field(None, gt=0, description="Bracket take-profit")
    stop_price: Optional[float] = Field(None, gt=0, description="Bracket stop-loss")

    # Tracing / idempotency
    client_order_id: Optional[str] = Field(None, min_length=1, max_length=64)
    correlation_id: Optional[str] = Field(None, min_length=1, max_length=64)

    # Routing preferences
    preferred_brokers: List[str] = Field(default_factory=list)
    excluded_brokers: List[str] = Field(default_factory=list)

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return normalize_symbol(v)

    @model_validator(mode='after')
    def validate_price_fields(self):
        """Validate required/forbidden price fields per order type."""
        t = self.order_type
        if t == OrderType.MARKET:
            for name in ('limit_price', 'trigger_price', 'target_price', 'stop_price'):
                if getattr(self, name) is not None:
                    raise ValueError(f"MARKET orders must not specify {name}")
        elif t == OrderType.LIMIT:
            if self.limit_price is None:
                raise ValueError("LIMIT orders must specify limit_price")
        elif t == OrderType.STOP:
            if self.trigger_price is None:
                raise ValueError("STOP orders must specify trigger_price")
        elif t == OrderType.STOP_LIMIT:
            if self.trigger_price is None or self.limit_price is None:
                raise ValueError("STOP_LIMIT orders must specify trigger_price and limit_price")
        elif t == OrderType.BRACKET:
            if self.target_price is None or self.stop_price is None:
                raise ValueError("BRACKET orders must specify target_price and stop_price")
            _validate_bracket(self.side, self.limit_price, self.target_price, self.stop_price)

        if t != OrderType.BRACKET and (self.target_price is not None or self.stop_price is not None):
            raise ValueError("target_price/stop_price are only valid for BRACKET orders")

        if t in (OrderType.MARKET, OrderType.BRACKET) and self.time_in_force == TimeInForce.FOK:
            raise ValueError(f"{t.value} orders do not accept FOK")
        return self


def _validate_bracket(side: OrderSide, entry: Optional[float], target: float, stop: float) -> None:
    if side == OrderSide.BUY:
        if not stop < target:
            raise ValueError("BUY bracket requires stop_price < target_price")
        if entry is not None and not (stop < entry < target):
            raise ValueError("BUY bracket requires stop_price < limit_price < target_price")
    else:
        if not target < stop:
            raise ValueError("SELL bracket requires target_price < stop_price")
        if entry is not None and not (target < entry < stop):
            raise ValueError("SELL bracket requires target_price < limit_price < stop_price")


# ============================================================================
# Modification (UI/API -> Order Plane)
# ============================================================================

class ModifyRequest(BaseModel):
    """New parameters for a live order. Unset fields keep their value."""
    model_config = ConfigDict(frozen=True)

    quantity: Optional[float] = Field(None, gt=0)
    limit_price: Optional[float] = Field(None, gt=0)
    trigger_price: Optional[float] = Field(None, gt=0)
    target_price: Optional[float] = Field(None, gt=0)
    stop_price: Optional[float] = Field(None, gt=0)
    time_in_force: Optional[TimeInForce] = None

    @model_validator(mode='after')
    def validate_not_empty(self):
        if not self.changes():
            raise ValueError("ModifyRequest must change at least one field")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True)


# ============================================================================
# Broker Event (Adapter -> Reconciliation Engine)
# ============================================================================

class BrokerEventType(str, Enum):
    ACK = "ACK"
    PARTIAL_FILL = "PARTIAL_FILL"
    FILL = "FILL"
    REJECT = "REJECT"
    CANCEL_CONFIRM = "CANCEL_CONFIRM"
    EXPIRE = "EXPIRE"


FILL_EVENT_TYPES = frozenset({BrokerEventType.PARTIAL_FILL, BrokerEventType.FILL})


class BrokerEvent(BaseModel):
    """
    Broker notification normalized by an adapter.

    ``filled_qty`` and ``avg_price`` are cumulative for the whole order, not
    per-execution deltas. ``sequence_no`` is the broker's per-order
    sequence when it provides one.
    """
    model_config = ConfigDict(frozen=True)

    type: BrokerEventType
    filled_qty: float = Field(0.0, ge=0, description="Cumulative filled quantity")
    avg_price: Optional[float] = Field(None, ge=0, description="Cumulative average fill price")
    sequence_no: Optional[int] = Field(None, ge=0)
    timestamp: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500)
    event_id: Optional[str] = Field(None, max_length=128)

    @field_validator('timestamp')
    @classmethod
    def validate_timestamp_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode='after')
    def validate_fill_fields(self):
        if self.type in FILL_EVENT_TYPES:
            if self.filled_qty <= 0:
                raise ValueError(f"{self.type.value} events must carry filled_qty > 0")
            if not self.avg_price:
                raise ValueError(f"{self.type.value} events must carry avg_price > 0")
        return self

    @property
    def is_fill(self) -> bool:
        return self.type in FILL_EVENT_TYPES

    def dedup_key(self) -> Optional[str]:
        """Identity used to detect redelivery of the same event."""
        if self.sequence_no is not None:
            return f"seq:{self.sequence_no}"
        if self.event_id:
            return f"id:{self.event_id}"
        return None


class BrokerOrderStatus(BaseModel):
    """
    Broker's current view of one order (status poll / lookup result).

    ``event`` expresses the status as the canonical event it implies; it is
    None when the broker knows the order but has not acknowledged it yet.
    """
    model_config = ConfigDict(frozen=True)

    native_id: str
    client_order_id: Optional[str] = None
    event: Optional[BrokerEvent] = None
    symbol: Optional[str] = None
