"""
Position models.

A position is derived per (user, symbol) from reconciled fills and is
never mutated by callers. Each position also keeps broker-level
sub-positions so reconciliation against broker statements and unwind
planning know where the quantity actually sits.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from shared.models.base import BaseModel, SymbolMixin, utc_now

QTY_EPSILON = 1e-9


@dataclass
class Lot:
    """Signed quantity with average cost and realized P&L (average-cost method)."""
    quantity: float = 0.0
    average_cost: float = 0.0
    realized_pnl: float = 0.0

    def apply(self, signed_qty: float, price: float) -> float:
        """Apply a signed fill; returns realized P&L generated by this fill."""
        realized = 0.0
        if abs(self.quantity) < QTY_EPSILON or (self.quantity > 0) == (signed_qty > 0):
            new_qty = self.quantity + signed_qty
            self.average_cost = (
                (self.average_cost * abs(self.quantity) + price * abs(signed_qty)) / abs(new_qty)
            )
            self.quantity = new_qty
        else:
            closing = min(abs(signed_qty), abs(self.quantity))
            direction = 1.0 if self.quantity > 0 else -1.0
            realized = (price - self.average_cost) * closing * direction
            self.quantity += signed_qty
            if abs(self.quantity) < QTY_EPSILON:
                self.quantity = 0.0
                self.average_cost = 0.0
            elif (self.quantity > 0) != (direction > 0):
                # flipped through zero: the remainder opens at the fill price
                self.average_cost = price
        self.realized_pnl += realized
        return realized


@dataclass
class Position:
    user_id: str
    symbol: str
    aggregate: Lot = field(default_factory=Lot)
    sub_positions: Dict[str, Lot] = field(default_factory=dict)
    mark_price: Optional[float] = None
    last_fill_price: Optional[float] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def net_quantity(self) -> float:
        return self.aggregate.quantity

    def unrealized_pnl(self) -> float:
        price = self.mark_price or self.last_fill_price
        if price is None or abs(self.aggregate.quantity) < QTY_EPSILON:
            return 0.0
        return (price - self.aggregate.average_cost) * self.aggregate.quantity

    def snapshot(self) -> "PositionSnapshot":
        return PositionSnapshot(
            user_id=self.user_id,
            symbol=self.symbol,
            net_quantity=self.aggregate.quantity,
            average_cost=self.aggregate.average_cost,
            realized_pnl=self.aggregate.realized_pnl,
            unrealized_pnl=self.unrealized_pnl(),
            mark_price=self.mark_price or self.last_fill_price,
            sub_positions={
                broker_id: SubPositionSnapshot(
                    quantity=lot.quantity,
                    average_cost=lot.average_cost,
                    realized_pnl=lot.realized_pnl,
                )
                for broker_id, lot in sorted(self.sub_positions.items())
            },
            updated_at=self.updated_at,
        )


class SubPositionSnapshot(BaseModel):
    quantity: float
    average_cost: float
    realized_pnl: float


class PositionSnapshot(BaseModel, SymbolMixin):
    """Consolidated cross-broker position for one (user, symbol)."""

    user_id: str
    net_quantity: float
    average_cost: float
    realized_pnl: float
    unrealized_pnl: float
    mark_price: Optional[float] = None
    sub_positions: Dict[str, SubPositionSnapshot]
    updated_at: datetime

    @property
    def is_flat(self) -> bool:
        return abs(self.net_quantity) < QTY_EPSILON


class PositionDiscrepancy(BaseModel, SymbolMixin):
    """Mismatch between a broker statement and the aggregated sub-position."""

    user_id: str
    broker_id: str
    expected_quantity: float
    reported_quantity: float

    @property
    def difference(self) -> float:
        return self.reported_quantity - self.expected_quantity
