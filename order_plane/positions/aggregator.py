"""
Position aggregator.

Consolidated cross-broker positions per (user, symbol), derived purely
from reconciled fill deltas. The reconciliation engine is the only
caller of ``apply_fill``; everybody else reads snapshots.

Positions are never deleted when they go flat so realized P&L history
stays queryable. After a restart they are rebuilt by replaying the
durable fill ledger through ``rebuild``.
"""

from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from shared.logging import StructuredLogger
from shared.models.base import utc_now
from shared.models.order import Fill
from shared.models.position import (
    QTY_EPSILON,
    Lot,
    Position,
    PositionDiscrepancy,
    PositionSnapshot,
)

logger = StructuredLogger(__name__)

PositionListener = Callable[[PositionSnapshot], None]


class PositionAggregator:
    def __init__(self, on_update: Optional[PositionListener] = None):
        self.on_update = on_update
        self._positions: Dict[Tuple[str, str], Position] = {}
        self._marks: Dict[str, float] = {}
        self._last_prices: Dict[str, float] = {}

    # ------------------------------------------------------------------
    # mutation (reconciliation engine only)
    # ------------------------------------------------------------------
    def apply_fill(self, fill: Fill) -> PositionSnapshot:
        """Fold one fill delta into the aggregate and the broker sub-position."""
        key = (fill.user_id, fill.symbol)
        position = self._positions.get(key)
        if position is None:
            position = Position(user_id=fill.user_id, symbol=fill.symbol,
                                mark_price=self._marks.get(fill.symbol))
            self._positions[key] = position

        signed = fill.quantity * fill.side.sign
        realized = position.aggregate.apply(signed, fill.price)
        position.sub_positions.setdefault(fill.broker_id, Lot()).apply(signed, fill.price)
        position.last_fill_price = fill.price
        position.updated_at = utc_now()
        self._last_prices[fill.symbol] = fill.price

        snapshot = position.snapshot()
        logger.debug("position_updated", user_id=fill.user_id, symbol=fill.symbol,
                     broker_id=fill.broker_id, net_quantity=snapshot.net_quantity,
                     realized=round(realized, 6))
        self._notify(snapshot)
        return snapshot

    def rebuild(self, fills: Iterable[Fill]) -> int:
        """Discard derived state and replay the fill ledger in order."""
        self._positions.clear()
        count = 0
        listener, self.on_update = self.on_update, None
        try:
            for fill in fills:
                self.apply_fill(fill)
                count += 1
        finally:
            self.on_update = listener
        logger.info("positions_rebuilt", fills=count, positions=len(self._positions))
        return count

    def update_mark_price(self, symbol: str, price: float) -> List[PositionSnapshot]:
        self._marks[symbol] = price
        updated = []
        for (_, sym), position in self._positions.items():
            if sym != symbol:
                continue
            position.mark_price = price
            position.updated_at = utc_now()
            snapshot = position.snapshot()
            updated.append(snapshot)
            self._notify(snapshot)
        return updated

    def _notify(self, snapshot: PositionSnapshot) -> None:
        if self.on_update is not None:
            self.on_update(snapshot)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get(self, user_id: str, symbol: str) -> Optional[PositionSnapshot]:
        position = self._positions.get((user_id, symbol))
        return position.snapshot() if position is not None else None

    def positions(self, user_id: str, include_flat: bool = True) -> List[PositionSnapshot]:
        snapshots = [
            p.snapshot() for (uid, _), p in sorted(self._positions.items()) if uid == user_id
        ]
        if not include_flat:
            snapshots = [s for s in snapshots if not s.is_flat]
        return snapshots

    def price_hint(self, symbol: str) -> Optional[float]:
        """Mark price, else last fill price, for notional estimates."""
        return self._marks.get(symbol) or self._last_prices.get(symbol)

    # ------------------------------------------------------------------
    # broker statement reconciliation
    # ------------------------------------------------------------------
    def reconcile_broker_positions(
        self, user_id: str, broker_id: str, reported: Mapping[str, float]
    ) -> List[PositionDiscrepancy]:
        """Compare a broker's reported quantities with our sub-positions.

        Symbols missing on either side count as zero.
        """
        expected = {
            symbol: p.sub_positions[broker_id].quantity
            for (uid, symbol), p in self._positions.items()
            if uid == user_id and broker_id in p.sub_positions
        }
        discrepancies = []
        for symbol in sorted(set(expected) | set(reported)):
            ours = float(expected.get(symbol, 0.0))
            theirs = float(reported.get(symbol, 0.0))
            if abs(ours - theirs) > QTY_EPSILON:
                discrepancies.append(PositionDiscrepancy(
                    user_id=user_id,
                    broker_id=broker_id,
                    symbol=symbol,
                    expected_quantity=ours,
                    reported_quantity=theirs,
                ))
        if discrepancies:
            logger.warning("position_discrepancies", user_id=user_id, broker_id=broker_id,
                           symbols=[d.symbol for d in discrepancies])
        return discrepancies
