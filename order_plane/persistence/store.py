"""
Durable order store (SQLAlchemy 2.0).

The reconciliation engine is the only writer. Every write happens in one
short transaction; any SQLAlchemyError is re-raised as PersistenceError,
which the engine treats as fatal for new submissions.

SQLite hands timestamps back without tzinfo; they are stored in UTC and
re-tagged as UTC on load.
"""

from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set, Tuple

from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from contracts.validators import BrokerEvent
from order_plane.persistence.models import (
    Base,
    FillRecord,
    OrderEventRecord,
    OrderRecord,
    PositionRecord,
    RoutingDecisionRecord,
)
from shared.errors import PersistenceError
from shared.logging import StructuredLogger
from shared.models.base import as_utc, utc_now
from shared.models.order import (
    Fill,
    Order,
    OrderSide,
    OrderState,
    OrderType,
    TERMINAL_STATES,
    TimeInForce,
)
from shared.models.position import PositionSnapshot
from shared.models.routing import RoutingDecision

logger = StructuredLogger(__name__)

IN_MEMORY_URL = "sqlite://"


class OrderStore:
    def __init__(self, url: str = IN_MEMORY_URL, echo: bool = False):
        self.url = url
        kwargs = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in (IN_MEMORY_URL, "sqlite:///:memory:"):
                # one shared connection, or every session sees an empty database
                kwargs["poolclass"] = StaticPool
        try:
            self.engine = create_engine(url, **kwargs)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"cannot open order store at {url}: {exc}") from exc
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.critical("persistence_failed", operation=operation, error=str(exc))
            raise PersistenceError(f"{operation} failed: {exc}") from exc
        finally:
            session.close()

    def ping(self) -> None:
        """Round-trip one statement; raises PersistenceError when unreachable."""
        with self._session("ping") as session:
            session.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # row <-> model
    # ------------------------------------------------------------------
    @staticmethod
    def _order_row(order: Order) -> OrderRecord:
        return OrderRecord(
            order_id=order.order_id,
            user_id=order.user_id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=order.quantity,
            order_type=order.order_type.value,
            time_in_force=order.time_in_force.value,
            limit_price=order.limit_price,
            trigger_price=order.trigger_price,
            target_price=order.target_price,
            stop_price=order.stop_price,
            client_order_id=order.client_order_id,
            correlation_id=order.correlation_id,
            preferred_brokers=list(order.preferred_brokers),
            excluded_brokers=list(order.excluded_brokers),
            broker_id=order.broker_id,
            broker_order_id=order.broker_order_id,
            state=order.state.value,
            filled_quantity=order.filled_quantity,
            average_fill_price=order.average_fill_price,
            revision=order.revision,
            created_at=as_utc(order.created_at),
            updated_at=as_utc(order.updated_at),
            last_sequence_no=order.last_sequence_no,
            last_event_at=as_utc(order.last_event_at),
            logical_clock=order.logical_clock,
            reject_reason=order.reject_reason,
            last_error=order.last_error,
            frozen=order.frozen,
            freeze_reason=order.freeze_reason,
            needs_reconciliation=order.needs_reconciliation,
        )

    @staticmethod
    def _order(row: OrderRecord, event_keys: Set[str]) -> Order:
        return Order(
            order_id=row.order_id,
            user_id=row.user_id,
            symbol=row.symbol,
            side=OrderSide(row.side),
            quantity=row.quantity,
            order_type=OrderType(row.order_type),
            time_in_force=TimeInForce(row.time_in_force),
            limit_price=row.limit_price,
            trigger_price=row.trigger_price,
            target_price=row.target_price,
            stop_price=row.stop_price,
            client_order_id=row.client_order_id,
            correlation_id=row.correlation_id,
            preferred_brokers=tuple(row.preferred_brokers or ()),
            excluded_brokers=tuple(row.excluded_brokers or ()),
            broker_id=row.broker_id,
            broker_order_id=row.broker_order_id,
            state=OrderState(row.state),
            filled_quantity=row.filled_quantity,
            average_fill_price=row.average_fill_price,
            revision=row.revision,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            last_sequence_no=row.last_sequence_no,
            last_event_at=as_utc(row.last_event_at),
            logical_clock=row.logical_clock,
            applied_event_keys=event_keys,
            reject_reason=row.reject_reason,
            last_error=row.last_error,
            frozen=row.frozen,
            freeze_reason=row.freeze_reason,
            needs_reconciliation=row.needs_reconciliation,
        )

    @staticmethod
    def _fill(row: FillRecord) -> Fill:
        return Fill(
            order_id=row.order_id,
            user_id=row.user_id,
            broker_id=row.broker_id,
            symbol=row.symbol,
            side=OrderSide(row.side),
            quantity=float(row.quantity),
            price=float(row.price),
            sequence_no=row.sequence_no,
            timestamp=as_utc(row.timestamp),
        )

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def save_order(self, order: Order) -> None:
        with self._session("save_order") as session:
            session.merge(self._order_row(order))

    def record_event(
        self,
        order: Order,
        broker_id: str,
        event: BrokerEvent,
        dedup_key: str,
        fill: Optional[Fill] = None,
    ) -> None:
        """Order row, applied event and fill delta in one transaction."""
        with self._session("record_event") as session:
            session.merge(self._order_row(order))
            session.add(OrderEventRecord(
                order_id=order.order_id,
                dedup_key=dedup_key,
                broker_id=broker_id,
                event_type=event.type.value,
                filled_qty=event.filled_qty,
                avg_price=event.avg_price,
                sequence_no=event.sequence_no,
                event_id=event.event_id,
                event_timestamp=as_utc(event.timestamp),
                reason=event.reason,
                state_after=order.state.value,
                recorded_at=utc_now(),
            ))
            if fill is not None:
                session.add(FillRecord(
                    order_id=fill.order_id,
                    user_id=fill.user_id,
                    broker_id=fill.broker_id,
                    symbol=fill.symbol,
                    side=fill.side.value,
                    quantity=fill.quantity,
                    price=fill.price,
                    sequence_no=fill.sequence_no,
                    timestamp=as_utc(fill.timestamp),
                ))

    def save_position(self, snapshot: PositionSnapshot) -> None:
        with self._session("save_position") as session:
            session.merge(PositionRecord(
                user_id=snapshot.user_id,
                symbol=snapshot.symbol,
                net_quantity=snapshot.net_quantity,
                average_cost=snapshot.average_cost,
                realized_pnl=snapshot.realized_pnl,
                mark_price=snapshot.mark_price,
                sub_positions={
                    broker_id: sub.model_dump(exclude={"schema_version"})
                    for broker_id, sub in snapshot.sub_positions.items()
                },
                updated_at=as_utc(snapshot.updated_at),
            ))

    def save_routing_decision(self, decision: RoutingDecision) -> None:
        with self._session("save_routing_decision") as session:
            session.add(RoutingDecisionRecord(
                decision_id=decision.decision_id,
                order_id=decision.order_id,
                user_id=decision.user_id,
                symbol=decision.symbol,
                attempt=decision.attempt,
                outcome=decision.outcome.value,
                chosen_broker=decision.chosen_broker,
                timestamp=as_utc(decision.timestamp),
                payload=decision.model_dump_json(),
            ))

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def _event_keys(self, session: Session, order_ids: List[str]) -> Dict[str, Set[str]]:
        keys: Dict[str, Set[str]] = {oid: set() for oid in order_ids}
        if not order_ids:
            return keys
        rows = session.execute(
            select(OrderEventRecord.order_id, OrderEventRecord.dedup_key)
            .where(OrderEventRecord.order_id.in_(order_ids))
        )
        for order_id, dedup_key in rows:
            keys[order_id].add(dedup_key)
        return keys

    def load_order(self, order_id: str) -> Optional[Order]:
        with self._session("load_order") as session:
            row = session.get(OrderRecord, order_id)
            if row is None:
                return None
            return self._order(row, self._event_keys(session, [order_id])[order_id])

    def load_order_by_native(self, broker_id: str, native_id: str) -> Optional[Order]:
        with self._session("load_order_by_native") as session:
            row = session.scalars(
                select(OrderRecord).where(
                    OrderRecord.broker_id == broker_id,
                    OrderRecord.broker_order_id == native_id,
                )
            ).first()
            if row is None:
                return None
            return self._order(row, self._event_keys(session, [row.order_id])[row.order_id])

    def load_orders(self, open_only: bool = True) -> List[Order]:
        """Orders in creation order (non-terminal ones only by default)."""
        with self._session("load_orders") as session:
            stmt = select(OrderRecord).order_by(OrderRecord.created_at)
            if open_only:
                stmt = stmt.where(OrderRecord.state.not_in([s.value for s in TERMINAL_STATES]))
            rows = list(session.scalars(stmt))
            keys = self._event_keys(session, [r.order_id for r in rows])
            return [self._order(r, keys[r.order_id]) for r in rows]

    def load_client_index(self) -> Dict[Tuple[str, str], str]:
        """(user_id, client_order_id) -> order_id for idempotent submits."""
        with self._session("load_client_index") as session:
            rows = session.execute(
                select(OrderRecord.user_id, OrderRecord.client_order_id, OrderRecord.order_id)
                .where(OrderRecord.client_order_id.is_not(None))
            )
            return {(user_id, coid): order_id for user_id, coid, order_id in rows}

    def load_fills(self, user_id: Optional[str] = None) -> List[Fill]:
        """The fill ledger in application order."""
        with self._session("load_fills") as session:
            stmt = select(FillRecord).order_by(FillRecord.id)
            if user_id is not None:
                stmt = stmt.where(FillRecord.user_id == user_id)
            return [self._fill(r) for r in session.scalars(stmt)]

    def load_events(self, order_id: str) -> List[Dict]:
        with self._session("load_events") as session:
            rows = session.scalars(
                select(OrderEventRecord)
                .where(OrderEventRecord.order_id == order_id)
                .order_by(OrderEventRecord.id)
            )
            return [
                {
                    "dedup_key": r.dedup_key,
                    "broker_id": r.broker_id,
                    "type": r.event_type,
                    "filled_qty": r.filled_qty,
                    "avg_price": r.avg_price,
                    "sequence_no": r.sequence_no,
                    "state_after": r.state_after,
                }
                for r in rows
            ]

    def load_position_rows(self, user_id: str) -> List[Dict]:
        with self._session("load_positions") as session:
            rows = session.scalars(
                select(PositionRecord).where(PositionRecord.user_id == user_id)
                .order_by(PositionRecord.symbol)
            )
            return [
                {
                    "symbol": r.symbol,
                    "net_quantity": r.net_quantity,
                    "average_cost": r.average_cost,
                    "realized_pnl": r.realized_pnl,
                    "sub_positions": dict(r.sub_positions or {}),
                }
                for r in rows
            ]

    def routing_decisions(self, order_id: str) -> List[RoutingDecision]:
        with self._session("routing_decisions") as session:
            rows = session.scalars(
                select(RoutingDecisionRecord)
                .where(RoutingDecisionRecord.order_id == order_id)
                .order_by(RoutingDecisionRecord.attempt, RoutingDecisionRecord.timestamp)
            )
            return [RoutingDecision.model_validate_json(r.payload) for r in rows]
