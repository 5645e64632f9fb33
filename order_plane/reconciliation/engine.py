"""
Order state machine and reconciliation engine.

The engine owns every Order. It is the only writer of order state and of
the durable store, and the only caller of PositionAggregator.apply_fill.

Concurrency:
- ``state_lock`` (one per order) guards every mutation of that order.
- ``op_lock`` (one per order) serializes caller operations (modify,
  cancel) with each other.
- Broker calls are made holding ``op_lock`` only; state is re-checked
  under ``state_lock`` when they return. Different orders share nothing.

Mutations are applied to a working copy, persisted, and only then swapped
in. A PersistenceError halts new submissions (``submission_halted``).

Broker event reconciliation (``apply_broker_event``):
    frozen order                   -> ReconciliationConflict, no-op
    dedup key already applied      -> DUPLICATE
    terminal order                 -> AlreadyTerminal (new fills on
                                      CANCELLED/REJECTED/EXPIRED conflict)
    sequence_no / timestamp older  -> STALE
    cumulative qty above quantity  -> conflict, order frozen
    cumulative qty decreased       -> STALE
    state behind the current one   -> STALE
    otherwise                      -> APPLIED (fill delta, then transition)
Events for an unknown native id are BUFFERED and replayed once the
submission that owns it is recorded. The buffer holds at most
``max_buffered_orders`` native ids for ``buffer_ttl_s`` seconds each;
anything older or beyond that is dropped with a warning.

Finished orders stay in memory for the last ``max_retained_terminal`` of
them, then are served from the store (queries, late events).
"""

import asyncio
import math
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from contracts.validators import BrokerEvent, BrokerEventType, BrokerOrderStatus, ModifyRequest, OrderIntent
from order_plane.broker.sessions import BrokerSessionManager
from order_plane.events import OrderEventBus, OrderStateChanged, PositionUpdated
from order_plane.persistence.store import OrderStore
from order_plane.positions.aggregator import PositionAggregator
from order_plane.reconciliation import state_machine
from order_plane.reconciliation.state_machine import QTY_TOLERANCE
from order_plane.recovery.manager import FailureRecoveryManager, SubmissionOutcome
from order_plane.routing.quality import ExecutionQualityTracker
from order_plane.translation.translator import OrderTranslator
from shared.errors import (
    AlreadyTerminal,
    BrokerError,
    BrokerRejection,
    InvalidTransition,
    NoAvailableBroker,
    OrderNotFound,
    OrderPlaneError,
    OrderRejected,
    PersistenceError,
    ReconciliationConflict,
    SubmissionFailed,
    UnsupportedOrderType,
    ValidationError,
)
from shared.logging import CorrelationContext, StructuredLogger, get_correlation_id
from shared.metrics import OrderPlaneMetrics
from shared.models.base import utc_now
from shared.models.order import Fill, Order, OrderSnapshot, OrderState, OrderType
from shared.results import Result

logger = StructuredLogger(__name__)

MAX_BUFFERED_EVENTS = 256
MAX_BUFFERED_ORDERS = 1024
BUFFER_TTL_S = 300.0
MAX_RETAINED_TERMINAL = 1024
MODIFIABLE_STATES = frozenset({OrderState.ACKNOWLEDGED, OrderState.PARTIALLY_FILLED})
FILL_CONFLICT_STATES = frozenset({OrderState.CANCELLED, OrderState.REJECTED, OrderState.EXPIRED})

#: price fields each order type accepts on modification
MODIFIABLE_PRICES = {
    OrderType.MARKET: frozenset(),
    OrderType.LIMIT: frozenset({"limit_price"}),
    OrderType.STOP: frozenset({"trigger_price"}),
    OrderType.STOP_LIMIT: frozenset({"trigger_price", "limit_price"}),
    OrderType.BRACKET: frozenset({"limit_price", "target_price", "stop_price"}),
}

NativeKey = Tuple[str, str]


class EventOutcome(str, Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    STALE = "STALE"
    BUFFERED = "BUFFERED"


def new_order_id() -> str:
    """20 characters, so brokers with short client-id fields keep all of it."""
    return "OP" + uuid4().hex[:18]


def _composite_key(event: BrokerEvent) -> str:
    stamp = event.timestamp.isoformat() if event.timestamp is not None else "-"
    return f"evt:{event.type.value}:{event.filled_qty:g}:{event.avg_price or 0:g}:{stamp}"


@dataclass
class _OrderSlot:
    order: Order
    state_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    op_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    submission: Optional[asyncio.Task] = None

    @property
    def submitting(self) -> bool:
        return self.submission is not None and not self.submission.done()

    @property
    def busy(self) -> bool:
        return self.submitting or self.op_lock.locked() or self.state_lock.locked()


@dataclass
class _PendingEvents:
    """Events for a native id no order owns yet."""
    created: float
    events: Deque[BrokerEvent] = field(default_factory=lambda: deque(maxlen=MAX_BUFFERED_EVENTS))


class ReconciliationEngine:
    def __init__(
        self,
        translator: OrderTranslator,
        sessions: BrokerSessionManager,
        positions: PositionAggregator,
        recovery: FailureRecoveryManager,
        store: OrderStore,
        bus: Optional[OrderEventBus] = None,
        metrics: Optional[OrderPlaneMetrics] = None,
        quality: Optional[ExecutionQualityTracker] = None,
    ):
        self.translator = translator
        self.sessions = sessions
        self.positions = positions
        self.recovery = recovery
        self.store = store
        self.bus = bus or OrderEventBus()
        self.metrics = metrics or OrderPlaneMetrics()
        self.quality = quality
        self.submission_halted = False
        self._slots: Dict[str, _OrderSlot] = {}
        self._by_native: Dict[NativeKey, str] = {}
        self._by_client: Dict[Tuple[str, str], str] = {}
        self._buffered: "OrderedDict[NativeKey, _PendingEvents]" = OrderedDict()
        self._retired: Deque[str] = deque()
        self.max_buffered_orders = MAX_BUFFERED_ORDERS
        self.buffer_ttl_s = BUFFER_TTL_S
        self.max_retained_terminal = MAX_RETAINED_TERMINAL
        self.clock = time.monotonic

    # ------------------------------------------------------------------
    # persistence / publication helpers
    # ------------------------------------------------------------------
    def _persist(self, write, *args) -> None:
        try:
            write(*args)
        except PersistenceError as exc:
            if not self.submission_halted:
                self.submission_halted = True
                logger.critical("order_submission_halted", error=str(exc))
            raise

    def _swap(self, slot: _OrderSlot, work: Order, previous: Optional[OrderState],
              steps: List[Tuple[OrderState, OrderState]]) -> None:
        slot.order = work
        for old, new in steps:
            self.metrics.record_transition(old.value, new.value)
        self.bus.publish(OrderStateChanged(
            order=work.snapshot(), previous_state=previous, correlation_id=work.correlation_id,
        ))
        if steps:
            logger.info("order_state_changed", order_id=work.order_id,
                        from_state=previous.value, to_state=work.state.value,
                        filled_quantity=work.filled_quantity, broker_id=work.broker_id)
            if work.is_terminal and work.broker_id is not None and self.quality is not None:
                self.quality.record_outcome(work.broker_id, work.symbol, work.state == OrderState.FILLED)
            if work.is_terminal:
                self._retire(work.order_id)

    def _retire(self, order_id: str) -> None:
        """Queue a finished order for eviction; evict beyond the retention window."""
        self._retired.append(order_id)
        for _ in range(len(self._retired) - self.max_retained_terminal):
            candidate = self._retired.popleft()
            slot = self._slots.get(candidate)
            if slot is None:
                continue
            if slot.busy:
                self._retired.append(candidate)
                continue
            order = slot.order
            if order.frozen or not order.is_terminal:
                continue
            del self._slots[candidate]
            if order.broker_id is not None and order.broker_order_id is not None:
                self._by_native.pop((order.broker_id, order.broker_order_id), None)
            logger.debug("order_evicted", order_id=candidate, state=order.state.value)

    def _revive(self, broker_id: str, native_id: str) -> Optional[_OrderSlot]:
        """Reload an evicted order that a late broker event refers to."""
        order = self.store.load_order_by_native(broker_id, native_id)
        if order is None or order.order_id in self._slots:
            return None
        slot = _OrderSlot(order=order)
        self._slots[order.order_id] = slot
        self._by_native[(broker_id, native_id)] = order.order_id
        if order.is_terminal and not order.frozen:
            self._retire(order.order_id)
        return slot

    @staticmethod
    def _walk(order: Order, states: List[OrderState]) -> List[Tuple[OrderState, OrderState]]:
        steps = []
        for state in states:
            steps.append((state_machine.transition(order, state), state))
        return steps

    def _commit(self, slot: _OrderSlot, work: Order, states: List[OrderState] = ()) -> None:
        previous = work.state
        steps = self._walk(work, list(states))
        work.updated_at = utc_now()
        self._persist(self.store.save_order, work)
        self._swap(slot, work, previous, steps)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get_order(self, order_id: str) -> Result[OrderSnapshot]:
        slot = self._slots.get(order_id)
        if slot is not None:
            return Result.success(slot.order.snapshot())
        order = self.store.load_order(order_id)
        if order is None:
            return Result.failure(OrderNotFound(f"order {order_id} not found", order_id=order_id))
        return Result.success(order.snapshot())

    def orders(self, user_id: Optional[str] = None) -> List[OrderSnapshot]:
        return [
            s.order.snapshot() for s in self._slots.values()
            if user_id is None or s.order.user_id == user_id
        ]

    def order_for_native(self, broker_id: str, native_id: str) -> Optional[str]:
        return self._by_native.get((broker_id, native_id))

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------
    async def submit(self, intent: Union[OrderIntent, dict]) -> Result[str]:
        """Validate, create in PENDING_SUBMIT, persist and start the submission.

        Returns the order id immediately; ``wait_for_submission`` follows
        the outcome. Raises PersistenceError once submissions are halted.
        """
        if self.submission_halted:
            raise PersistenceError("order submission halted: persistence layer unavailable")
        if not isinstance(intent, OrderIntent):
            try:
                intent = OrderIntent.model_validate(intent)
            except PydanticValidationError as exc:
                return Result.failure(ValidationError(
                    "invalid order intent", errors=exc.errors(include_url=False),
                ))

        if intent.client_order_id is not None:
            existing = self._by_client.get((intent.user_id, intent.client_order_id))
            if existing is not None:
                logger.info("order_submit_idempotent", order_id=existing,
                            client_order_id=intent.client_order_id)
                return Result.success(existing)

        order = Order(
            order_id=new_order_id(),
            user_id=intent.user_id,
            symbol=intent.symbol,
            side=intent.side,
            quantity=float(intent.quantity),
            order_type=intent.order_type,
            time_in_force=intent.time_in_force,
            limit_price=intent.limit_price,
            trigger_price=intent.trigger_price,
            target_price=intent.target_price,
            stop_price=intent.stop_price,
            client_order_id=intent.client_order_id,
            correlation_id=intent.correlation_id or get_correlation_id() or uuid4().hex,
            preferred_brokers=tuple(intent.preferred_brokers),
            excluded_brokers=tuple(intent.excluded_brokers),
        )
        try:
            self.translator.validate_constraints(order)
            if not self.translator.supporting_brokers(order):
                raise UnsupportedOrderType(
                    f"no configured broker supports {order.order_type.value}/"
                    f"{order.time_in_force.value} for {order.symbol}",
                    order_type=order.order_type.value,
                )
        except OrderPlaneError as exc:
            logger.info("order_intent_rejected", user_id=order.user_id, symbol=order.symbol,
                        code=exc.code.value, reason=exc.message)
            return Result.failure(exc)

        self._persist(self.store.save_order, order)
        slot = _OrderSlot(order=order)
        self._slots[order.order_id] = slot
        if order.client_order_id is not None:
            self._by_client[(order.user_id, order.client_order_id)] = order.order_id
        self.metrics.orders_submitted.labels(order_type=order.order_type.value).inc()
        self._swap(slot, order, None, [])
        logger.info("order_created", order_id=order.order_id, user_id=order.user_id,
                    symbol=order.symbol, side=order.side.value, quantity=order.quantity,
                    order_type=order.order_type.value)
        self._start_submission(slot)
        return Result.success(order.order_id)

    def _start_submission(self, slot: _OrderSlot) -> None:
        with CorrelationContext(slot.order.correlation_id):
            slot.submission = asyncio.get_running_loop().create_task(
                self._run_submission(slot), name=f"submit-{slot.order.order_id}",
            )

    async def _run_submission(self, slot: _OrderSlot) -> Result[str]:
        order_id = slot.order.order_id
        try:
            outcome = await self.recovery.submit(slot.order.copy())
        except OrderRejected as exc:
            await self._record_rejection(slot, exc)
            return Result.failure(exc)
        except (NoAvailableBroker, SubmissionFailed, UnsupportedOrderType) as exc:
            await self._record_submission_error(slot, exc)
            return Result.failure(exc)
        await self._record_acceptance(slot, outcome)
        return Result.success(order_id)

    async def _record_rejection(self, slot: _OrderSlot, exc: OrderRejected) -> None:
        async with slot.state_lock:
            work = slot.order.copy()
            work.reject_reason = exc.reason
            work.last_error = exc.message
            self._commit(slot, work, [OrderState.REJECTED])

    async def _record_submission_error(self, slot: _OrderSlot, exc: OrderPlaneError) -> None:
        async with slot.state_lock:
            work = slot.order.copy()
            work.last_error = exc.message
            self._commit(slot, work)
        logger.warning("order_submission_failed", order_id=work.order_id, code=exc.code.value,
                       reason=exc.message)

    async def _record_acceptance(self, slot: _OrderSlot, outcome: SubmissionOutcome) -> None:
        async with slot.state_lock:
            work = slot.order.copy()
            work.broker_id = outcome.broker_id
            work.broker_order_id = outcome.native_id
            work.needs_reconciliation = not outcome.confirmed
            work.last_error = None if outcome.confirmed else "submit outcome unknown"
            states = [OrderState.SUBMITTED] if work.state == OrderState.PENDING_SUBMIT else []
            self._commit(slot, work, states)
            if outcome.native_id is not None:
                self._by_native[(outcome.broker_id, outcome.native_id)] = work.order_id
        await self._after_mapping(outcome.broker_id, outcome.native_id, outcome.status)

    async def _after_mapping(self, broker_id: str, native_id: Optional[str],
                             status: Optional[BrokerOrderStatus]) -> None:
        if native_id is None:
            return
        if status is not None and status.event is not None:
            await self.apply_broker_event(broker_id, native_id, status.event)
        await self._replay_buffered(broker_id, native_id)

    async def wait_for_submission(self, order_id: str, timeout: Optional[float] = None) -> Result[str]:
        """Outcome of the asynchronous submission.

        Raises asyncio.TimeoutError when it is still in flight after
        ``timeout`` seconds.
        """
        slot = self._slots.get(order_id)
        if slot is None:
            order = self.store.load_order(order_id)
            if order is None:
                return Result.failure(OrderNotFound(f"order {order_id} not found", order_id=order_id))
        elif slot.submission is not None:
            return await asyncio.wait_for(asyncio.shield(slot.submission), timeout)
        else:
            order = slot.order
        if order.broker_id is not None:
            return Result.success(order_id)
        if order.state == OrderState.REJECTED:
            return Result.failure(OrderRejected(order.reject_reason or "rejected", order_id=order_id))
        return Result.failure(SubmissionFailed(order.last_error or "not submitted", order_id=order_id))

    async def resubmit(self, order_id: str) -> Result[str]:
        """Restart the submission of an order still in PENDING_SUBMIT."""
        if self.submission_halted:
            raise PersistenceError("order submission halted: persistence layer unavailable")
        slot = self._slots.get(order_id)
        if slot is None:
            return self._missing(order_id)
        async with slot.op_lock:
            if slot.submitting:
                return Result.failure(InvalidTransition(
                    f"order {order_id} submission already in flight", order_id=order_id))
            async with slot.state_lock:
                order = slot.order
                error = self._guard(order)
                if error is None and (order.state != OrderState.PENDING_SUBMIT or order.broker_id):
                    error = InvalidTransition(
                        f"order {order_id} is {order.state.value}; only unsent orders can be resubmitted",
                        order_id=order_id, state=order.state.value,
                    )
                if error is not None:
                    return Result.failure(error)
                work = order.copy()
                work.last_error = None
                self._commit(slot, work)
            logger.info("order_resubmitted", order_id=order_id)
            self._start_submission(slot)
        return Result.success(order_id)

    # ------------------------------------------------------------------
    # broker events
    # ------------------------------------------------------------------
    async def apply_broker_event(self, broker_id: str, native_id: str,
                                 event: Union[BrokerEvent, dict]) -> Result[EventOutcome]:
        """Idempotent entry point for broker notifications."""
        if not isinstance(event, BrokerEvent):
            try:
                event = BrokerEvent.model_validate(event)
            except PydanticValidationError as exc:
                logger.warning("broker_event_invalid", broker_id=broker_id, native_id=native_id,
                               errors=exc.errors(include_url=False))
                return Result.failure(ValidationError(
                    "invalid broker event", errors=exc.errors(include_url=False)))

        order_id = self.order_for_native(broker_id, native_id)
        slot = self._slots.get(order_id) if order_id is not None else None
        if slot is None:
            slot = self._revive(broker_id, native_id)
        if slot is None:
            self._buffer(broker_id, native_id, event)
            return Result.success(EventOutcome.BUFFERED)

        async with slot.state_lock:
            result = self._apply_locked(slot, broker_id, event)
        outcome = result.value.value if result.ok else result.code.value
        self.metrics.record_event(broker_id, outcome)
        return result

    def _buffer(self, broker_id: str, native_id: str, event: BrokerEvent) -> None:
        self._expire_buffered()
        key = (broker_id, native_id)
        pending = self._buffered.get(key)
        if pending is None:
            while self._buffered and len(self._buffered) >= self.max_buffered_orders:
                self._drop_buffered(*self._buffered.popitem(last=False), reason="buffer_full")
            pending = self._buffered[key] = _PendingEvents(created=self.clock())
        if len(pending.events) == MAX_BUFFERED_EVENTS:
            logger.warning("broker_event_buffer_full", broker_id=broker_id, native_id=native_id)
        pending.events.append(event)
        self.metrics.record_event(broker_id, EventOutcome.BUFFERED.value)
        logger.info("broker_event_buffered", broker_id=broker_id, native_id=native_id,
                    event_type=event.type.value, sequence_no=event.sequence_no)

    def _expire_buffered(self) -> None:
        cutoff = self.clock() - self.buffer_ttl_s
        while self._buffered:
            key, pending = next(iter(self._buffered.items()))
            if pending.created > cutoff:
                break
            del self._buffered[key]
            self._drop_buffered(key, pending, reason="expired")

    @staticmethod
    def _drop_buffered(key: NativeKey, pending: _PendingEvents, reason: str) -> None:
        logger.warning("broker_events_dropped", broker_id=key[0], native_id=key[1],
                       count=len(pending.events), reason=reason)

    async def _replay_buffered(self, broker_id: str, native_id: str) -> None:
        pending = self._buffered.pop((broker_id, native_id), None)
        if pending is None:
            return
        logger.info("broker_events_replayed", broker_id=broker_id, native_id=native_id,
                    count=len(pending.events))
        for event in pending.events:
            await self.apply_broker_event(broker_id, native_id, event)

    def _apply_locked(self, slot: _OrderSlot, broker_id: str, event: BrokerEvent) -> Result[EventOutcome]:
        order = slot.order
        key = event.dedup_key() or _composite_key(event)

        if order.frozen:
            return Result.failure(ReconciliationConflict(
                f"order {order.order_id} is frozen: {order.freeze_reason}", order_id=order.order_id))
        if key in order.applied_event_keys:
            logger.debug("broker_event_duplicate", order_id=order.order_id, key=key)
            return Result.success(EventOutcome.DUPLICATE)

        filled_more = event.filled_qty > order.filled_quantity + QTY_TOLERANCE
        if order.is_terminal:
            if order.state in FILL_CONFLICT_STATES and filled_more:
                return self._freeze(slot, broker_id,
                                    f"fill of {event.filled_qty:g} reported after {order.state.value}")
            return Result.failure(AlreadyTerminal(
                f"order {order.order_id} is already {order.state.value}",
                order_id=order.order_id, state=order.state.value))

        if self._is_out_of_order(order, event):
            logger.warning("broker_event_stale", order_id=order.order_id, reason="out_of_order",
                           sequence_no=event.sequence_no, last_sequence_no=order.last_sequence_no)
            return Result.success(EventOutcome.STALE)
        if event.filled_qty > order.quantity + QTY_TOLERANCE:
            return self._freeze(slot, broker_id,
                                f"filled {event.filled_qty:g} exceeds quantity {order.quantity:g}")
        if event.filled_qty < order.filled_quantity - QTY_TOLERANCE:
            logger.warning("broker_event_stale", order_id=order.order_id, reason="filled_qty_decrease",
                           filled_qty=event.filled_qty, recorded=order.filled_quantity)
            return Result.success(EventOutcome.STALE)

        target = state_machine.target_state(event.type, event.filled_qty, order.quantity)
        if not filled_more:
            if state_machine.is_behind(order.state, target):
                logger.warning("broker_event_stale", order_id=order.order_id, reason="state_behind",
                               current=order.state.value, implied=target.value)
                return Result.success(EventOutcome.STALE)
            if target == order.state:
                return Result.success(EventOutcome.DUPLICATE)

        states = state_machine.path_to(order.state, target, filled_more)
        if states is None:
            return Result.failure(InvalidTransition(
                f"order {order.order_id}: {order.state.value} -> {target.value} not allowed",
                order_id=order.order_id, current=order.state.value, target=target.value))

        work = order.copy()
        fill = None
        if filled_more:
            fill = self._book_fill(work, broker_id, event)
            if fill is None:
                return self._freeze(slot, broker_id, "fill reported without a usable price")
        if event.type == BrokerEventType.REJECT and target == OrderState.REJECTED:
            work.reject_reason = event.reason or "rejected by broker"

        previous = work.state
        steps = self._walk(work, states)
        if event.sequence_no is not None:
            work.last_sequence_no = max(event.sequence_no, work.last_sequence_no or 0)
        if event.timestamp is not None:
            work.last_event_at = max(event.timestamp, work.last_event_at or event.timestamp)
        work.logical_clock += 1
        work.applied_event_keys.add(key)
        work.updated_at = utc_now()

        self._persist(self.store.record_event, work, broker_id, event, key, fill)
        self._swap(slot, work, previous, steps)
        if fill is not None:
            self._update_position(fill, work.correlation_id)
        return Result.success(EventOutcome.APPLIED)

    @staticmethod
    def _is_out_of_order(order: Order, event: BrokerEvent) -> bool:
        if event.sequence_no is not None and order.last_sequence_no is not None:
            return event.sequence_no < order.last_sequence_no
        if event.timestamp is not None and order.last_event_at is not None:
            return event.timestamp < order.last_event_at
        return False

    @staticmethod
    def _book_fill(work: Order, broker_id: str, event: BrokerEvent) -> Optional[Fill]:
        """Turn the cumulative report into a delta; updates ``work`` in place."""
        delta = event.filled_qty - work.filled_quantity
        price = None
        if event.avg_price:
            price = (event.avg_price * event.filled_qty
                     - work.average_fill_price * work.filled_quantity) / delta
            if not math.isfinite(price) or price <= 0:
                price = event.avg_price
        else:
            price = work.average_fill_price or work.reference_price()
        if not price:
            return None

        work.average_fill_price = (
            event.avg_price
            or (work.average_fill_price * work.filled_quantity + price * delta) / event.filled_qty
        )
        work.filled_quantity = event.filled_qty
        return Fill(
            order_id=work.order_id,
            user_id=work.user_id,
            broker_id=broker_id,
            symbol=work.symbol,
            side=work.side,
            quantity=float(delta),
            price=float(price),
            sequence_no=event.sequence_no,
            timestamp=event.timestamp or utc_now(),
        )

    def _update_position(self, fill: Fill, correlation_id: Optional[str]) -> None:
        snapshot = self.positions.apply_fill(fill)
        self._persist(self.store.save_position, snapshot)
        self.bus.publish(PositionUpdated(
            position=snapshot, order_id=fill.order_id, correlation_id=correlation_id,
        ))

    def _freeze(self, slot: _OrderSlot, broker_id: str, reason: str) -> Result[EventOutcome]:
        work = slot.order.copy()
        work.frozen = True
        work.freeze_reason = reason
        work.needs_reconciliation = False
        self._persist(self.store.save_order, work)
        self._swap(slot, work, work.state, [])
        self.metrics.reconciliation_conflicts.labels(broker_id=broker_id).inc()
        logger.error("reconciliation_conflict", order_id=work.order_id, broker_id=broker_id,
                     reason=reason, state=work.state.value)
        return Result.failure(ReconciliationConflict(
            f"order {work.order_id}: {reason}", order_id=work.order_id, broker_id=broker_id))

    # ------------------------------------------------------------------
    # caller operations
    # ------------------------------------------------------------------
    @staticmethod
    def _guard(order: Order) -> Optional[OrderPlaneError]:
        if order.frozen:
            return ReconciliationConflict(
                f"order {order.order_id} is frozen pending manual review: {order.freeze_reason}",
                order_id=order.order_id)
        if order.is_terminal:
            return AlreadyTerminal(f"order {order.order_id} is already {order.state.value}",
                                   order_id=order.order_id, state=order.state.value)
        return None

    def _missing(self, order_id: str) -> Result:
        stored = self.store.load_order(order_id)
        if stored is not None and stored.is_terminal:
            return Result.failure(AlreadyTerminal(
                f"order {order_id} is already {stored.state.value}", order_id=order_id))
        return Result.failure(OrderNotFound(f"order {order_id} not found", order_id=order_id))

    async def modify(self, order_id: str, request: Union[ModifyRequest, dict]) -> Result[OrderSnapshot]:
        if not isinstance(request, ModifyRequest):
            try:
                request = ModifyRequest.model_validate(request)
            except PydanticValidationError as exc:
                return Result.failure(ValidationError(
                    "invalid modification", errors=exc.errors(include_url=False)))
        changes = request.changes()
        slot = self._slots.get(order_id)
        if slot is None:
            return self._missing(order_id)

        async with slot.op_lock:
            async with slot.state_lock:
                order = slot.order
                try:
                    payload = self._prepare_modify(order, changes)
                except OrderPlaneError as exc:
                    return Result.failure(exc)
                broker_id, native_id = order.broker_id, order.broker_order_id

            try:
                await self.sessions.call(
                    order.user_id, broker_id, "modify",
                    lambda adapter, ctx: adapter.modify(ctx, native_id, payload),
                )
            except BrokerRejection as exc:
                logger.info("order_modify_rejected", order_id=order_id, broker_id=broker_id,
                            reason=exc.reason)
                return Result.failure(OrderRejected(exc.reason, broker_id=broker_id, order_id=order_id))
            except BrokerError as exc:
                return Result.failure(SubmissionFailed(
                    f"modify of {order_id} failed: {exc}", order_id=order_id, broker_id=broker_id))

            async with slot.state_lock:
                order = slot.order
                error = self._guard(order)
                if error is None and "quantity" in changes:
                    try:
                        self.translator.validate_changes(order, {"quantity": changes["quantity"]})
                    except OrderPlaneError as exc:
                        # a fill landed while the broker call was in flight
                        error = exc
                if error is not None:
                    if not order.is_terminal and not order.frozen:
                        work = order.copy()
                        work.needs_reconciliation = True
                        self._commit(slot, work)
                    return Result.failure(error)
                work = order.copy()
                for name, value in changes.items():
                    setattr(work, name, float(value) if name == "quantity" else value)
                work.revision += 1
                states = []
                if work.filled_quantity > 0 and work.remaining_quantity <= QTY_TOLERANCE:
                    states = [OrderState.FILLED]
                self._commit(slot, work, states)
            logger.info("order_modified", order_id=order_id, revision=work.revision,
                        changes=sorted(changes))
            return Result.success(work.snapshot())

    def _prepare_modify(self, order: Order, changes: dict) -> dict:
        error = self._guard(order)
        if error is not None:
            raise error
        if order.state not in MODIFIABLE_STATES:
            raise InvalidTransition(
                f"order {order.order_id} cannot be modified while {order.state.value}",
                order_id=order.order_id, state=order.state.value)
        allowed = MODIFIABLE_PRICES[order.order_type]
        for name in changes:
            if name not in ("quantity", "time_in_force") and name not in allowed:
                raise ValidationError(f"{name} does not apply to {order.order_type.value} orders",
                                      field=name)
        self.translator.validate_changes(order, changes)
        candidate = order.copy()
        for name, value in changes.items():
            setattr(candidate, name, value)
        self.translator.check_support(order.broker_id, candidate)
        return self.translator.translate_modify(order, changes, order.broker_id)

    async def cancel(self, order_id: str) -> Result[OrderSnapshot]:
        """Cancel a live order; a fill that gets there first wins (AlreadyTerminal)."""
        slot = self._slots.get(order_id)
        if slot is None:
            return self._missing(order_id)

        async with slot.op_lock:
            if slot.submitting:
                await asyncio.wait({slot.submission})
            async with slot.state_lock:
                order = slot.order
                error = self._guard(order)
                if error is not None:
                    return Result.failure(error)
                if order.broker_id is None:
                    work = order.copy()
                    self._commit(slot, work, [OrderState.CANCELLED])
                    logger.info("order_cancelled_locally", order_id=order_id)
                    return Result.success(work.snapshot())
                broker_id = order.broker_id

            native_id = slot.order.broker_order_id
            if native_id is None:
                native_id = await self._locate(slot, missing_state=OrderState.CANCELLED)
                if slot.order.is_terminal:
                    return self._cancel_result(slot)
                if native_id is None:
                    return Result.failure(SubmissionFailed(
                        f"cancel of {order_id} deferred: outcome at {broker_id} unknown",
                        order_id=order_id, broker_id=broker_id))

            try:
                await self.sessions.call(
                    order.user_id, broker_id, "cancel",
                    lambda adapter, ctx: adapter.cancel(ctx, native_id),
                )
            except BrokerRejection as exc:
                # usually "too late": the poll tells whether a fill won
                logger.info("order_cancel_refused", order_id=order_id, broker_id=broker_id,
                            reason=exc.reason)
                await self._poll(slot)
                if slot.order.is_terminal:
                    return self._cancel_result(slot)
                return Result.failure(OrderRejected(exc.reason, broker_id=broker_id, order_id=order_id))
            except BrokerError as exc:
                if not await self._poll(slot):
                    await self._flag(slot)
                if slot.order.is_terminal:
                    return self._cancel_result(slot)
                return Result.failure(SubmissionFailed(
                    f"cancel of {order_id} not confirmed: {exc}", order_id=order_id, broker_id=broker_id))
            if not await self._poll(slot):
                await self._flag(slot)
            return self._cancel_result(slot)

    def _cancel_result(self, slot: _OrderSlot) -> Result[OrderSnapshot]:
        order = slot.order
        if order.state == OrderState.CANCELLED or not order.is_terminal:
            return Result.success(order.snapshot())
        return Result.failure(AlreadyTerminal(
            f"order {order.order_id} is already {order.state.value}",
            order_id=order.order_id, state=order.state.value))

    # ------------------------------------------------------------------
    # polling / reconciliation
    # ------------------------------------------------------------------
    async def _poll(self, slot: _OrderSlot) -> bool:
        """Ask the owning broker for the order's status and apply it."""
        order = slot.order
        try:
            status = await self.sessions.call(
                order.user_id, order.broker_id, "get_order_status",
                lambda adapter, ctx: adapter.get_order_status(ctx, order.broker_order_id),
                consume_budget=False,
            )
        except BrokerError as exc:
            logger.warning("order_status_poll_failed", order_id=order.order_id,
                           broker_id=order.broker_id, error=str(exc))
            return False
        if status.event is not None:
            await self.apply_broker_event(order.broker_id, status.native_id, status.event)
        return True

    async def _locate(self, slot: _OrderSlot,
                      missing_state: OrderState = OrderState.REJECTED) -> Optional[str]:
        """Find an unconfirmed submission at its broker by client order id.

        Found: the mapping is recorded and buffered events replayed. Not
        found: the broker never booked it, so it is closed locally as
        ``missing_state``.
        """
        order = slot.order
        try:
            status = await self.sessions.call(
                order.user_id, order.broker_id, "find_order",
                lambda adapter, ctx: adapter.find_order(ctx, order.order_id),
                consume_budget=False,
            )
        except BrokerError as exc:
            logger.warning("order_lookup_failed", order_id=order.order_id,
                           broker_id=order.broker_id, error=str(exc))
            return None

        async with slot.state_lock:
            work = slot.order.copy()
            if status is None:
                work.needs_reconciliation = False
                if missing_state == OrderState.REJECTED:
                    work.reject_reason = "order not found at broker after unconfirmed submit"
                self._commit(slot, work, [missing_state])
                logger.warning("order_not_found_at_broker", order_id=work.order_id,
                               broker_id=work.broker_id)
                return None
            work.broker_order_id = status.native_id
            work.needs_reconciliation = False
            work.last_error = None
            self._commit(slot, work)
            self._by_native[(work.broker_id, status.native_id)] = work.order_id
        await self._after_mapping(work.broker_id, status.native_id, status)
        return status.native_id

    async def _flag(self, slot: _OrderSlot) -> None:
        async with slot.state_lock:
            if slot.order.needs_reconciliation or slot.order.is_terminal:
                return
            work = slot.order.copy()
            work.needs_reconciliation = True
            self._commit(slot, work)

    def flag_for_reconciliation(self, user_id: str, broker_id: str) -> int:
        """Mark open orders owned by a broker that just went DOWN.

        Runs from a synchronous health listener, so it swaps state without
        taking the per-order locks; it only touches the flag.
        """
        count = 0
        for slot in self._slots.values():
            order = slot.order
            if (order.user_id != user_id or order.broker_id != broker_id
                    or order.is_terminal or order.frozen or order.needs_reconciliation):
                continue
            work = order.copy()
            work.needs_reconciliation = True
            self._persist(self.store.save_order, work)
            slot.order = work
            count += 1
        return count

    async def reconcile_flagged(self, user_id: Optional[str] = None,
                                broker_id: Optional[str] = None) -> int:
        """Poll HEALTHY brokers for every flagged order; returns how many were resolved."""
        resolved = 0
        for slot in list(self._slots.values()):
            order = slot.order
            if not order.needs_reconciliation or order.frozen or order.broker_id is None:
                continue
            if user_id is not None and order.user_id != user_id:
                continue
            if broker_id is not None and order.broker_id != broker_id:
                continue
            if not self.sessions.health.is_routable(order.user_id, order.broker_id):
                continue
            if slot.op_lock.locked():
                continue

            async with slot.op_lock:
                if slot.order.broker_order_id is None:
                    await self._locate(slot)
                    ok = slot.order.broker_order_id is not None or slot.order.is_terminal
                else:
                    ok = await self._poll(slot)
                if not ok:
                    continue
                async with slot.state_lock:
                    if slot.order.needs_reconciliation:
                        work = slot.order.copy()
                        work.needs_reconciliation = False
                        self._commit(slot, work)
                resolved += 1
        if resolved:
            logger.info("orders_reconciled", count=resolved, user_id=user_id, broker_id=broker_id)
        return resolved

    async def poll_open_orders(self) -> int:
        """Fetch the status of live orders at brokers that do not push events.

        Returns how many orders were polled. Orders whose poll fails are
        left alone; the next pass tries again.
        """
        polled = 0
        for slot in list(self._slots.values()):
            order = slot.order
            if (order.is_terminal or order.frozen or order.needs_reconciliation
                    or order.broker_id is None or order.broker_order_id is None):
                continue
            if self.sessions.adapter(order.broker_id).pushes_events:
                continue
            if not self.sessions.health.is_routable(order.user_id, order.broker_id):
                continue
            if slot.op_lock.locked():
                continue
            async with slot.op_lock:
                if await self._poll(slot):
                    polled += 1
        if polled:
            logger.debug("open_orders_polled", count=polled)
        return polled

    # ------------------------------------------------------------------
    # restart
    # ------------------------------------------------------------------
    def restore(self) -> int:
        """Reload open orders and rebuild positions from the fill ledger."""
        orders = self.store.load_orders(open_only=True)
        self._by_client.update(self.store.load_client_index())
        for order in orders:
            if order.broker_id is not None and not order.frozen:
                order.needs_reconciliation = True
            self._slots[order.order_id] = _OrderSlot(order=order)
            if order.broker_id is not None and order.broker_order_id is not None:
                self._by_native[(order.broker_id, order.broker_order_id)] = order.order_id
        fills = self.positions.rebuild(self.store.load_fills())
        logger.info("engine_restored", open_orders=len(orders), fills=fills)
        return len(orders)

    async def close(self) -> None:
        tasks = [s.submission for s in self._slots.values() if s.submitting]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
