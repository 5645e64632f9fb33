"""Paper broker (simulated order execution).

In-process broker used in ``simulated`` mode and by the test suites. It
speaks the canonical dialect and simulates:
- Acknowledgement, partial fills and final fill as asynchronous events
- Configurable fill delay and number of fill slices
- Buying power per account and positions built from fills
- Fault injection: unavailability, submit failures, timeouts (with or
  without the order reaching the book), rejections, lost events
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional, Set, Type
from uuid import uuid4

from pydantic import SecretStr

from contracts.validators import BrokerEvent, BrokerEventType
from order_plane.adapters.base import BrokerAdapter, BrokerOrderStatus
from shared.config import PaperBrokerConfig
from shared.errors import (
    BrokerAuthError,
    BrokerError,
    BrokerOrderNotFound,
    BrokerRejection,
    BrokerTimeout,
    BrokerUnavailable,
)
from shared.models.session import AccountSnapshot, AuthGrant, SessionContext

logger = logging.getLogger(__name__)

DEFAULT_MARKET_PRICE = 100.0


class PaperStatus:
    SUBMITTED = "SUBMITTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    DONE = frozenset({FILLED, CANCELLED, REJECTED, EXPIRED})


_EVENT_FOR_STATUS = {
    PaperStatus.ACKNOWLEDGED: BrokerEventType.ACK,
    PaperStatus.PARTIALLY_FILLED: BrokerEventType.PARTIAL_FILL,
    PaperStatus.FILLED: BrokerEventType.FILL,
    PaperStatus.CANCELLED: BrokerEventType.CANCEL_CONFIRM,
    PaperStatus.REJECTED: BrokerEventType.REJECT,
    PaperStatus.EXPIRED: BrokerEventType.EXPIRE,
}


@dataclass
class PaperOrder:
    """Broker-side order record."""
    native_id: str
    user_id: str
    client_order_id: str
    symbol: str
    side: str
    quantity: float
    order_type: str
    time_in_force: str
    limit_price: Optional[float] = None
    trigger_price: Optional[float] = None
    status: str = PaperStatus.SUBMITTED
    filled_quantity: float = 0.0
    average_fill_price: float = 0.0
    sequence_no: int = 0
    reason: Optional[str] = None
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PaperBroker(BrokerAdapter):
    """
    Paper broker (simulated fills).

    Example:
        >>> broker = PaperBroker("paper-a", PaperBrokerConfig(auto_fill=False))
        >>> broker.set_price("INFY", 1500.0)
        >>> native_id = await broker.submit(ctx, payload)
        >>> broker.fill(native_id, 50)      # emits PARTIAL_FILL
    """

    def __init__(self, broker_id: str, config: Optional[PaperBrokerConfig] = None,
                 session_ttl_s: Optional[float] = None):
        super().__init__(broker_id)
        self.config = config or PaperBrokerConfig()
        self.session_ttl_s = session_ttl_s
        self._ids = itertools.count(1)
        self._orders: Dict[str, PaperOrder] = {}
        self._by_client_id: Dict[str, str] = {}
        self._prices: Dict[str, float] = {}
        self._buying_power: Dict[str, float] = {}
        self._positions: Dict[str, Dict[str, float]] = {}
        self._tasks: Set[asyncio.Task] = set()

        # Fault injection
        self.available = True
        self.heartbeat_ok = True
        self.drop_events = False
        self._submit_faults: Deque[BrokerError] = deque()
        self._accept_then_timeout = 0
        self._status_faults = 0
        self._cancel_fault: Optional[BrokerError] = None
        self.submit_delay_s = 0.0
        self.calls: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # fault injection / test control
    # ------------------------------------------------------------------
    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = price

    def set_buying_power(self, user_id: str, amount: float) -> None:
        self._buying_power[user_id] = amount

    def fail_next_submits(self, count: int = 1, error: Type[BrokerError] = BrokerUnavailable) -> None:
        for _ in range(count):
            self._submit_faults.append(error(f"injected {error.__name__}", self.broker_id))

    def reject_next_submit(self, reason: str) -> None:
        self._submit_faults.append(BrokerRejection(reason, self.broker_id))

    def timeout_after_accept(self, count: int = 1) -> None:
        """Next submits reach the book but the caller sees a timeout."""
        self._accept_then_timeout += count

    def fail_status_queries(self, count: int = 1) -> None:
        self._status_faults += count

    def fail_next_cancel(self, error: BrokerError) -> None:
        self._cancel_fault = error

    def orders(self) -> List[PaperOrder]:
        return list(self._orders.values())

    def order(self, native_id: str) -> PaperOrder:
        return self._orders[native_id]

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def _check_available(self) -> None:
        if not self.available:
            raise BrokerUnavailable(f"{self.broker_id} unavailable", self.broker_id)

    def _account(self, user_id: str) -> float:
        return self._buying_power.setdefault(user_id, self.config.initial_buying_power)

    def _market_price(self, order: PaperOrder) -> float:
        if order.limit_price is not None:
            return order.limit_price
        if order.symbol in self._prices:
            return self._prices[order.symbol]
        if self.config.fill_price is not None:
            return self.config.fill_price
        return order.trigger_price or DEFAULT_MARKET_PRICE

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _status_event(self, order: PaperOrder) -> Optional[BrokerEvent]:
        event_type = _EVENT_FOR_STATUS.get(order.status)
        if event_type is None:
            return None
        return BrokerEvent(
            type=event_type,
            filled_qty=order.filled_quantity,
            avg_price=order.average_fill_price or None,
            sequence_no=order.sequence_no,
            timestamp=datetime.now(timezone.utc),
            reason=order.reason,
        )

    def _publish(self, order: PaperOrder, status: str, reason: Optional[str] = None) -> None:
        order.status = status
        order.reason = reason
        order.sequence_no += 1
        event = self._status_event(order)
        if event is None or self.drop_events:
            return
        if not self._emit(order.user_id, order.native_id, event):
            logger.debug("paper broker %s: no subscriber for %s", self.broker_id, order.user_id)

    def _apply_fill(self, order: PaperOrder, qty: float, price: float) -> None:
        total = order.filled_quantity + qty
        order.average_fill_price = (
            order.average_fill_price * order.filled_quantity + price * qty
        ) / total
        order.filled_quantity = total
        signed = qty if order.side == "BUY" else -qty
        book = self._positions.setdefault(order.user_id, {})
        book[order.symbol] = book.get(order.symbol, 0.0) + signed
        self._buying_power[order.user_id] = self._account(order.user_id) - signed * price

    async def _lifecycle(self, order: PaperOrder) -> None:
        delay = self.config.fill_delay_ms / 1000.0
        await asyncio.sleep(delay)
        if order.status in PaperStatus.DONE:
            return
        self._publish(order, PaperStatus.ACKNOWLEDGED)
        if not self.config.auto_fill:
            return
        if order.order_type != "MARKET" and order.limit_price is None:
            # stop orders rest until triggered by fill()
            return
        slices = self.config.partial_fills
        base = order.quantity / slices
        for i in range(slices):
            await asyncio.sleep(delay)
            if order.status in PaperStatus.DONE:
                return
            qty = order.quantity - order.filled_quantity if i == slices - 1 else base
            self.fill(order.native_id, qty)

    # ------------------------------------------------------------------
    # manual control (auto_fill=False)
    # ------------------------------------------------------------------
    def fill(self, native_id: str, qty: float, price: Optional[float] = None) -> None:
        """Execute ``qty`` against the order and publish the fill event."""
        order = self._orders[native_id]
        if order.status in PaperStatus.DONE:
            raise ValueError(f"order {native_id} is {order.status}")
        qty = min(qty, order.quantity - order.filled_quantity)
        self._apply_fill(order, qty, price if price is not None else self._market_price(order))
        if order.quantity - order.filled_quantity <= 1e-9:
            self._publish(order, PaperStatus.FILLED)
        else:
            self._publish(order, PaperStatus.PARTIALLY_FILLED)

    def expire(self, native_id: str) -> None:
        self._publish(self._orders[native_id], PaperStatus.EXPIRED, reason="time in force elapsed")

    def emit(self, native_id: str, event: BrokerEvent) -> None:
        """Deliver an arbitrary event (reordering and duplicate scenarios)."""
        order = self._orders[native_id]
        self._emit(order.user_id, native_id, event)

    # ------------------------------------------------------------------
    # broker API
    # ------------------------------------------------------------------
    async def authenticate(self, user_id: str, secret: SecretStr) -> AuthGrant:
        self._count("authenticate")
        self._check_available()
        if not secret.get_secret_value():
            raise BrokerAuthError("empty credentials", self.broker_id)
        self._account(user_id)
        expires_at = None
        if self.session_ttl_s:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.session_ttl_s)
        return AuthGrant(
            access_token=SecretStr(f"paper-{uuid4().hex}"),
            expires_at=expires_at,
            account_id=f"{self.broker_id}:{user_id}",
        )

    async def heartbeat(self, ctx: SessionContext) -> AccountSnapshot:
        self._count("heartbeat")
        self._check_available()
        if not self.heartbeat_ok:
            raise BrokerUnavailable("heartbeat failed", self.broker_id)
        return AccountSnapshot(
            buying_power=self._account(ctx.user_id),
            server_time=datetime.now(timezone.utc),
        )

    async def submit(self, ctx: SessionContext, payload: Dict) -> str:
        self._count("submit")
        if self.submit_delay_s:
            await asyncio.sleep(self.submit_delay_s)
        self._check_available()
        if self._submit_faults:
            raise self._submit_faults.popleft()

        symbol = payload["symbol"]
        if symbol in self.config.reject_symbols:
            raise BrokerRejection(f"symbol {symbol} not tradable", self.broker_id)

        client_order_id = payload["client_order_id"]
        if client_order_id in self._by_client_id:
            raise BrokerRejection(f"duplicate client_order_id {client_order_id}", self.broker_id)

        order = PaperOrder(
            native_id=f"{self.broker_id.upper()}-{next(self._ids):06d}",
            user_id=ctx.user_id,
            client_order_id=client_order_id,
            symbol=symbol,
            side=payload["side"],
            quantity=float(payload["quantity"]),
            order_type=payload["order_type"],
            time_in_force=payload["time_in_force"],
            limit_price=payload.get("limit_price"),
            trigger_price=payload.get("trigger_price"),
        )
        if order.side == "BUY":
            notional = order.quantity * self._market_price(order)
            if notional > self._account(ctx.user_id):
                raise BrokerRejection("insufficient buying power", self.broker_id)

        self._orders[order.native_id] = order
        self._by_client_id[client_order_id] = order.native_id
        self._spawn(self._lifecycle(order))
        logger.debug("paper broker %s accepted %s as %s", self.broker_id, client_order_id, order.native_id)

        if self._accept_then_timeout:
            self._accept_then_timeout -= 1
            raise BrokerTimeout("submit response lost", self.broker_id)
        return order.native_id

    async def modify(self, ctx: SessionContext, native_id: str, payload: Dict) -> None:
        self._count("modify")
        self._check_available()
        order = self._orders.get(native_id)
        if order is None:
            raise BrokerOrderNotFound(native_id, self.broker_id)
        if order.status in PaperStatus.DONE:
            raise BrokerRejection(f"order is {order.status.lower()}", self.broker_id)
        quantity = payload.get("quantity")
        if quantity is not None and quantity < order.filled_quantity:
            raise BrokerRejection("quantity below filled quantity", self.broker_id)
        if quantity is not None:
            order.quantity = float(quantity)
        if "limit_price" in payload:
            order.limit_price = payload["limit_price"]
        if "trigger_price" in payload:
            order.trigger_price = payload["trigger_price"]
        if "time_in_force" in payload:
            order.time_in_force = payload["time_in_force"]

    async def cancel(self, ctx: SessionContext, native_id: str) -> None:
        self._count("cancel")
        self._check_available()
        if self._cancel_fault is not None:
            error, self._cancel_fault = self._cancel_fault, None
            raise error
        order = self._orders.get(native_id)
        if order is None:
            raise BrokerOrderNotFound(native_id, self.broker_id)
        if order.status == PaperStatus.CANCELLED:
            return
        if order.status in PaperStatus.DONE:
            raise BrokerRejection(f"too late to cancel: order is {order.status.lower()}", self.broker_id)
        self._publish(order, PaperStatus.CANCELLED, reason="cancelled by user")

    async def get_order_status(self, ctx: SessionContext, native_id: str) -> BrokerOrderStatus:
        self._count("get_order_status")
        self._check_available()
        if self._status_faults:
            self._status_faults -= 1
            raise BrokerTimeout("status query timed out", self.broker_id)
        order = self._orders.get(native_id)
        if order is None:
            raise BrokerOrderNotFound(native_id, self.broker_id)
        return BrokerOrderStatus(
            native_id=native_id,
            client_order_id=order.client_order_id,
            event=self._status_event(order),
            symbol=order.symbol,
        )

    async def find_order(self, ctx: SessionContext, client_order_id: str) -> Optional[BrokerOrderStatus]:
        self._count("find_order")
        self._check_available()
        if self._status_faults:
            self._status_faults -= 1
            raise BrokerTimeout("status query timed out", self.broker_id)
        native_id = self._by_client_id.get(client_order_id)
        if native_id is None:
            return None
        return await self.get_order_status(ctx, native_id)

    async def get_positions(self, ctx: SessionContext) -> Dict[str, float]:
        self._count("get_positions")
        self._check_available()
        return dict(self._positions.get(ctx.user_id, {}))

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
