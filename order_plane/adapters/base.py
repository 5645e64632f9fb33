"""
Broker adapter interface.

An adapter owns one broker's wire protocol and authentication handshake.
It knows nothing about routing, retries or order state: every call either
returns or raises a shared.errors.BrokerError subclass, and asynchronous
broker notifications are pushed to the per-user event sink registered by
the session manager.

    submit(ctx, payload)          -> broker-native order id
    modify(ctx, native_id, payload)
    cancel(ctx, native_id)        (BrokerRejection when too late)
    get_order_status(ctx, native_id) -> BrokerOrderStatus
    find_order(ctx, client_order_id) -> BrokerOrderStatus | None
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Optional

from pydantic import SecretStr

from contracts.validators import BrokerEvent, BrokerOrderStatus
from shared.config import CommissionConfig
from shared.models.order import Order, OrderType, TimeInForce
from shared.models.session import AccountSnapshot, AuthGrant, SessionContext

#: (broker-native order id, normalized event)
EventSink = Callable[[str, BrokerEvent], None]


@dataclass(frozen=True)
class BrokerCapabilities:
    """What one broker can represent, plus its commission schedule."""
    broker_id: str
    order_types: FrozenSet[OrderType]
    time_in_force: FrozenSet[TimeInForce]
    supports_modify: bool = True
    symbols: Optional[FrozenSet[str]] = None
    commission: CommissionConfig = field(default_factory=CommissionConfig)

    def unsupported_reason(self, order: Order) -> Optional[str]:
        """Why this broker cannot take the order, or None."""
        if order.order_type not in self.order_types:
            return f"order_type {order.order_type.value} not supported"
        if order.time_in_force not in self.time_in_force:
            return f"time_in_force {order.time_in_force.value} not supported"
        if self.symbols is not None and order.symbol not in self.symbols:
            return f"symbol {order.symbol} not supported"
        return None

    def estimate_cost(self, notional: float) -> float:
        return self.commission.estimate(notional)


class BrokerAdapter(ABC):
    """Base class for broker adapters."""

    #: False when order updates only come from status polls (and webhooks
    #: handed in by the host); the engine then polls live orders itself.
    pushes_events = True

    def __init__(self, broker_id: str):
        self.broker_id = broker_id
        self._sinks: Dict[str, EventSink] = {}

    # ------------------------------------------------------------------
    # event delivery
    # ------------------------------------------------------------------
    def subscribe(self, user_id: str, sink: EventSink) -> None:
        """Route this user's asynchronous broker notifications to ``sink``."""
        self._sinks[user_id] = sink

    def unsubscribe(self, user_id: str) -> None:
        self._sinks.pop(user_id, None)

    def _emit(self, user_id: str, native_id: str, event: BrokerEvent) -> bool:
        sink = self._sinks.get(user_id)
        if sink is None:
            return False
        sink(native_id, event)
        return True

    # ------------------------------------------------------------------
    # broker API
    # ------------------------------------------------------------------
    @abstractmethod
    async def authenticate(self, user_id: str, secret: SecretStr) -> AuthGrant:
        ...

    async def refresh(self, ctx: SessionContext, secret: SecretStr) -> AuthGrant:
        """Refresh an access token; brokers without refresh re-authenticate."""
        return await self.authenticate(ctx.user_id, secret)

    @abstractmethod
    async def heartbeat(self, ctx: SessionContext) -> AccountSnapshot:
        ...

    @abstractmethod
    async def submit(self, ctx: SessionContext, payload: Dict) -> str:
        ...

    @abstractmethod
    async def modify(self, ctx: SessionContext, native_id: str, payload: Dict) -> None:
        ...

    @abstractmethod
    async def cancel(self, ctx: SessionContext, native_id: str) -> None:
        ...

    @abstractmethod
    async def get_order_status(self, ctx: SessionContext, native_id: str) -> BrokerOrderStatus:
        ...

    @abstractmethod
    async def find_order(self, ctx: SessionContext, client_order_id: str) -> Optional[BrokerOrderStatus]:
        ...

    @abstractmethod
    async def get_positions(self, ctx: SessionContext) -> Dict[str, float]:
        ...

    async def close(self) -> None:
        """Release connections and background tasks."""
