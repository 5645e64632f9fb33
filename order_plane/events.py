"""
Outbound event bus.

Consumers (notifications, dashboards, P&L services) subscribe to order
state transitions, position updates and broker health changes. Every
subscriber owns a bounded asyncio queue; publishing never blocks the
engine: when a queue is full the oldest event is dropped and counted.
"""

import asyncio
from datetime import datetime
from typing import List, Optional, Union

from pydantic import Field

from shared.logging import StructuredLogger, get_correlation_id
from shared.models.base import BaseModel, utc_now
from shared.models.order import OrderSnapshot, OrderState
from shared.models.position import PositionSnapshot
from shared.models.session import HealthStatus

logger = StructuredLogger(__name__)


class OrderStateChanged(BaseModel):
    """An order was created, changed state or was modified."""
    order: OrderSnapshot
    previous_state: Optional[OrderState] = None
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class PositionUpdated(BaseModel):
    position: PositionSnapshot
    order_id: Optional[str] = None
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class BrokerHealthChanged(BaseModel):
    user_id: str
    broker_id: str
    previous: HealthStatus
    current: HealthStatus
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


OrderPlaneEvent = Union[OrderStateChanged, PositionUpdated, BrokerHealthChanged]


class Subscription:
    """One consumer's bounded view of the event stream."""

    def __init__(self, bus: "OrderEventBus", maxsize: int):
        self._bus = bus
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: OrderPlaneEvent) -> None:
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()
                self.dropped += 1

    async def get(self, timeout: Optional[float] = None) -> OrderPlaneEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> List[OrderPlaneEvent]:
        """Everything queued right now, without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)


class OrderEventBus:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscriptions: List[Subscription] = []
        self.published = 0

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, maxsize or self.queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: OrderPlaneEvent) -> None:
        if event.correlation_id is None:
            correlation_id = get_correlation_id()
            if correlation_id is not None:
                event = event.model_copy(update={"correlation_id": correlation_id})
        self.published += 1
        for subscription in list(self._subscriptions):
            before = subscription.dropped
            subscription.offer(event)
            if subscription.dropped != before:
                logger.warning("event_subscriber_overflow", dropped=subscription.dropped,
                               event_type=type(event).__name__)
