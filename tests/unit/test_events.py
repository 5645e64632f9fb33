"""Unit tests for the outbound event bus."""

import asyncio

import pytest

from order_plane.events import BrokerHealthChanged, OrderEventBus, OrderStateChanged, PositionUpdated
from shared.logging import CorrelationContext
from shared.models.order import OrderState
from shared.models.session import HealthStatus

USER = "user-1"


def health_event(current=HealthStatus.DOWN, correlation_id=None):
    return BrokerHealthChanged(user_id=USER, broker_id="paper-a", previous=HealthStatus.HEALTHY,
                               current=current, correlation_id=correlation_id)


@pytest.mark.unit
class TestOrderEventBus:
    """Bounded per-subscriber queues."""

    def test_every_subscriber_gets_every_event(self):
        bus = OrderEventBus()
        first, second = bus.subscribe(), bus.subscribe()
        bus.publish(health_event())
        assert len(first.drain()) == 1
        assert len(second.drain()) == 1
        assert bus.published == 1

    def test_full_queue_drops_oldest(self):
        bus = OrderEventBus()
        subscription = bus.subscribe(maxsize=2)
        for status in (HealthStatus.DEGRADED, HealthStatus.DOWN, HealthStatus.HEALTHY):
            bus.publish(health_event(status))
        events = subscription.drain()
        assert [e.current for e in events] == [HealthStatus.DOWN, HealthStatus.HEALTHY]
        assert subscription.dropped == 1

    def test_slow_subscriber_does_not_affect_others(self):
        bus = OrderEventBus()
        slow = bus.subscribe(maxsize=1)
        fast = bus.subscribe(maxsize=10)
        for _ in range(5):
            bus.publish(health_event())
        assert slow.dropped == 4
        assert len(fast.drain()) == 5

    def test_closed_subscription_stops_receiving(self):
        bus = OrderEventBus()
        subscription = bus.subscribe()
        subscription.close()
        bus.publish(health_event())
        assert subscription.drain() == []

    def test_correlation_id_from_context(self):
        bus = OrderEventBus()
        subscription = bus.subscribe()
        with CorrelationContext("corr-123"):
            bus.publish(health_event())
        bus.publish(health_event(correlation_id="explicit"))
        assert [e.correlation_id for e in subscription.drain()] == ["corr-123", "explicit"]

    @pytest.mark.asyncio
    async def test_get_with_timeout(self):
        bus = OrderEventBus()
        subscription = bus.subscribe()
        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)
        bus.publish(health_event())
        assert (await subscription.get(timeout=1.0)).current == HealthStatus.DOWN


@pytest.mark.unit
class TestServiceEvents:
    @pytest.mark.asyncio
    async def test_order_lifecycle_stream(self, make_service, place_order):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            subscription = service.subscribe()
            order_id = await place_order(service, correlation_id="flow-1")
            service.adapters["paper-a"].fill(service.get_order(order_id).value.broker_order_id, 100)
            await service.drain()

            events = subscription.drain()
            states = [e.order.state for e in events if isinstance(e, OrderStateChanged)]
            assert states == [
                OrderState.PENDING_SUBMIT, OrderState.SUBMITTED,
                OrderState.ACKNOWLEDGED, OrderState.FILLED,
            ]
            positions = [e for e in events if isinstance(e, PositionUpdated)]
            assert len(positions) == 1
            assert positions[0].order_id == order_id
            assert positions[0].position.net_quantity == 100
            assert {e.correlation_id for e in events} == {"flow-1"}
