"""
End-to-End Tests: Order Scenarios

Drives the whole order plane (sessions, routing, paper brokers,
reconciliation, positions, persistence) through user-level flows:

1. Market order filled in slices by the broker
2. Limit order cancelled before any fill
3. Duplicate partial fill delivered twice
4. Broker failover before acknowledgement
5. Cancel racing a complete fill
"""

import pytest

from contracts.validators import BrokerEvent, BrokerEventType
from order_plane.events import OrderStateChanged
from order_plane.reconciliation.engine import EventOutcome
from shared.errors import ErrorCode
from shared.models.order import OrderState
from shared.models.session import HealthStatus

USER = "user-1"


def auto_filling(broker_id, **commission):
    return {
        "broker_id": broker_id,
        "commission": commission or {"per_order": 1.0},
        "paper": {"auto_fill": True, "fill_delay_ms": 1, "partial_fills": 2},
        "rate_limit": {"capacity": 1000, "refill_per_second": 1000},
    }


def is_terminal(service, order_id):
    return service.get_order(order_id).value.is_terminal


# =============================================================================
# Scenario 1: market order
# =============================================================================

class TestMarketOrderFlow:
    """A market BUY fills through the whole pipeline."""

    @pytest.mark.asyncio
    async def test_market_buy_fills_and_books_position(self, make_service, make_config, wait_until):
        config = make_config(brokers=[auto_filling("paper-a")])
        async with make_service(config) as service:
            await service.connect_broker(USER, "paper-a")
            service.adapters["paper-a"].set_price("AAPL", 150.0)
            subscription = service.subscribe()

            result = await service.submit_order(
                {"user_id": USER, "symbol": "AAPL", "side": "BUY", "quantity": 100})
            assert result.ok
            order_id = result.value
            assert (await service.wait_for_submission(order_id, timeout=2.0)).ok
            await wait_until(lambda: is_terminal(service, order_id))
            await service.drain()

            order = service.get_order(order_id).value
            assert order.state == OrderState.FILLED
            assert order.filled_quantity == 100
            assert order.average_fill_price == pytest.approx(150.0)
            assert order.broker_id == "paper-a"

            states = [e.order.state for e in subscription.drain() if isinstance(e, OrderStateChanged)]
            assert states[0] == OrderState.PENDING_SUBMIT
            assert states[-1] == OrderState.FILLED
            assert OrderState.ACKNOWLEDGED in states

            position = service.get_positions(USER)[0]
            assert position.net_quantity == 100
            assert position.sub_positions["paper-a"].quantity == 100

            fills = service.store.load_fills(USER)
            assert len(fills) == 2
            assert sum(f.quantity for f in fills) == pytest.approx(100.0)
            assert service.store.load_order(order_id).state == OrderState.FILLED


# =============================================================================
# Scenario 2: limit then cancel
# =============================================================================

class TestLimitCancelFlow:
    @pytest.mark.asyncio
    async def test_limit_cancelled_before_fill(self, make_service, place_order):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            order_id = await place_order(service, order_type="LIMIT", limit_price=140.0)

            result = await service.cancel_order(order_id)
            assert result.ok, result.error
            assert result.value.state == OrderState.CANCELLED
            assert service.get_order(order_id).value.filled_quantity == 0
            assert service.get_positions(USER) == []

            again = await service.cancel_order(order_id)
            assert again.code == ErrorCode.ALREADY_TERMINAL


# =============================================================================
# Scenario 3: duplicate partial fill
# =============================================================================

class TestDuplicateDelivery:
    @pytest.mark.asyncio
    async def test_duplicate_partial_counted_once(self, make_service, place_order):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            order_id = await place_order(service)
            native = service.get_order(order_id).value.broker_order_id

            partial = {"type": "PARTIAL_FILL", "filled_qty": 40, "avg_price": 100.0, "sequence_no": 7}
            first = await service.apply_broker_event("paper-a", native, partial)
            second = await service.apply_broker_event("paper-a", native, partial)
            assert first.value == EventOutcome.APPLIED
            assert second.value == EventOutcome.DUPLICATE

            order = service.get_order(order_id).value
            assert order.state == OrderState.PARTIALLY_FILLED
            assert order.filled_quantity == 40
            assert service.get_positions(USER)[0].net_quantity == 40
            assert len(service.store.load_fills(USER)) == 1

    @pytest.mark.asyncio
    async def test_redelivery_through_broker_stream(self, make_service, place_order, wait_until):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            order_id = await place_order(service)
            broker = service.adapters["paper-a"]
            native = service.get_order(order_id).value.broker_order_id
            event = BrokerEvent(type=BrokerEventType.PARTIAL_FILL, filled_qty=40, avg_price=100.0,
                                sequence_no=9)
            broker.emit(native, event)
            broker.emit(native, event)
            await service.drain()
            assert service.get_order(order_id).value.filled_quantity == 40
            assert service.metrics.sample(
                "order_plane_broker_events_total", broker_id="paper-a", outcome="DUPLICATE") == 1.0


# =============================================================================
# Scenario 4: failover
# =============================================================================

class TestBrokerFailover:
    @pytest.mark.asyncio
    async def test_down_broker_excluded_from_routing(self, make_service, wait_until):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            await service.connect_broker(USER, "paper-b")
            service.health.mark_down(USER, "paper-a", "connection lost")

            result = await service.submit_order(
                {"user_id": USER, "symbol": "AAPL", "side": "BUY", "quantity": 100})
            assert (await service.wait_for_submission(result.value, timeout=2.0)).ok
            await wait_until(lambda: service.get_order(result.value).value.state == OrderState.ACKNOWLEDGED)

            assert service.get_order(result.value).value.broker_id == "paper-b"
            decision = service.routing_decisions(result.value)[0]
            assert decision.chosen_broker == "paper-b"
            assert decision.excluded == {"paper-a": "health_down"}

    @pytest.mark.asyncio
    async def test_broker_goes_down_before_ack(self, make_service, make_config, wait_until):
        config = make_config(health={"degraded_after_failures": 1, "down_after_failures": 2})
        async with make_service(config) as service:
            await service.connect_broker(USER, "paper-a")
            await service.connect_broker(USER, "paper-b")
            service.adapters["paper-a"].fail_next_submits(10)

            result = await service.submit_order(
                {"user_id": USER, "symbol": "AAPL", "side": "BUY", "quantity": 100})
            assert (await service.wait_for_submission(result.value, timeout=2.0)).ok
            await wait_until(lambda: service.get_order(result.value).value.state == OrderState.ACKNOWLEDGED)

            assert service.health.status(USER, "paper-a") == HealthStatus.DOWN
            order = service.get_order(result.value).value
            assert order.broker_id == "paper-b"
            trail = service.routing_decisions(result.value)
            assert [d.chosen_broker for d in trail] == ["paper-a", "paper-b"]
            assert "paper-a" in trail[-1].excluded


# =============================================================================
# Scenario 5: cancel racing a fill
# =============================================================================

class TestCancelFillRace:
    @pytest.mark.asyncio
    async def test_fill_wins_over_cancel(self, make_service, place_order):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            order_id = await place_order(service)
            broker = service.adapters["paper-a"]
            native = service.get_order(order_id).value.broker_order_id

            # the fill happens at the broker but its notification is still in flight
            broker.drop_events = True
            broker.fill(native, 100, price=101.0)

            result = await service.cancel_order(order_id)
            assert result.code == ErrorCode.ALREADY_TERMINAL
            order = service.get_order(order_id).value
            assert order.state == OrderState.FILLED
            assert order.filled_quantity == 100
            assert service.get_positions(USER)[0].net_quantity == 100

    @pytest.mark.asyncio
    async def test_cancel_after_fill_applied(self, make_service, place_order):
        async with make_service() as service:
            await service.connect_broker(USER, "paper-a")
            order_id = await place_order(service)
            native = service.get_order(order_id).value.broker_order_id
            await service.apply_broker_event(
                "paper-a", native, {"type": "FILL", "filled_qty": 100, "avg_price": 100.0})

            result = await service.cancel_order(order_id)
            assert result.code == ErrorCode.ALREADY_TERMINAL
            assert service.get_order(order_id).value.state == OrderState.FILLED
