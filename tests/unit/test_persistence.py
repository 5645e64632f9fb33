"""Unit tests for the SQLAlchemy order store."""

from datetime import datetime, timedelta, timezone

import pytest

from contracts.validators import BrokerEvent, BrokerEventType
from order_plane.persistence import OrderStore
from shared.errors import PersistenceError
from shared.models.order import Fill, Order, OrderSide, OrderState, OrderType
from shared.models.position import PositionSnapshot, SubPositionSnapshot
from shared.models.routing import CandidateScore, RoutingDecision, RoutingOutcome

USER = "user-1"
T0 = datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)


def make_order(order_id="OP1", **overrides):
    fields = dict(
        order_id=order_id, user_id=USER, symbol="AAPL", side=OrderSide.BUY, quantity=100.0,
        order_type=OrderType.LIMIT, limit_price=150.0, client_order_id=f"c-{order_id}",
        preferred_brokers=("paper-a",), created_at=T0, updated_at=T0,
    )
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
def store():
    store = OrderStore()
    yield store
    store.close()


@pytest.mark.unit
class TestOrderRows:
    def test_round_trip(self, store):
        order = make_order(broker_id="paper-a", broker_order_id="PA-1", state=OrderState.ACKNOWLEDGED,
                           last_event_at=T0 + timedelta(seconds=1), needs_reconciliation=True)
        store.save_order(order)
        loaded = store.load_order("OP1")
        assert loaded.state == OrderState.ACKNOWLEDGED
        assert loaded.preferred_brokers == ("paper-a",)
        assert loaded.broker_order_id == "PA-1"
        assert loaded.needs_reconciliation
        assert loaded.created_at == T0
        assert loaded.created_at.tzinfo is not None
        assert loaded.last_event_at == T0 + timedelta(seconds=1)

    def test_missing_order(self, store):
        assert store.load_order("nope") is None

    def test_save_is_upsert(self, store):
        order = make_order()
        store.save_order(order)
        order.state = OrderState.CANCELLED
        store.save_order(order)
        assert store.load_order("OP1").state == OrderState.CANCELLED
        assert store.load_orders() == []
        assert [o.order_id for o in store.load_orders(open_only=False)] == ["OP1"]

    def test_open_orders_in_creation_order(self, store):
        store.save_order(make_order("OP2", created_at=T0 + timedelta(seconds=5)))
        store.save_order(make_order("OP1"))
        store.save_order(make_order("OP3", state=OrderState.FILLED))
        assert [o.order_id for o in store.load_orders()] == ["OP1", "OP2"]

    def test_client_index(self, store):
        store.save_order(make_order("OP1"))
        store.save_order(make_order("OP2", client_order_id=None))
        assert store.load_client_index() == {(USER, "c-OP1"): "OP1"}


@pytest.mark.unit
class TestEventsAndFills:
    def test_event_with_fill_in_one_transaction(self, store):
        order = make_order(broker_id="paper-a", state=OrderState.PARTIALLY_FILLED,
                           filled_quantity=40.0, average_fill_price=150.0)
        order.applied_event_keys.add("seq:1")
        event = BrokerEvent(type=BrokerEventType.PARTIAL_FILL, filled_qty=40.0, avg_price=150.0,
                            sequence_no=1, timestamp=T0)
        fill = Fill(order_id="OP1", user_id=USER, broker_id="paper-a", symbol="AAPL",
                    side=OrderSide.BUY, quantity=40.0, price=150.0, sequence_no=1, timestamp=T0)
        store.record_event(order, "paper-a", event, "seq:1", fill=fill)

        events = store.load_events("OP1")
        assert events == [{
            "dedup_key": "seq:1", "broker_id": "paper-a", "type": "PARTIAL_FILL",
            "filled_qty": 40.0, "avg_price": 150.0, "sequence_no": 1,
            "state_after": "PARTIALLY_FILLED",
        }]
        assert store.load_order("OP1").applied_event_keys == {"seq:1"}
        fills = store.load_fills(USER)
        assert fills == [fill]
        assert store.load_fills("someone-else") == []

    def test_position_rows(self, store):
        store.save_position(PositionSnapshot(
            user_id=USER, symbol="AAPL", net_quantity=40.0, average_cost=150.0, realized_pnl=0.0,
            unrealized_pnl=0.0, sub_positions={
                "paper-a": SubPositionSnapshot(quantity=40.0, average_cost=150.0, realized_pnl=0.0),
            }, updated_at=T0,
        ))
        rows = store.load_position_rows(USER)
        assert rows[0]["net_quantity"] == 40.0
        assert rows[0]["sub_positions"]["paper-a"]["quantity"] == 40.0


@pytest.mark.unit
class TestRoutingDecisions:
    def test_decisions_in_attempt_order(self, store):
        for attempt, broker in ((2, "paper-b"), (1, "paper-a")):
            store.save_routing_decision(RoutingDecision(
                decision_id=f"d{attempt}", order_id="OP1", user_id=USER, symbol="AAPL",
                attempt=attempt, timestamp=T0, inputs={"quantity": 100.0},
                candidates=(CandidateScore(broker_id=broker, eligible=True, score=0.7),),
                chosen_broker=broker, outcome=RoutingOutcome.ROUTED,
            ))
        decisions = store.routing_decisions("OP1")
        assert [d.chosen_broker for d in decisions] == ["paper-a", "paper-b"]
        assert decisions[0].candidates[0].score == 0.7


@pytest.mark.unit
class TestStoreFailures:
    def test_ping(self, store):
        store.ping()

    def test_unreachable_database(self, tmp_path):
        with pytest.raises(PersistenceError):
            OrderStore(f"sqlite:///{tmp_path}/missing-dir/orders.db")

    def test_file_store_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path}/orders.db"
        first = OrderStore(url)
        first.save_order(make_order())
        first.close()
        second = OrderStore(url)
        assert second.load_order("OP1").limit_price == 150.0
        second.close()
