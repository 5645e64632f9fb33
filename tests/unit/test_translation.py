"""
Unit tests for the translation layer.

Tests:
- InstrumentRegistry: tick size, lot size, native symbols
- OrderTranslator: constraints, broker support, payloads
- Dialects: canonical, alpaca and kite encoders/decoders
"""

import pytest

from contracts.validators import BrokerEventType
from order_plane.translation.dialects import AlpacaDialect, Dialect, KiteDialect, get_dialect
from order_plane.translation.instruments import InstrumentRegistry, is_multiple
from order_plane.translation.translator import OrderTranslator
from shared.config import EngineConfig, InstrumentConfig
from shared.errors import InvalidOrderParameters, UnsupportedOrderType, ValidationError
from shared.models.order import Order, OrderSide, OrderType, TimeInForce


def make_order(**overrides):
    data = dict(order_id="OP0123456789abcdef01", user_id="user-1", symbol="INFY",
                side=OrderSide.BUY, quantity=10.0, order_type=OrderType.LIMIT, limit_price=1520.5)
    data.update(overrides)
    return Order(**data)


@pytest.fixture
def translator():
    config = EngineConfig.model_validate({
        "brokers": [
            {"broker_id": "alpaca", "adapter": "rest", "dialect": "alpaca", "symbols": ["AAPL"]},
            {"broker_id": "kite", "adapter": "rest", "dialect": "kite",
             "supported_time_in_force": ["DAY", "IOC", "GTC"], "symbols": ["INFY"]},
            {"broker_id": "paper", "supports_modify": False},
        ],
        "instruments": [
            {"symbol": "AAPL", "tick_size": 0.01, "lot_size": 1},
            {"symbol": "INFY", "tick_size": 0.05, "lot_size": 1, "broker_symbols": {"kite": "INFY-EQ"}},
            {"symbol": "NIFTYFUT", "tick_size": 0.05, "lot_size": 50},
        ],
    })
    return OrderTranslator.from_config(config)


# ============================================================================
# Instruments
# ============================================================================

@pytest.mark.unit
class TestInstrumentRegistry:
    """Tick and lot constraints."""

    def test_float_multiples(self):
        assert is_multiple(0.15, 0.05)
        assert is_multiple(1520.55, 0.05)
        assert not is_multiple(1520.52, 0.05)

    def test_unknown_symbol(self):
        registry = InstrumentRegistry([InstrumentConfig(symbol="AAPL")])
        with pytest.raises(ValidationError, match="unknown instrument"):
            registry.get("MSFT")

    def test_tick_violation_names_field(self):
        registry = InstrumentRegistry([InstrumentConfig(symbol="INFY", tick_size=0.05)])
        with pytest.raises(InvalidOrderParameters) as excinfo:
            registry.check_price("INFY", "limit_price", 1520.52)
        assert excinfo.value.constraint == "tick_size"
        assert excinfo.value.field == "limit_price"

    def test_lot_violation(self):
        registry = InstrumentRegistry([InstrumentConfig(symbol="NIFTYFUT", lot_size=50)])
        registry.check_quantity("NIFTYFUT", 100)
        with pytest.raises(InvalidOrderParameters) as excinfo:
            registry.check_quantity("NIFTYFUT", 75)
        assert excinfo.value.constraint == "lot_size"

    def test_native_symbol_falls_back_to_canonical(self):
        registry = InstrumentRegistry([
            InstrumentConfig(symbol="INFY", broker_symbols={"kite": "INFY-EQ"}),
        ])
        assert registry.native_symbol("INFY", "kite") == "INFY-EQ"
        assert registry.native_symbol("INFY", "alpaca") == "INFY"


# ============================================================================
# Translator
# ============================================================================

@pytest.mark.unit
class TestOrderTranslator:
    def test_validate_constraints_accepts_valid_order(self, translator):
        translator.validate_constraints(make_order())

    def test_validate_constraints_checks_every_price(self, translator):
        order = make_order(order_type=OrderType.STOP_LIMIT, trigger_price=1500.02)
        with pytest.raises(InvalidOrderParameters) as excinfo:
            translator.validate_constraints(order)
        assert excinfo.value.field == "trigger_price"

    def test_validate_changes_quantity_floor(self, translator):
        order = make_order(filled_quantity=6.0)
        with pytest.raises(InvalidOrderParameters) as excinfo:
            translator.validate_changes(order, {"quantity": 5})
        assert excinfo.value.constraint == "min_quantity"
        translator.validate_changes(order, {"quantity": 8, "limit_price": 1521.0})

    def test_capabilities_intersect_dialect(self, translator):
        # GTC configured for kite but the kite dialect cannot express it
        caps = translator.capabilities("kite")
        assert TimeInForce.GTC not in caps.time_in_force
        assert OrderType.BRACKET not in caps.order_types

    def test_check_support_symbol(self, translator):
        with pytest.raises(UnsupportedOrderType, match="symbol INFY not supported"):
            translator.check_support("alpaca", make_order())

    def test_supporting_brokers(self, translator):
        assert translator.supporting_brokers(make_order()) == ["kite", "paper"]
        bracket = make_order(symbol="AAPL", order_type=OrderType.BRACKET, limit_price=None,
                             target_price=110.0, stop_price=95.0)
        assert translator.supporting_brokers(bracket) == ["alpaca", "paper"]

    def test_unknown_broker(self, translator):
        with pytest.raises(UnsupportedOrderType, match="unknown broker"):
            translator.capabilities("nope")

    def test_translate_uses_native_symbol(self, translator):
        payload = translator.translate(make_order(), "kite")
        assert payload["tradingsymbol"] == "INFY-EQ"
        assert payload["price"] == 1520.5

    def test_translate_modify_unsupported(self, translator):
        with pytest.raises(UnsupportedOrderType, match="modification not supported"):
            translator.translate_modify(make_order(), {"limit_price": 1521.0}, "paper")


# ============================================================================
# Dialects
# ============================================================================

@pytest.mark.unit
class TestCanonicalDialect:
    def test_encode_order(self):
        payload = Dialect().encode_order(make_order(), "INFY")
        assert payload == {
            "client_order_id": "OP0123456789abcdef01",
            "symbol": "INFY",
            "side": "BUY",
            "quantity": 10.0,
            "order_type": "LIMIT",
            "time_in_force": "DAY",
            "limit_price": 1520.5,
        }

    def test_decode_status(self):
        status = Dialect().decode_status({
            "order_id": "N1", "status": "PARTIALLY_FILLED", "filled_qty": 4,
            "avg_price": 10.5, "sequence_no": 3, "client_order_id": "OP1",
        })
        assert status.native_id == "N1"
        assert status.event.type == BrokerEventType.PARTIAL_FILL
        assert status.event.filled_qty == 4
        assert status.event.sequence_no == 3

    def test_submitted_status_has_no_event(self):
        assert Dialect().decode_status({"order_id": "N1", "status": "SUBMITTED"}).event is None

    def test_unknown_status(self):
        with pytest.raises(ValueError, match="unknown canonical order status"):
            Dialect().decode_status({"order_id": "N1", "status": "WEIRD"})

    def test_get_dialect(self):
        assert isinstance(get_dialect("kite"), KiteDialect)
        with pytest.raises(ValueError):
            get_dialect("fix")


@pytest.mark.unit
class TestAlpacaDialect:
    def test_encode_bracket(self):
        order = make_order(symbol="AAPL", order_type=OrderType.BRACKET, limit_price=100.0,
                           target_price=110.0, stop_price=95.0, time_in_force=TimeInForce.GTC)
        payload = AlpacaDialect().encode_order(order, "AAPL")
        assert payload["order_class"] == "bracket"
        assert payload["type"] == "limit"
        assert payload["take_profit"] == {"limit_price": "110.0"}
        assert payload["stop_loss"] == {"stop_price": "95.0"}
        assert payload["time_in_force"] == "gtc"
        assert payload["side"] == "buy"

    def test_encode_stop_uses_stop_price(self):
        order = make_order(symbol="AAPL", order_type=OrderType.STOP, limit_price=None, trigger_price=140.0)
        payload = AlpacaDialect().encode_order(order, "AAPL")
        assert payload["type"] == "stop"
        assert payload["stop_price"] == "140.0"
        assert "limit_price" not in payload

    def test_encode_modify(self):
        payload = AlpacaDialect().encode_modify(make_order(), {"quantity": 20, "time_in_force": TimeInForce.IOC})
        assert payload == {"qty": "20", "time_in_force": "ioc"}

    def test_decode_status(self):
        status = AlpacaDialect().decode_status({
            "id": "a-1", "client_order_id": "OP1", "status": "filled",
            "filled_qty": "10", "filled_avg_price": "101.25", "symbol": "AAPL",
        })
        assert status.native_id == "a-1"
        assert status.event.type == BrokerEventType.FILL
        assert status.event.avg_price == 101.25

    def test_new_with_fills_becomes_partial(self):
        status = AlpacaDialect().decode_status({
            "id": "a-1", "status": "new", "filled_qty": "3", "filled_avg_price": "100",
        })
        assert status.event.type == BrokerEventType.PARTIAL_FILL

    def test_short_positions_are_negative(self):
        positions = AlpacaDialect().decode_positions([
            {"symbol": "AAPL", "qty": "10", "side": "long"},
            {"symbol": "TSLA", "qty": "5", "side": "short"},
        ])
        assert positions == {"AAPL": 10.0, "TSLA": -5.0}


@pytest.mark.unit
class TestKiteDialect:
    def test_encode_stop_limit(self):
        order = make_order(order_type=OrderType.STOP_LIMIT, trigger_price=1500.0, limit_price=1499.0)
        payload = KiteDialect().encode_order(order, "INFY-EQ")
        assert payload["order_type"] == "SL"
        assert payload["trigger_price"] == 1500.0
        assert payload["price"] == 1499.0
        assert payload["transaction_type"] == "BUY"
        assert payload["tag"] == "OP0123456789abcdef01"[:20]

    def test_unwrap_envelope(self):
        assert KiteDialect().unwrap({"status": "success", "data": {"order_id": "K1"}}) == {"order_id": "K1"}

    def test_decode_history_takes_last_entry(self):
        status = KiteDialect().decode_status([
            {"order_id": "K1", "status": "OPEN", "filled_quantity": 0},
            {"order_id": "K1", "status": "COMPLETE", "filled_quantity": 10,
             "average_price": 1520.5, "tag": "OP1", "tradingsymbol": "INFY-EQ"},
        ])
        assert status.event.type == BrokerEventType.FILL
        assert status.client_order_id == "OP1"
        assert status.symbol == "INFY-EQ"

    def test_pending_statuses_have_no_event(self):
        assert KiteDialect().decode_status({"order_id": "K1", "status": "OPEN PENDING"}).event is None

    def test_decode_account(self):
        account = KiteDialect().decode_account({"equity": {"available": {"live_balance": 25000.0}}})
        assert account.buying_power == 25000.0

    def test_decode_positions(self):
        positions = KiteDialect().decode_positions({"net": [{"tradingsymbol": "INFY-EQ", "quantity": 5}]})
        assert positions == {"INFY-EQ": 5.0}
