"""
Broker wire dialects.

A dialect is the wire-format family a broker speaks: how a canonical order
is spelled on the wire and how the broker's status payloads map back onto
canonical BrokerEvents. The REST adapter is dialect-agnostic; it asks its
dialect for paths, payloads and decoders.

- canonical: our own field names (paper broker, internal gateways)
- alpaca:    JSON REST, lower-case enums, bracket via ``order_class``
- kite:      Zerodha style; SL / SL-M order types, ``transaction_type``,
             ``{"status": "success", "data": ...}`` envelopes, no brackets
"""

from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from contracts.validators import BrokerEvent, BrokerEventType, BrokerOrderStatus
from shared.models.base import as_utc
from shared.models.order import Order, OrderType, TimeInForce
from shared.models.session import AccountSnapshot


def _float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return as_utc(ts)


def _event(event_type: Optional[BrokerEventType], filled: float, avg_price: Optional[float],
           data: Dict[str, Any], reason: Optional[str] = None) -> Optional[BrokerEvent]:
    if event_type is None:
        return None
    # working statuses carry no fill distinction; the cumulative quantity decides
    if event_type in (BrokerEventType.PARTIAL_FILL, BrokerEventType.FILL) and filled <= 0:
        event_type = BrokerEventType.ACK
    elif event_type == BrokerEventType.ACK and filled > 0:
        event_type = BrokerEventType.PARTIAL_FILL
    return BrokerEvent(
        type=event_type,
        filled_qty=filled,
        avg_price=avg_price if avg_price else None,
        sequence_no=data.get("sequence_no"),
        timestamp=_timestamp(data.get("updated_at") or data.get("timestamp")),
        reason=reason,
        event_id=data.get("event_id"),
    )


class Dialect:
    """Canonical dialect; the base for broker-specific ones."""

    name = "canonical"
    order_types: FrozenSet[OrderType] = frozenset(OrderType)
    time_in_force: FrozenSet[TimeInForce] = frozenset(TimeInForce)
    supports_modify = True

    STATUS_MAP: Dict[str, Optional[BrokerEventType]] = {
        "SUBMITTED": None,
        "ACK": BrokerEventType.ACK,
        "ACKNOWLEDGED": BrokerEventType.ACK,
        "PARTIAL_FILL": BrokerEventType.PARTIAL_FILL,
        "PARTIALLY_FILLED": BrokerEventType.PARTIAL_FILL,
        "FILL": BrokerEventType.FILL,
        "FILLED": BrokerEventType.FILL,
        "REJECT": BrokerEventType.REJECT,
        "REJECTED": BrokerEventType.REJECT,
        "CANCEL_CONFIRM": BrokerEventType.CANCEL_CONFIRM,
        "CANCELLED": BrokerEventType.CANCEL_CONFIRM,
        "EXPIRE": BrokerEventType.EXPIRE,
        "EXPIRED": BrokerEventType.EXPIRE,
    }

    # REST layout
    token_path = "/auth/token"
    orders_path = "/orders"
    submit_path = "/orders"
    account_path = "/account"
    positions_path = "/positions"
    modify_method = "PATCH"

    def order_path(self, native_id: str) -> str:
        return f"{self.orders_path}/{native_id}"

    def status_path(self, native_id: str) -> str:
        return self.order_path(native_id)

    def lookup_params(self, client_order_id: str) -> Dict[str, str]:
        return {"client_order_id": client_order_id}

    def auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def auth_body(self, user_id: str, secret: str) -> Dict[str, Any]:
        return {"user_id": user_id, "api_key": secret}

    # ------------------------------------------------------------------
    # encoding
    # ------------------------------------------------------------------
    def encode_order(self, order: Order, native_symbol: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "client_order_id": order.order_id,
            "symbol": native_symbol,
            "side": order.side.value,
            "quantity": order.quantity,
            "order_type": order.order_type.value,
            "time_in_force": order.time_in_force.value,
        }
        for name in ("limit_price", "trigger_price", "target_price", "stop_price"):
            value = getattr(order, name)
            if value is not None:
                payload[name] = value
        return payload

    def encode_modify(self, order: Order, changes: Dict[str, Any]) -> Dict[str, Any]:
        payload = {}
        for name, value in changes.items():
            payload[name] = value.value if isinstance(value, TimeInForce) else value
        return payload

    # ------------------------------------------------------------------
    # decoding
    # ------------------------------------------------------------------
    def unwrap(self, data: Any) -> Any:
        return data

    def decode_order_id(self, data: Dict[str, Any]) -> str:
        return str(data["order_id"])

    def decode_status(self, data: Dict[str, Any]) -> BrokerOrderStatus:
        status = str(data.get("status", "")).upper()
        if status not in self.STATUS_MAP:
            raise ValueError(f"unknown {self.name} order status: {status!r}")
        event = _event(
            self.STATUS_MAP[status],
            _float(data.get("filled_qty")),
            _float(data.get("avg_price")) or None,
            data,
            reason=data.get("reason"),
        )
        return BrokerOrderStatus(
            native_id=self.decode_order_id(data),
            client_order_id=data.get("client_order_id"),
            event=event,
            symbol=data.get("symbol"),
        )

    def decode_order_list(self, data: Any) -> List[Dict[str, Any]]:
        if isinstance(data, dict):
            data = data.get("orders", [data])
        return list(data or [])

    def decode_account(self, data: Dict[str, Any]) -> AccountSnapshot:
        bp = data.get("buying_power")
        return AccountSnapshot(
            buying_power=_float(bp) if bp is not None else None,
            server_time=_timestamp(data.get("server_time")),
        )

    def decode_positions(self, data: Any) -> Dict[str, float]:
        if isinstance(data, dict):
            return {str(k): _float(v) for k, v in data.items()}
        return {str(p["symbol"]): _float(p["quantity"]) for p in data}

    def decode_error(self, data: Any) -> str:
        if isinstance(data, dict):
            return str(data.get("reason") or data.get("message") or data.get("error") or data)
        return str(data)


class AlpacaDialect(Dialect):
    name = "alpaca"
    order_types = frozenset(OrderType)
    time_in_force = frozenset(TimeInForce)

    TYPE_MAP = {
        OrderType.MARKET: "market",
        OrderType.LIMIT: "limit",
        OrderType.STOP: "stop",
        OrderType.STOP_LIMIT: "stop_limit",
    }

    STATUS_MAP = {
        "pending_new": None,
        "new": BrokerEventType.ACK,
        "accepted": BrokerEventType.ACK,
        "pending_cancel": BrokerEventType.ACK,
        "pending_replace": BrokerEventType.ACK,
        "replaced": BrokerEventType.ACK,
        "partially_filled": BrokerEventType.PARTIAL_FILL,
        "filled": BrokerEventType.FILL,
        "done_for_day": BrokerEventType.EXPIRE,
        "canceled": BrokerEventType.CANCEL_CONFIRM,
        "expired": BrokerEventType.EXPIRE,
        "rejected": BrokerEventType.REJECT,
    }

    orders_path = "/v2/orders"
    submit_path = "/v2/orders"
    account_path = "/v2/account"
    positions_path = "/v2/positions"
    modify_method = "PATCH"

    def encode_order(self, order: Order, native_symbol: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "symbol": native_symbol,
            "qty": str(order.quantity),
            "side": order.side.value.lower(),
            "time_in_force": order.time_in_force.value.lower(),
            "client_order_id": order.order_id,
        }
        if order.order_type == OrderType.BRACKET:
            payload["type"] = "limit" if order.limit_price is not None else "market"
            payload["order_class"] = "bracket"
            payload["take_profit"] = {"limit_price": str(order.target_price)}
            payload["stop_loss"] = {"stop_price": str(order.stop_price)}
        else:
            payload["type"] = self.TYPE_MAP[order.order_type]
        if order.limit_price is not None:
            payload["limit_price"] = str(order.limit_price)
        if order.trigger_price is not None:
            payload["stop_price"] = str(order.trigger_price)
        return payload

    def encode_modify(self, order: Order, changes: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if "quantity" in changes:
            payload["qty"] = str(changes["quantity"])
        if "limit_price" in changes:
            payload["limit_price"] = str(changes["limit_price"])
        if "trigger_price" in changes:
            payload["stop_price"] = str(changes["trigger_price"])
        if "time_in_force" in changes:
            payload["time_in_force"] = changes["time_in_force"].value.lower()
        return payload

    def decode_order_id(self, data: Dict[str, Any]) -> str:
        return str(data["id"])

    def decode_status(self, data: Dict[str, Any]) -> BrokerOrderStatus:
        status = str(data.get("status", "")).lower()
        if status not in self.STATUS_MAP:
            raise ValueError(f"unknown alpaca order status: {status!r}")
        event = _event(
            self.STATUS_MAP[status],
            _float(data.get("filled_qty")),
            _float(data.get("filled_avg_price")) or None,
            data,
            reason=data.get("reject_reason"),
        )
        return BrokerOrderStatus(
            native_id=self.decode_order_id(data),
            client_order_id=data.get("client_order_id"),
            event=event,
            symbol=data.get("symbol"),
        )

    def decode_order_list(self, data: Any) -> List[Dict[str, Any]]:
        if isinstance(data, dict):
            return [data]
        return list(data or [])

    def decode_positions(self, data: Any) -> Dict[str, float]:
        out = {}
        for p in data:
            qty = _float(p.get("qty"))
            if str(p.get("side", "long")).lower() == "short":
                qty = -abs(qty)
            out[str(p["symbol"])] = qty
        return out

    def decode_error(self, data: Any) -> str:
        if isinstance(data, dict):
            return str(data.get("message") or data)
        return str(data)


class KiteDialect(Dialect):
    name = "kite"
    order_types = frozenset({OrderType.MARKET, OrderType.LIMIT, OrderType.STOP, OrderType.STOP_LIMIT})
    time_in_force = frozenset({TimeInForce.DAY, TimeInForce.IOC})

    TYPE_MAP = {
        OrderType.MARKET: "MARKET",
        OrderType.LIMIT: "LIMIT",
        OrderType.STOP: "SL-M",
        OrderType.STOP_LIMIT: "SL",
    }

    STATUS_MAP = {
        "PUT ORDER REQ RECEIVED": None,
        "VALIDATION PENDING": None,
        "OPEN PENDING": None,
        "OPEN": BrokerEventType.ACK,
        "TRIGGER PENDING": BrokerEventType.ACK,
        "MODIFY PENDING": BrokerEventType.ACK,
        "CANCEL PENDING": BrokerEventType.ACK,
        "COMPLETE": BrokerEventType.FILL,
        "CANCELLED": BrokerEventType.CANCEL_CONFIRM,
        "REJECTED": BrokerEventType.REJECT,
        "LAPSED": BrokerEventType.EXPIRE,
    }

    token_path = "/session/token"
    submit_path = "/orders/regular"
    orders_path = "/orders"
    account_path = "/user/margins"
    positions_path = "/portfolio/positions"
    modify_method = "PUT"

    def order_path(self, native_id: str) -> str:
        return f"{self.orders_path}/regular/{native_id}"

    def status_path(self, native_id: str) -> str:
        return f"{self.orders_path}/{native_id}"

    def lookup_params(self, client_order_id: str) -> Dict[str, str]:
        return {"tag": client_order_id[:20]}

    def auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"token {token}", "X-Kite-Version": "3"}

    def auth_body(self, user_id: str, secret: str) -> Dict[str, Any]:
        return {"user_id": user_id, "checksum": secret}

    def encode_order(self, order: Order, native_symbol: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tradingsymbol": native_symbol,
            "exchange": "NSE",
            "transaction_type": order.side.value,
            "order_type": self.TYPE_MAP[order.order_type],
            "quantity": int(order.quantity),
            "product": "CNC",
            "validity": order.time_in_force.value,
            "tag": order.order_id[:20],
        }
        if order.limit_price is not None:
            payload["price"] = order.limit_price
        if order.trigger_price is not None:
            payload["trigger_price"] = order.trigger_price
        return payload

    def encode_modify(self, order: Order, changes: Dict[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"order_type": self.TYPE_MAP[order.order_type]}
        if "quantity" in changes:
            payload["quantity"] = int(changes["quantity"])
        if "limit_price" in changes:
            payload["price"] = changes["limit_price"]
        if "trigger_price" in changes:
            payload["trigger_price"] = changes["trigger_price"]
        if "time_in_force" in changes:
            payload["validity"] = changes["time_in_force"].value
        return payload

    def unwrap(self, data: Any) -> Any:
        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data

    def decode_order_id(self, data: Dict[str, Any]) -> str:
        return str(data["order_id"])

    def decode_status(self, data: Any) -> BrokerOrderStatus:
        if isinstance(data, list):
            # order history: the last entry is the current status
            data = data[-1]
        status = str(data.get("status", "")).upper()
        if status not in self.STATUS_MAP:
            raise ValueError(f"unknown kite order status: {status!r}")
        event_type = self.STATUS_MAP[status]
        filled = _float(data.get("filled_quantity"))
        event = _event(
            event_type,
            filled,
            _float(data.get("average_price")) or None,
            {
                "sequence_no": data.get("sequence_no"),
                "timestamp": data.get("exchange_update_timestamp") or data.get("order_timestamp"),
                "event_id": data.get("event_id"),
            },
            reason=data.get("status_message"),
        )
        return BrokerOrderStatus(
            native_id=self.decode_order_id(data),
            client_order_id=data.get("tag"),
            event=event,
            symbol=data.get("tradingsymbol"),
        )

    def decode_order_list(self, data: Any) -> List[Dict[str, Any]]:
        if isinstance(data, dict):
            return [data]
        return list(data or [])

    def decode_account(self, data: Dict[str, Any]) -> AccountSnapshot:
        equity = data.get("equity", data)
        available = equity.get("available", {})
        cash = available.get("live_balance", available.get("cash", equity.get("net")))
        return AccountSnapshot(buying_power=_float(cash) if cash is not None else None)

    def decode_positions(self, data: Any) -> Dict[str, float]:
        rows = data.get("net", []) if isinstance(data, dict) else data
        return {str(p["tradingsymbol"]): _float(p.get("quantity")) for p in rows}

    def decode_error(self, data: Any) -> str:
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error_type") or data)
        return str(data)


DIALECTS: Dict[str, Dialect] = {
    "canonical": Dialect(),
    "alpaca": AlpacaDialect(),
    "kite": KiteDialect(),
}


def get_dialect(name: str) -> Dialect:
    try:
        return DIALECTS[name]
    except KeyError:
        raise ValueError(f"unknown dialect: {name}") from None
