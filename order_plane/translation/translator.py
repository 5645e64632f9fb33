"""
Order translation layer.

Converts canonical orders into broker wire payloads and enforces the
numeric and capability constraints that must hold before any broker sees
an order:

- validate_constraints: tick size on every price field, lot size on quantity
- check_support: the broker can represent the order type, time in force
  and symbol
- translate / translate_modify: dialect-specific payloads
"""

from typing import Any, Dict, List, Mapping

from order_plane.adapters.base import BrokerCapabilities
from order_plane.translation.dialects import Dialect, get_dialect
from order_plane.translation.instruments import InstrumentRegistry
from shared.config import EngineConfig
from shared.errors import InvalidOrderParameters, UnsupportedOrderType
from shared.logging import StructuredLogger
from shared.models.order import PRICE_FIELDS, Order

logger = StructuredLogger(__name__)


class OrderTranslator:
    def __init__(
        self,
        instruments: InstrumentRegistry,
        capabilities: Mapping[str, BrokerCapabilities],
        dialects: Mapping[str, Dialect],
    ):
        self.instruments = instruments
        self._capabilities = dict(capabilities)
        self._dialects = dict(dialects)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "OrderTranslator":
        capabilities = {}
        dialects = {}
        for broker in config.enabled_brokers:
            dialect = get_dialect(broker.dialect)
            dialects[broker.broker_id] = dialect
            capabilities[broker.broker_id] = BrokerCapabilities(
                broker_id=broker.broker_id,
                order_types=frozenset(broker.supported_order_types) & dialect.order_types,
                time_in_force=frozenset(broker.supported_time_in_force) & dialect.time_in_force,
                supports_modify=broker.supports_modify and dialect.supports_modify,
                symbols=frozenset(s.upper() for s in broker.symbols) if broker.symbols is not None else None,
                commission=broker.commission,
            )
        return cls(InstrumentRegistry(config.instruments), capabilities, dialects)

    @property
    def broker_ids(self) -> List[str]:
        return sorted(self._capabilities)

    def capabilities(self, broker_id: str) -> BrokerCapabilities:
        try:
            return self._capabilities[broker_id]
        except KeyError:
            raise UnsupportedOrderType(f"unknown broker: {broker_id}", broker_id=broker_id) from None

    def dialect(self, broker_id: str) -> Dialect:
        return self._dialects[broker_id]

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def validate_constraints(self, order: Order) -> None:
        """Raise InvalidOrderParameters naming the first violated constraint."""
        self.instruments.check_quantity(order.symbol, order.quantity)
        for name in PRICE_FIELDS:
            self.instruments.check_price(order.symbol, name, getattr(order, name))

    def validate_changes(self, order: Order, changes: Dict[str, Any]) -> None:
        if "quantity" in changes:
            quantity = changes["quantity"]
            if quantity < order.filled_quantity:
                raise InvalidOrderParameters(
                    f"quantity={quantity} below filled quantity {order.filled_quantity}",
                    constraint="min_quantity", field="quantity",
                )
            self.instruments.check_quantity(order.symbol, quantity)
        for name in PRICE_FIELDS:
            if name in changes:
                self.instruments.check_price(order.symbol, name, changes[name])

    def check_support(self, broker_id: str, order: Order) -> None:
        reason = self.capabilities(broker_id).unsupported_reason(order)
        if reason is not None:
            raise UnsupportedOrderType(f"{broker_id}: {reason}", broker_id=broker_id)

    def supporting_brokers(self, order: Order) -> List[str]:
        return [
            broker_id for broker_id in self.broker_ids
            if self._capabilities[broker_id].unsupported_reason(order) is None
        ]

    # ------------------------------------------------------------------
    # payloads
    # ------------------------------------------------------------------
    def translate(self, order: Order, broker_id: str) -> Dict[str, Any]:
        self.check_support(broker_id, order)
        native_symbol = self.instruments.native_symbol(order.symbol, broker_id)
        payload = self._dialects[broker_id].encode_order(order, native_symbol)
        logger.debug("order_translated", order_id=order.order_id, broker_id=broker_id,
                     dialect=self._dialects[broker_id].name)
        return payload

    def translate_modify(self, order: Order, changes: Dict[str, Any], broker_id: str) -> Dict[str, Any]:
        if not self.capabilities(broker_id).supports_modify:
            raise UnsupportedOrderType(f"{broker_id}: modification not supported", broker_id=broker_id)
        return self._dialects[broker_id].encode_modify(order, changes)
