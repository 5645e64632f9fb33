"""Order translation: instrument rules, capability checks and broker dialects."""

from order_plane.translation.dialects import (
    AlpacaDialect,
    Dialect,
    KiteDialect,
    get_dialect,
)
from order_plane.translation.instruments import InstrumentRegistry, is_multiple
from order_plane.translation.translator import OrderTranslator

__all__ = [
    "AlpacaDialect",
    "Dialect",
    "KiteDialect",
    "get_dialect",
    "InstrumentRegistry",
    "is_multiple",
    "OrderTranslator",
]
