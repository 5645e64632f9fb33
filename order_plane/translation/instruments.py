"""Instrument reference data: tick size, lot size and broker-native symbols."""

from typing import Dict, Iterable, Optional

from shared.config import InstrumentConfig
from shared.errors import InvalidOrderParameters, ValidationError

# relative tolerance for float multiples (0.15 / 0.05 is not exactly 3.0)
MULTIPLE_TOLERANCE = 1e-6


def is_multiple(value: float, step: float) -> bool:
    ratio = value / step
    return abs(ratio - round(ratio)) <= MULTIPLE_TOLERANCE * max(1.0, abs(ratio))


class InstrumentRegistry:
    def __init__(self, instruments: Iterable[InstrumentConfig] = ()):
        self._instruments: Dict[str, InstrumentConfig] = {i.symbol: i for i in instruments}

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._instruments

    def symbols(self):
        return sorted(self._instruments)

    def add(self, instrument: InstrumentConfig) -> None:
        self._instruments[instrument.symbol] = instrument

    def get(self, symbol: str) -> InstrumentConfig:
        instrument = self._instruments.get(symbol)
        if instrument is None:
            raise ValidationError(f"unknown instrument: {symbol}", symbol=symbol)
        return instrument

    def native_symbol(self, symbol: str, broker_id: str) -> str:
        return self.get(symbol).broker_symbols.get(broker_id, symbol)

    def check_price(self, symbol: str, field: str, price: Optional[float]) -> None:
        if price is None:
            return
        tick = self.get(symbol).tick_size
        if not is_multiple(price, tick):
            raise InvalidOrderParameters(
                f"{field}={price} is not a multiple of tick size {tick}",
                constraint="tick_size", field=field, tick_size=tick, value=price,
            )

    def check_quantity(self, symbol: str, quantity: float) -> None:
        lot = self.get(symbol).lot_size
        if not is_multiple(quantity, lot):
            raise InvalidOrderParameters(
                f"quantity={quantity} is not a multiple of lot size {lot}",
                constraint="lot_size", field="quantity", lot_size=lot, value=quantity,
            )
