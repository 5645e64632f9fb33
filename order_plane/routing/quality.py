"""Execution-quality history used by the routing score."""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass
class _Outcomes:
    filled: int = 0
    total: int = 0


class ExecutionQualityTracker:
    """
    Per (broker, symbol) fill ratio and per-broker latency.

    quality = (filled + prior_fills) / (total + prior_total)

    With the default prior (1 of 2) an unseen broker scores 0.5, so a new
    broker is neither favoured nor starved.
    """

    def __init__(self, prior_fills: float = 1.0, prior_total: float = 2.0, latency_alpha: float = 0.2):
        self.prior_fills = prior_fills
        self.prior_total = prior_total
        self.latency_alpha = latency_alpha
        self._outcomes: Dict[Tuple[str, str], _Outcomes] = {}
        self._latency_ms: Dict[str, float] = {}

    def record_outcome(self, broker_id: str, symbol: str, filled: bool) -> None:
        """Record how a routed order ended (FILLED vs any other terminal state)."""
        stats = self._outcomes.setdefault((broker_id, symbol), _Outcomes())
        stats.total += 1
        if filled:
            stats.filled += 1

    def record_latency(self, broker_id: str, seconds: float) -> None:
        ms = seconds * 1000.0
        previous = self._latency_ms.get(broker_id)
        if previous is None:
            self._latency_ms[broker_id] = ms
        else:
            self._latency_ms[broker_id] = previous + self.latency_alpha * (ms - previous)

    def quality(self, broker_id: str, symbol: str) -> float:
        stats = self._outcomes.get((broker_id, symbol), _Outcomes())
        return (stats.filled + self.prior_fills) / (stats.total + self.prior_total)

    def latency_ms(self, broker_id: str) -> Optional[float]:
        return self._latency_ms.get(broker_id)
