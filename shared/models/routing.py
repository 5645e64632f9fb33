"""
Routing audit records.

One RoutingDecision is written per routing attempt, including attempts that
found no broker. Records are immutable and exist for explainability only;
the execution path never reads them back.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from shared.models.base import BaseModel, SymbolMixin
from shared.models.session import HealthStatus


class RoutingOutcome(str, Enum):
    ROUTED = "ROUTED"
    NO_AVAILABLE_BROKER = "NO_AVAILABLE_BROKER"
    UNSUPPORTED = "UNSUPPORTED"


class CandidateScore(BaseModel):
    """Per-broker evaluation inside a routing decision."""

    broker_id: str
    eligible: bool
    exclusion_reason: Optional[str] = None
    health: Optional[HealthStatus] = None
    estimated_cost: Optional[float] = None
    cost_score: Optional[float] = None
    quality_score: Optional[float] = None
    headroom: Optional[float] = None
    latency_ms: Optional[float] = None
    score: Optional[float] = None


class RoutingDecision(BaseModel, SymbolMixin):
    decision_id: str
    order_id: str
    user_id: str
    attempt: int
    timestamp: datetime
    inputs: Dict[str, Any]
    candidates: Tuple[CandidateScore, ...]
    chosen_broker: Optional[str] = None
    outcome: RoutingOutcome

    def candidate(self, broker_id: str) -> Optional[CandidateScore]:
        for candidate in self.candidates:
            if candidate.broker_id == broker_id:
                return candidate
        return None

    @property
    def excluded(self) -> Dict[str, str]:
        return {
            c.broker_id: c.exclusion_reason or ""
            for c in self.candidates
            if not c.eligible
        }
