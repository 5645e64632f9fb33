"""
Routing engine.

Chooses the broker for an order from the user's live sessions and writes
one RoutingDecision per attempt, including attempts that found nothing.

Exclusions (first matching reason is recorded):
    not_allowed_by_user      user allow-list does not contain the broker
    excluded_by_intent       broker named in the intent's excluded_brokers
    excluded_by_recovery     failed earlier in this submission
    session_inactive / session_expired
    health_down / health_degraded (DEGRADED only unless allow_degraded)
    unsupported: ...         order type / time in force / symbol
    rate_limit_exhausted
    insufficient_buying_power   BUY only; SELL margin is checked by the broker

Score of an eligible broker:
    cost_weight * cost_score + quality_weight * quality
        + headroom_weight * headroom + preference_bonus (preferred broker)
where cost_score = cheapest commission / this broker's commission.
Ties go to the lowest historical latency, then the broker id.
"""

from typing import Callable, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from order_plane.broker.sessions import BrokerSessionManager
from order_plane.health.monitor import ConnectionHealthMonitor
from order_plane.positions.aggregator import PositionAggregator
from order_plane.routing.quality import ExecutionQualityTracker
from order_plane.translation.translator import OrderTranslator
from shared.config import RoutingConfig
from shared.errors import NoAvailableBroker, UnsupportedOrderType
from shared.logging import StructuredLogger
from shared.metrics import OrderPlaneMetrics
from shared.models.base import utc_now
from shared.models.order import Order, OrderSide
from shared.models.routing import CandidateScore, RoutingDecision, RoutingOutcome
from shared.models.session import HealthStatus

logger = StructuredLogger(__name__)

UNSUPPORTED_PREFIX = "unsupported: "


class RoutingEngine:
    def __init__(
        self,
        config: RoutingConfig,
        translator: OrderTranslator,
        sessions: BrokerSessionManager,
        health: ConnectionHealthMonitor,
        quality: ExecutionQualityTracker,
        positions: PositionAggregator,
        on_decision: Optional[Callable[[RoutingDecision], None]] = None,
        metrics: Optional[OrderPlaneMetrics] = None,
    ):
        self.config = config
        self.translator = translator
        self.sessions = sessions
        self.health = health
        self.quality = quality
        self.positions = positions
        self.on_decision = on_decision
        self.metrics = metrics
        self._allowed: Dict[str, Set[str]] = {}

    def set_allowed_brokers(self, user_id: str, broker_ids: Optional[Iterable[str]]) -> None:
        """Restrict a user's routing to ``broker_ids`` (None lifts the restriction)."""
        if broker_ids is None:
            self._allowed.pop(user_id, None)
        else:
            self._allowed[user_id] = set(broker_ids)

    # ------------------------------------------------------------------
    # candidate evaluation
    # ------------------------------------------------------------------
    def _exclusion(self, order: Order, broker_id: str, exclude: Set[str],
                   reference_price: Optional[float]) -> Optional[str]:
        allowed = self._allowed.get(order.user_id)
        if allowed is not None and broker_id not in allowed:
            return "not_allowed_by_user"
        if broker_id in order.excluded_brokers:
            return "excluded_by_intent"
        if broker_id in exclude:
            return "excluded_by_recovery"

        session = self.sessions.get(order.user_id, broker_id)
        if session is None or not session.active:
            return "session_inactive"
        if session.is_expired():
            return "session_expired"

        status = self.health.status(order.user_id, broker_id)
        if status == HealthStatus.DOWN:
            return "health_down"
        if status == HealthStatus.DEGRADED and not self.config.allow_degraded:
            return "health_degraded"

        try:
            self.translator.check_support(broker_id, order)
        except UnsupportedOrderType as exc:
            return UNSUPPORTED_PREFIX + exc.message.split(": ", 1)[-1]

        budget = self.sessions.budget(order.user_id, broker_id)
        if budget is None or budget.exhausted():
            return "rate_limit_exhausted"

        if (order.side == OrderSide.BUY and session.buying_power is not None
                and reference_price is not None
                and order.remaining_quantity * reference_price > session.buying_power):
            return "insufficient_buying_power"
        return None

    def _reference_price(self, order: Order) -> Optional[float]:
        return order.reference_price() or self.positions.price_hint(order.symbol)

    # ------------------------------------------------------------------
    # route
    # ------------------------------------------------------------------
    def route(self, order: Order, exclude: Iterable[str] = (), attempt: int = 1) -> RoutingDecision:
        """Pick a broker; raises NoAvailableBroker / UnsupportedOrderType carrying the decision."""
        exclude = set(exclude)
        reference_price = self._reference_price(order)
        notional = order.remaining_quantity * (reference_price or 1.0)
        cfg = self.config

        excluded: List[CandidateScore] = []
        eligible: List[Dict] = []
        for session in self.sessions.sessions_for(order.user_id):
            broker_id = session.broker_id
            health = self.health.status(order.user_id, broker_id)
            reason = self._exclusion(order, broker_id, exclude, reference_price)
            if reason is not None:
                excluded.append(CandidateScore(
                    broker_id=broker_id, eligible=False, exclusion_reason=reason, health=health,
                ))
                continue
            budget = self.sessions.budget(order.user_id, broker_id)
            eligible.append({
                "broker_id": broker_id,
                "health": health,
                "cost": float(self.translator.capabilities(broker_id).estimate_cost(notional)),
                "quality": float(self.quality.quality(broker_id, order.symbol)),
                "headroom": float(min(max(budget.headroom, 0.0), 1.0)),
                "latency": self.quality.latency_ms(broker_id),
            })

        scored: List[CandidateScore] = []
        if eligible:
            min_cost = min(c["cost"] for c in eligible)
            for c in eligible:
                if c["cost"] <= 0:
                    cost_score = 1.0
                else:
                    cost_score = min_cost / c["cost"]
                score = (
                    cfg.cost_weight * cost_score
                    + cfg.quality_weight * c["quality"]
                    + cfg.headroom_weight * c["headroom"]
                )
                if c["broker_id"] in order.preferred_brokers:
                    score += cfg.preference_bonus
                scored.append(CandidateScore(
                    broker_id=c["broker_id"],
                    eligible=True,
                    health=c["health"],
                    estimated_cost=c["cost"],
                    cost_score=float(cost_score),
                    quality_score=c["quality"],
                    headroom=c["headroom"],
                    latency_ms=None if c["latency"] is None else float(c["latency"]),
                    score=float(score),
                ))
            scored.sort(key=lambda c: (
                -c.score,
                c.latency_ms if c.latency_ms is not None else float("inf"),
                c.broker_id,
            ))

        chosen = scored[0].broker_id if scored else None
        if chosen is not None:
            outcome = RoutingOutcome.ROUTED
        elif excluded and all(c.exclusion_reason.startswith(UNSUPPORTED_PREFIX) for c in excluded):
            outcome = RoutingOutcome.UNSUPPORTED
        else:
            outcome = RoutingOutcome.NO_AVAILABLE_BROKER

        decision = RoutingDecision(
            decision_id=uuid4().hex,
            order_id=order.order_id,
            user_id=order.user_id,
            symbol=order.symbol,
            attempt=attempt,
            timestamp=utc_now(),
            inputs={
                "quantity": order.remaining_quantity,
                "side": order.side.value,
                "order_type": order.order_type.value,
                "time_in_force": order.time_in_force.value,
                "reference_price": reference_price,
                "weights": {
                    "cost": cfg.cost_weight,
                    "quality": cfg.quality_weight,
                    "headroom": cfg.headroom_weight,
                    "preference_bonus": cfg.preference_bonus,
                },
                "excluded_requested": sorted(set(order.excluded_brokers) | exclude),
                "preferred": list(order.preferred_brokers),
            },
            candidates=tuple(scored + excluded),
            chosen_broker=chosen,
            outcome=outcome,
        )
        self._record(decision)

        if outcome == RoutingOutcome.UNSUPPORTED:
            raise UnsupportedOrderType(
                f"no broker can represent order {order.order_id}", decision_id=decision.decision_id,
            )
        if outcome == RoutingOutcome.NO_AVAILABLE_BROKER:
            raise NoAvailableBroker(
                f"no available broker for order {order.order_id}",
                decision=decision, excluded=decision.excluded,
            )
        return decision

    def _record(self, decision: RoutingDecision) -> None:
        logger.info(
            "routing_decision",
            order_id=decision.order_id,
            attempt=decision.attempt,
            outcome=decision.outcome.value,
            chosen_broker=decision.chosen_broker,
            excluded=decision.excluded,
        )
        if self.metrics is not None:
            self.metrics.record_routing(decision.outcome.value, decision.chosen_broker)
        if self.on_decision is not None:
            self.on_decision(decision)
