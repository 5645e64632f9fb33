"""
Prometheus metrics for the order plane.

Every OrderPlaneMetrics instance owns a private CollectorRegistry so several
engines (and tests) can live in one process without clashing on metric
names.
"""

import time
from contextlib import contextmanager
from typing import Optional

from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

HEALTH_GAUGE_VALUES = {"HEALTHY": 0, "DEGRADED": 1, "DOWN": 2}


class OrderPlaneMetrics:
    """
    Counters, gauges and histograms for the order plane.

    Tracks:
    - Orders submitted / state transitions
    - Broker events by outcome (applied, duplicate, stale, buffered, conflict)
    - Routing decisions and submission retries
    - Broker call latency and session health
    """

    CONTENT_TYPE = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._init_metrics()

    def _init_metrics(self):
        """Initialize all Prometheus metrics."""

        # ============ Orders ============
        self.orders_submitted = Counter(
            'order_plane_orders_submitted_total',
            'Order intents accepted for submission',
            ['order_type'],
            registry=self.registry
        )

        self.order_transitions = Counter(
            'order_plane_order_transitions_total',
            'Order lifecycle transitions',
            ['from_state', 'to_state'],
            registry=self.registry
        )

        self.broker_events = Counter(
            'order_plane_broker_events_total',
            'Broker events processed by the reconciliation engine',
            ['broker_id', 'outcome'],
            registry=self.registry
        )

        self.reconciliation_conflicts = Counter(
            'order_plane_reconciliation_conflicts_total',
            'Broker events contradicting recorded history',
            ['broker_id'],
            registry=self.registry
        )

        # ============ Routing / Recovery ============
        self.routing_decisions = Counter(
            'order_plane_routing_decisions_total',
            'Routing decisions by outcome',
            ['outcome', 'broker_id'],
            registry=self.registry
        )

        self.submission_retries = Counter(
            'order_plane_submission_retries_total',
            'Submission retries and reroutes',
            ['broker_id', 'reason'],
            registry=self.registry
        )

        # ============ Brokers ============
        self.broker_call_latency = Histogram(
            'order_plane_broker_call_latency_seconds',
            'Broker API call latency',
            ['broker_id', 'operation'],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry
        )

        self.broker_call_errors = Counter(
            'order_plane_broker_call_errors_total',
            'Broker API call failures',
            ['broker_id', 'operation', 'error_type'],
            registry=self.registry
        )

        self.session_health = Gauge(
            'order_plane_session_health',
            'Session health (0=HEALTHY, 1=DEGRADED, 2=DOWN)',
            ['user_id', 'broker_id'],
            registry=self.registry
        )

    # ============ Helper Methods ============

    def record_transition(self, from_state: str, to_state: str):
        self.order_transitions.labels(from_state=from_state, to_state=to_state).inc()

    def record_event(self, broker_id: str, outcome: str):
        self.broker_events.labels(broker_id=broker_id, outcome=outcome).inc()

    def record_routing(self, outcome: str, broker_id: Optional[str]):
        self.routing_decisions.labels(outcome=outcome, broker_id=broker_id or "none").inc()

    def set_session_health(self, user_id: str, broker_id: str, status: str):
        self.session_health.labels(user_id=user_id, broker_id=broker_id).set(
            HEALTH_GAUGE_VALUES.get(status, 2)
        )

    @contextmanager
    def time_broker_call(self, broker_id: str, operation: str):
        """Context manager timing one broker call; failures are counted by type."""
        start = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.broker_call_errors.labels(
                broker_id=broker_id, operation=operation, error_type=type(exc).__name__
            ).inc()
            raise
        finally:
            self.broker_call_latency.labels(broker_id=broker_id, operation=operation).observe(
                time.perf_counter() - start
            )

    def sample(self, name: str, **labels) -> float:
        """Current value of one sample (0.0 when never observed)."""
        value = self.registry.get_sample_value(name, labels)
        return value if value is not None else 0.0

    def render(self) -> bytes:
        """Exposition-format snapshot of the registry."""
        return generate_latest(self.registry)
