"""Unit tests for order plane metrics."""

import pytest

from shared.metrics import OrderPlaneMetrics


@pytest.mark.unit
class TestOrderPlaneMetrics:
    def test_private_registries(self):
        first, second = OrderPlaneMetrics(), OrderPlaneMetrics()
        first.orders_submitted.labels(order_type="LIMIT").inc()
        assert first.sample("order_plane_orders_submitted_total", order_type="LIMIT") == 1.0
        assert second.sample("order_plane_orders_submitted_total", order_type="LIMIT") == 0.0

    def test_helpers(self):
        metrics = OrderPlaneMetrics()
        metrics.record_transition("SUBMITTED", "ACKNOWLEDGED")
        metrics.record_event("paper-a", "duplicate")
        metrics.record_event("paper-a", "duplicate")
        metrics.record_routing("no_route", None)
        assert metrics.sample("order_plane_order_transitions_total",
                              from_state="SUBMITTED", to_state="ACKNOWLEDGED") == 1.0
        assert metrics.sample("order_plane_broker_events_total", broker_id="paper-a", outcome="duplicate") == 2.0
        assert metrics.sample("order_plane_routing_decisions_total", outcome="no_route", broker_id="none") == 1.0

    def test_session_health_gauge(self):
        metrics = OrderPlaneMetrics()
        metrics.set_session_health("u", "paper-a", "DEGRADED")
        assert metrics.sample("order_plane_session_health", user_id="u", broker_id="paper-a") == 1.0
        metrics.set_session_health("u", "paper-a", "HEALTHY")
        assert metrics.sample("order_plane_session_health", user_id="u", broker_id="paper-a") == 0.0

    def test_time_broker_call(self):
        metrics = OrderPlaneMetrics()
        with metrics.time_broker_call("paper-a", "submit"):
            pass
        with pytest.raises(ConnectionError):
            with metrics.time_broker_call("paper-a", "submit"):
                raise ConnectionError("reset")
        assert metrics.sample("order_plane_broker_call_latency_seconds_count",
                              broker_id="paper-a", operation="submit") == 2.0
        assert metrics.sample("order_plane_broker_call_errors_total", broker_id="paper-a",
                              operation="submit", error_type="ConnectionError") == 1.0

    def test_render(self):
        metrics = OrderPlaneMetrics()
        metrics.orders_submitted.labels(order_type="MARKET").inc()
        text = metrics.render().decode()
        assert 'order_plane_orders_submitted_total{order_type="MARKET"} 1.0' in text
