"""Unit tests for the connection health monitor."""

import pytest

from order_plane.health.monitor import ConnectionHealthMonitor
from shared.config import HealthConfig
from shared.models.session import HealthStatus, OverallHealth

USER = "user-1"


@pytest.fixture
def monitor():
    m = ConnectionHealthMonitor(HealthConfig(min_samples=50))
    m.register(USER, "paper-a")
    m.register(USER, "paper-b")
    return m


@pytest.fixture
def changes(monitor):
    seen = []
    monitor.add_listener(lambda user, broker, old, new: seen.append((broker, old, new)))
    return seen


@pytest.mark.unit
class TestHealthTransitions:
    """HEALTHY -> DEGRADED -> DOWN -> HEALTHY."""

    def test_unknown_session_is_down(self, monitor):
        assert monitor.status(USER, "nope") == HealthStatus.DOWN
        assert monitor.record_success(USER, "nope") == HealthStatus.DOWN

    def test_registered_session_starts_healthy(self, monitor):
        assert monitor.status(USER, "paper-a") == HealthStatus.HEALTHY
        assert monitor.is_routable(USER, "paper-a")

    def test_degraded_after_consecutive_failures(self, monitor, changes):
        monitor.record_failure(USER, "paper-a", "boom")
        monitor.record_failure(USER, "paper-a", "boom")
        assert monitor.status(USER, "paper-a") == HealthStatus.HEALTHY
        monitor.record_failure(USER, "paper-a", "boom")
        assert monitor.status(USER, "paper-a") == HealthStatus.DEGRADED
        assert changes == [("paper-a", HealthStatus.HEALTHY, HealthStatus.DEGRADED)]

    def test_success_resets_failure_streak(self, monitor):
        monitor.record_failure(USER, "paper-a")
        monitor.record_failure(USER, "paper-a")
        monitor.record_success(USER, "paper-a")
        monitor.record_failure(USER, "paper-a")
        assert monitor.status(USER, "paper-a") == HealthStatus.HEALTHY

    def test_down_after_more_failures(self, monitor, changes):
        for _ in range(6):
            monitor.record_failure(USER, "paper-a")
        assert monitor.status(USER, "paper-a") == HealthStatus.DOWN
        assert [new for _, _, new in changes] == [HealthStatus.DEGRADED, HealthStatus.DOWN]

    def test_degraded_routable_only_when_allowed(self, monitor):
        for _ in range(3):
            monitor.record_failure(USER, "paper-a")
        assert not monitor.is_routable(USER, "paper-a")
        assert monitor.is_routable(USER, "paper-a", allow_degraded=True)

    def test_degraded_recovers_after_successes(self, monitor):
        for _ in range(3):
            monitor.record_failure(USER, "paper-a")
        monitor.record_success(USER, "paper-a")
        monitor.record_success(USER, "paper-a")
        assert monitor.status(USER, "paper-a") == HealthStatus.DEGRADED
        monitor.record_success(USER, "paper-a")
        assert monitor.status(USER, "paper-a") == HealthStatus.HEALTHY

    def test_down_recovers_only_on_heartbeats(self, monitor):
        monitor.mark_down(USER, "paper-a", "disconnect")
        for _ in range(5):
            monitor.record_success(USER, "paper-a")
        assert monitor.status(USER, "paper-a") == HealthStatus.DOWN
        for _ in range(3):
            monitor.record_success(USER, "paper-a", heartbeat=True)
        assert monitor.status(USER, "paper-a") == HealthStatus.HEALTHY

    def test_heartbeat_failure_resets_recovery(self, monitor):
        monitor.mark_down(USER, "paper-a", "disconnect")
        monitor.record_success(USER, "paper-a", heartbeat=True)
        monitor.record_success(USER, "paper-a", heartbeat=True)
        monitor.record_failure(USER, "paper-a", heartbeat=True)
        monitor.record_success(USER, "paper-a", heartbeat=True)
        assert monitor.status(USER, "paper-a") == HealthStatus.DOWN

    def test_error_rate_trips_degraded(self):
        monitor = ConnectionHealthMonitor(HealthConfig(min_samples=4, error_rate_threshold=0.5))
        monitor.register(USER, "paper-a")
        for ok in (False, True, True, False):
            if ok:
                monitor.record_success(USER, "paper-a")
            else:
                monitor.record_failure(USER, "paper-a")
        assert monitor.status(USER, "paper-a") == HealthStatus.DEGRADED

    def test_mark_down_is_idempotent(self, monitor, changes):
        monitor.mark_down(USER, "paper-a", "gone")
        monitor.mark_down(USER, "paper-a", "gone")
        assert changes == [("paper-a", HealthStatus.HEALTHY, HealthStatus.DOWN)]
        assert monitor.details(USER, "paper-a").last_error == "gone"

    def test_failing_listener_does_not_block_others(self, monitor, changes):
        def broken(*args):
            raise RuntimeError("listener bug")

        monitor._listeners.insert(0, broken)
        monitor.mark_down(USER, "paper-a", "gone")
        assert changes == [("paper-a", HealthStatus.HEALTHY, HealthStatus.DOWN)]


@pytest.mark.unit
class TestHealthSummary:
    def test_no_sessions_is_critical(self):
        summary = ConnectionHealthMonitor().summary(USER)
        assert summary.overall == OverallHealth.CRITICAL
        assert summary.healthy_pct == 0.0

    def test_all_healthy(self, monitor):
        summary = monitor.summary(USER)
        assert summary.overall == OverallHealth.HEALTHY
        assert summary.healthy_pct == 100.0
        assert summary.brokers == {"paper-a": HealthStatus.HEALTHY, "paper-b": HealthStatus.HEALTHY}

    def test_half_down_is_critical(self, monitor):
        monitor.mark_down(USER, "paper-b", "gone")
        summary = monitor.summary(USER)
        assert summary.healthy_pct == 50.0
        assert summary.overall == OverallHealth.CRITICAL

    def test_degraded_band(self):
        monitor = ConnectionHealthMonitor()
        for i in range(4):
            monitor.register(USER, f"b{i}")
        monitor.mark_down(USER, "b0", "gone")
        summary = monitor.summary(USER)
        assert summary.healthy_pct == 75.0
        assert summary.overall == OverallHealth.DEGRADED

    def test_other_users_not_counted(self, monitor):
        monitor.register("user-2", "paper-a")
        monitor.mark_down("user-2", "paper-a", "gone")
        assert monitor.summary(USER).overall == OverallHealth.HEALTHY
