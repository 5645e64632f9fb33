"""
Connection health monitor.

Tracks per-session (user, broker) health from call outcomes and heartbeats:

    HEALTHY  -> DEGRADED  degraded_after_failures consecutive failures, or
                          error rate >= error_rate_threshold over the rolling
                          window (once min_samples outcomes are recorded)
    DEGRADED -> DOWN      down_after_failures consecutive failures
    DEGRADED -> HEALTHY   recovery_successes consecutive successes
    DOWN     -> HEALTHY   recovery_successes consecutive successful heartbeats

Status queries are plain dict lookups and never block. Status changes are
pushed synchronously to registered listeners (recovery manager, metrics,
outbound event bus).
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple

from shared.config import HealthConfig
from shared.logging import StructuredLogger
from shared.models.base import utc_now
from shared.models.session import HealthStatus, OverallHealth

logger = StructuredLogger(__name__)

SessionKey = Tuple[str, str]
HealthListener = Callable[[str, str, HealthStatus, HealthStatus], None]

HEALTHY_PCT_THRESHOLD = 90.0
DEGRADED_PCT_THRESHOLD = 70.0


@dataclass
class SessionHealth:
    status: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    heartbeat_successes: int = 0
    window: Deque[bool] = field(default_factory=deque)
    last_error: Optional[str] = None
    changed_at: datetime = field(default_factory=utc_now)

    def error_rate(self) -> float:
        if not self.window:
            return 0.0
        return sum(1 for ok in self.window if not ok) / len(self.window)


@dataclass(frozen=True)
class HealthSummary:
    user_id: str
    overall: OverallHealth
    healthy_pct: float
    brokers: Dict[str, HealthStatus]


class ConnectionHealthMonitor:
    def __init__(self, config: Optional[HealthConfig] = None):
        self.config = config or HealthConfig()
        self._sessions: Dict[SessionKey, SessionHealth] = {}
        self._listeners: List[HealthListener] = []

    def add_listener(self, listener: HealthListener) -> None:
        self._listeners.append(listener)

    def register(self, user_id: str, broker_id: str) -> None:
        self._sessions[(user_id, broker_id)] = SessionHealth(
            window=deque(maxlen=self.config.error_rate_window)
        )

    def remove(self, user_id: str, broker_id: str) -> None:
        self._sessions.pop((user_id, broker_id), None)

    def status(self, user_id: str, broker_id: str) -> HealthStatus:
        """Current status; unknown sessions are DOWN."""
        health = self._sessions.get((user_id, broker_id))
        return health.status if health is not None else HealthStatus.DOWN

    def details(self, user_id: str, broker_id: str) -> Optional[SessionHealth]:
        return self._sessions.get((user_id, broker_id))

    def is_routable(self, user_id: str, broker_id: str, allow_degraded: bool = False) -> bool:
        status = self.status(user_id, broker_id)
        return status == HealthStatus.HEALTHY or (allow_degraded and status == HealthStatus.DEGRADED)

    # ------------------------------------------------------------------
    # outcomes
    # ------------------------------------------------------------------
    def record_success(self, user_id: str, broker_id: str, heartbeat: bool = False) -> HealthStatus:
        health = self._sessions.get((user_id, broker_id))
        if health is None:
            return HealthStatus.DOWN
        health.consecutive_failures = 0
        health.consecutive_successes += 1
        if heartbeat:
            health.heartbeat_successes += 1
        health.window.append(True)

        needed = self.config.recovery_successes
        if health.status == HealthStatus.DOWN and health.heartbeat_successes >= needed:
            self._recover(user_id, broker_id, health)
        elif health.status == HealthStatus.DEGRADED and health.consecutive_successes >= needed:
            self._recover(user_id, broker_id, health)
        return health.status

    def record_failure(self, user_id: str, broker_id: str, error: str = "", heartbeat: bool = False) -> HealthStatus:
        health = self._sessions.get((user_id, broker_id))
        if health is None:
            return HealthStatus.DOWN
        health.consecutive_successes = 0
        health.heartbeat_successes = 0
        health.consecutive_failures += 1
        health.window.append(False)
        health.last_error = error or health.last_error

        cfg = self.config
        if health.status != HealthStatus.DOWN and health.consecutive_failures >= cfg.down_after_failures:
            self._transition(user_id, broker_id, health, HealthStatus.DOWN, error)
        elif health.status == HealthStatus.HEALTHY:
            rate_tripped = (
                len(health.window) >= cfg.min_samples
                and health.error_rate() >= cfg.error_rate_threshold
            )
            if health.consecutive_failures >= cfg.degraded_after_failures or rate_tripped:
                self._transition(user_id, broker_id, health, HealthStatus.DEGRADED, error)
        return health.status

    def mark_down(self, user_id: str, broker_id: str, reason: str) -> None:
        """Force DOWN (disconnect, irrecoverable auth failure)."""
        health = self._sessions.get((user_id, broker_id))
        if health is None or health.status == HealthStatus.DOWN:
            return
        health.consecutive_successes = 0
        health.heartbeat_successes = 0
        health.last_error = reason
        self._transition(user_id, broker_id, health, HealthStatus.DOWN, reason)

    def _recover(self, user_id: str, broker_id: str, health: SessionHealth) -> None:
        health.window.clear()
        health.consecutive_successes = 0
        health.heartbeat_successes = 0
        self._transition(user_id, broker_id, health, HealthStatus.HEALTHY, None)

    def _transition(self, user_id: str, broker_id: str, health: SessionHealth,
                    new: HealthStatus, reason: Optional[str]) -> None:
        old = health.status
        if old == new:
            return
        health.status = new
        health.changed_at = utc_now()
        log = logger.info if new == HealthStatus.HEALTHY else logger.warning
        log("broker_health_changed", user_id=user_id, broker_id=broker_id,
            old_status=old.value, new_status=new.value, reason=reason,
            error_rate=round(health.error_rate(), 3))
        for listener in list(self._listeners):
            try:
                listener(user_id, broker_id, old, new)
            except Exception:
                logger.exception("health_listener_failed", user_id=user_id, broker_id=broker_id)

    # ------------------------------------------------------------------
    # summary
    # ------------------------------------------------------------------
    def summary(self, user_id: str) -> HealthSummary:
        brokers = {
            broker_id: health.status
            for (uid, broker_id), health in sorted(self._sessions.items())
            if uid == user_id
        }
        if not brokers:
            return HealthSummary(user_id, OverallHealth.CRITICAL, 0.0, {})
        healthy = sum(1 for s in brokers.values() if s == HealthStatus.HEALTHY)
        pct = 100.0 * healthy / len(brokers)
        if pct >= HEALTHY_PCT_THRESHOLD:
            overall = OverallHealth.HEALTHY
        elif pct >= DEGRADED_PCT_THRESHOLD:
            overall = OverallHealth.DEGRADED
        else:
            overall = OverallHealth.CRITICAL
        return HealthSummary(user_id, overall, round(pct, 2), brokers)
