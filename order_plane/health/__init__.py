from order_plane.health.monitor import ConnectionHealthMonitor, HealthSummary, SessionHealth

__all__ = ["ConnectionHealthMonitor", "HealthSummary", "SessionHealth"]
