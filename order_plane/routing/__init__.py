from order_plane.routing.engine import RoutingEngine
from order_plane.routing.quality import ExecutionQualityTracker

__all__ = ["RoutingEngine", "ExecutionQualityTracker"]
