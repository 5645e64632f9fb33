from order_plane.positions.aggregator import PositionAggregator

__all__ = ["PositionAggregator"]
