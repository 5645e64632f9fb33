from shared.metrics.metrics import OrderPlaneMetrics

__all__ = ["OrderPlaneMetrics"]
