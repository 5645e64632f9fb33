from order_plane.app.service import OrderPlaneService, build_adapters, effective_config

__all__ = ["OrderPlaneService", "build_adapters", "effective_config"]
