from order_plane.persistence.store import IN_MEMORY_URL, OrderStore

__all__ = ["OrderStore", "IN_MEMORY_URL"]
