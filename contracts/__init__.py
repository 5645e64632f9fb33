"""Message contracts crossing the order plane boundary."""

from contracts.validators import (
    OrderIntent,
    ModifyRequest,
    BrokerEvent,
    BrokerEventType,
    BrokerOrderStatus,
    FILL_EVENT_TYPES,
)

__all__ = [
    "OrderIntent",
    "ModifyRequest",
    "BrokerEvent",
    "BrokerEventType",
    "BrokerOrderStatus",
    "FILL_EVENT_TYPES",
]
