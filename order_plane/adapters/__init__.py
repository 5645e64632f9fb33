"""Broker adapters for the order plane."""

from order_plane.adapters.base import (
    BrokerAdapter,
    BrokerCapabilities,
    BrokerOrderStatus,
    EventSink,
)
from order_plane.adapters.paper_broker import PaperBroker
from order_plane.adapters.rest_broker import RestBrokerAdapter

__all__ = [
    "BrokerAdapter",
    "BrokerCapabilities",
    "BrokerOrderStatus",
    "EventSink",
    "PaperBroker",
    "RestBrokerAdapter",
]
