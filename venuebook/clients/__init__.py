"""
Infrastructure Layer - venue feed adapters, WebSocket clients and REST loaders
"""

from .venues import FeedAdapter, OKXAdapter, BybitAdapter, DeribitAdapter, get_adapter
from .venue_client import VenueWebSocketClient, ConnectionState
from .instruments import fetch_instruments, load_instruments

__all__ = [
    "FeedAdapter",
    "OKXAdapter",
    "BybitAdapter",
    "DeribitAdapter",
    "get_adapter",
    "VenueWebSocketClient",
    "ConnectionState",
    "fetch_instruments",
    "load_instruments",
]
