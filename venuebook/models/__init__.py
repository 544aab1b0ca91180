"""
VenueBook Domain Layer

This module contains the book values, the merge engine, adapter output types
and the order simulation models.
"""

from .order_book import (
    MAX_DEPTH,
    BookSide,
    OrderBookSnapshot,
    PriceLevel,
    apply_delta,
    apply_snapshot,
)
from .market_data import MalformedMessage, ParsedBookUpdate, ParseMode, VenueSymbol
from .simulation import (
    HypotheticalOrder,
    InvalidOrder,
    OrderImpactMetrics,
    OrderPlacement,
    OrderPosition,
    OrderSide,
    OrderTiming,
    OrderType,
)

__all__ = [
    "MAX_DEPTH",
    "BookSide",
    "OrderBookSnapshot",
    "PriceLevel",
    "apply_delta",
    "apply_snapshot",
    "MalformedMessage",
    "ParsedBookUpdate",
    "ParseMode",
    "VenueSymbol",
    "HypotheticalOrder",
    "InvalidOrder",
    "OrderImpactMetrics",
    "OrderPlacement",
    "OrderPosition",
    "OrderSide",
    "OrderTiming",
    "OrderType",
]
