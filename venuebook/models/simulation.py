"""
Simulation Models - Domain Layer

This module defines the inputs and outputs of the order-impact simulation:
a hypothetical order to place against a book, and the projected execution
outcome (fill percentage, average price, slippage, market impact and where
the unfilled remainder would rest).
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderTiming(Enum):
    """
    When the order would be submitted.

    IMMEDIATE uses fixed fast estimates; the delayed classes scale their
    own delay in the time-to-fill tiers.
    """
    IMMEDIATE = "immediate"
    DELAY_5S = "5s"
    DELAY_10S = "10s"
    DELAY_30S = "30s"

    @property
    def delay_ms(self) -> int:
        """Configured delay in milliseconds (0 for IMMEDIATE)."""
        return _TIMING_DELAYS_MS[self]


_TIMING_DELAYS_MS = {
    OrderTiming.IMMEDIATE: 0,
    OrderTiming.DELAY_5S: 5000,
    OrderTiming.DELAY_10S: 10000,
    OrderTiming.DELAY_30S: 30000,
}


class InvalidOrder(ValueError):
    """
    A simulation request that cannot be evaluated.

    Raised before the book is read, so callers can tell an invalid request
    apart from a valid request against an empty book (which yields 0% fill).

    Attributes:
        reason: Human-readable description of what is wrong
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class HypotheticalOrder:
    """
    An order to simulate against the current book.

    Attributes:
        venue: Venue the order would be sent to
        symbol: Canonical symbol (e.g. "BTC-USD")
        order_type: MARKET or LIMIT
        side: BUY (reads asks) or SELL (reads bids)
        quantity: Requested quantity, must be > 0
        price: Limit price, required iff order_type is LIMIT
        timing: Submission timing class
    """
    venue: str
    symbol: str
    order_type: OrderType
    side: OrderSide
    quantity: Decimal
    price: Optional[Decimal] = None
    timing: OrderTiming = OrderTiming.IMMEDIATE

    def to_dict(self) -> dict:
        return {
            'venue': self.venue,
            'symbol': self.symbol,
            'order_type': self.order_type.value,
            'side': self.side.value,
            'quantity': float(self.quantity),
            'price': float(self.price) if self.price is not None else None,
            'timing': self.timing.value,
        }


@dataclass(frozen=True)
class OrderImpactMetrics:
    """
    Projected execution outcome of a hypothetical order.

    Attributes:
        estimated_fill_percentage: Filled / requested * 100
        market_impact: Filled / total visible depth on the consumed side * 100
        slippage_estimation: |average fill price - reference price|
        total_value: Sum of fill quantity * level price
        average_fill_price: total_value / filled quantity
        filled_quantity: Quantity that would execute immediately
        time_to_fill: Approximate milliseconds until filled (not an SLA)
    """
    estimated_fill_percentage: Decimal
    market_impact: Decimal
    slippage_estimation: Decimal
    total_value: Decimal
    average_fill_price: Decimal
    filled_quantity: Decimal
    time_to_fill: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'estimated_fill_percentage': float(self.estimated_fill_percentage),
            'market_impact': float(self.market_impact),
            'slippage_estimation': float(self.slippage_estimation),
            'total_value': float(self.total_value),
            'average_fill_price': float(self.average_fill_price),
            'filled_quantity': float(self.filled_quantity),
            'time_to_fill': self.time_to_fill,
        }


# Position level used for market orders, which never rest on the book
MARKET_ORDER_LEVEL = -1


@dataclass(frozen=True)
class OrderPosition:
    """
    Where the order sits relative to the book.

    For limit orders `level` is the insertion index into the opposing-side
    level list and `is_new_level` tells whether the price already exists
    there. Market orders use MARKET_ORDER_LEVEL with the average fill price
    and filled quantity.
    """
    level: int
    is_new_level: bool
    price: Decimal
    quantity: Decimal

    def to_dict(self) -> dict:
        return {
            'level': self.level,
            'is_new_level': self.is_new_level,
            'price': float(self.price),
            'quantity': float(self.quantity),
        }


@dataclass(frozen=True)
class OrderPlacement:
    """Simulation result: the order, its impact and its book position."""
    order: HypotheticalOrder
    impact: OrderImpactMetrics
    position: OrderPosition

    @property
    def is_fully_filled(self) -> bool:
        return self.impact.filled_quantity >= self.order.quantity

    def to_dict(self) -> dict:
        return {
            'order': self.order.to_dict(),
            'impact': self.impact.to_dict(),
            'position': self.position.to_dict(),
        }
