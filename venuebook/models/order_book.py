"""
OrderBook: Bounded-Depth Level 2 Book Values and Merge Engine

This module implements the canonical price-level book kept per venue+symbol.
Book values are immutable: every snapshot or delta produces a new
OrderBookSnapshot, so a reader holding an older reference never observes a
partially-applied update.

Key Design Decisions:
- SortedDict keyed by price keeps each side ordered during a merge
- Bids sorted in descending order (highest price first)
- Asks sorted in ascending order (lowest price first)
- Quantity of 0 means DELETE the price level
- Quantity > 0 means SET the absolute quantity at that price (not a delta)
- Each side is truncated to MAX_DEPTH levels after every operation

Author: VenueBook Team
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
from sortedcontainers import SortedDict
import logging

logger = logging.getLogger(__name__)


# Depth bound applied identically to every venue
MAX_DEPTH = 15


class BookSide(Enum):
    """Side of the book a list of levels belongs to."""
    BID = "bid"
    ASK = "ask"


@dataclass(frozen=True)
class PriceLevel:
    """
    A single (price, quantity) entry on one side of the book.

    Attributes:
        price: Level price
        quantity: Resting quantity at this price (always > 0 once retained)
    """
    price: Decimal
    quantity: Decimal

    def to_dict(self) -> dict:
        return {"price": float(self.price), "quantity": float(self.quantity)}


def _sorted_side(side: BookSide) -> SortedDict:
    """Create an empty price-keyed SortedDict in the side's priority order."""
    if side is BookSide.BID:
        # Use negative key function to reverse sort
        return SortedDict(lambda x: -x)
    return SortedDict()


def _to_levels(book_side: SortedDict, depth: int) -> Tuple[PriceLevel, ...]:
    return tuple(
        PriceLevel(price=price, quantity=quantity)
        for price, quantity in book_side.items()[:depth]
    )


def apply_snapshot(
    levels: Iterable[PriceLevel],
    side: BookSide,
    depth: int = MAX_DEPTH,
) -> Tuple[PriceLevel, ...]:
    """
    Build one side of the book from a full set of levels.

    Duplicate prices keep the later occurrence in input order and
    zero-quantity entries are dropped. The input is never mutated.

    Args:
        levels: Levels in whatever order the venue sent them
        side: Which side these levels belong to
        depth: Number of levels to retain

    Returns:
        Tuple of PriceLevel in best-first order, at most `depth` long
    """
    book_side = _sorted_side(side)

    for level in levels:
        if level.quantity > 0:
            book_side[level.price] = level.quantity
        else:
            # A later zero entry cancels an earlier one for the same price
            book_side.pop(level.price, None)

    return _to_levels(book_side, depth)


def apply_delta(
    existing: Iterable[PriceLevel],
    updates: Iterable[PriceLevel],
    side: BookSide,
    depth: int = MAX_DEPTH,
) -> Tuple[PriceLevel, ...]:
    """
    Merge incremental updates into an existing side of the book.

    Price is the unique key. Updates are applied in input order:
    - If quantity == 0: DELETE the price level (no-op if absent)
    - If quantity > 0: SET the price level to this absolute quantity

    When the same price appears twice in one batch the later update wins.
    Re-applying an identical batch yields the same result.

    Args:
        existing: Current levels for this side
        updates: Incremental updates from the venue
        side: Which side is being merged
        depth: Number of levels to retain

    Returns:
        New tuple of PriceLevel in best-first order
    """
    book_side = _sorted_side(side)
    for level in existing:
        book_side[level.price] = level.quantity

    for update in updates:
        if update.quantity == 0:
            if update.price in book_side:
                del book_side[update.price]
                logger.debug(f"Deleted {side.value} level at {update.price}")
        else:
            book_side[update.price] = update.quantity

    return _to_levels(book_side, depth)


@dataclass(frozen=True)
class OrderBookSnapshot:
    """
    Immutable bounded-depth book for one venue and symbol.

    Attributes:
        venue: Venue name (e.g. "OKX")
        symbol: Canonical symbol (e.g. "BTC-USD")
        bids: Bid levels, strictly descending by price
        asks: Ask levels, strictly ascending by price
        timestamp: Venue-supplied time in milliseconds. Display metadata only,
                   never used to order or gate merges.
    """
    venue: str
    symbol: str
    bids: Tuple[PriceLevel, ...] = field(default_factory=tuple)
    asks: Tuple[PriceLevel, ...] = field(default_factory=tuple)
    timestamp: Optional[int] = None

    @classmethod
    def from_levels(
        cls,
        venue: str,
        symbol: str,
        bids: Iterable[PriceLevel],
        asks: Iterable[PriceLevel],
        timestamp: Optional[int] = None,
        depth: int = MAX_DEPTH,
    ) -> "OrderBookSnapshot":
        """Create a book by replacing both sides with full level lists."""
        return cls(
            venue=venue,
            symbol=symbol,
            bids=apply_snapshot(bids, BookSide.BID, depth),
            asks=apply_snapshot(asks, BookSide.ASK, depth),
            timestamp=timestamp,
        )

    def with_delta(
        self,
        bids: Iterable[PriceLevel],
        asks: Iterable[PriceLevel],
        timestamp: Optional[int] = None,
        depth: int = MAX_DEPTH,
    ) -> "OrderBookSnapshot":
        """
        Return a new book with incremental updates merged into both sides.

        The timestamp is carried over unchanged when the update has none.
        """
        return OrderBookSnapshot(
            venue=self.venue,
            symbol=self.symbol,
            bids=apply_delta(self.bids, bids, BookSide.BID, depth),
            asks=apply_delta(self.asks, asks, BookSide.ASK, depth),
            timestamp=timestamp if timestamp is not None else self.timestamp,
        )

    def levels(self, side: BookSide) -> Tuple[PriceLevel, ...]:
        return self.bids if side is BookSide.BID else self.asks

    @property
    def best_bid(self) -> Optional[PriceLevel]:
        """Highest bid, or None if there are no bids."""
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[PriceLevel]:
        """Lowest ask, or None if there are no asks."""
        return self.asks[0] if self.asks else None

    @property
    def mid_price(self) -> Optional[Decimal]:
        """
        Calculate the mid-price: (best_bid + best_ask) / 2

        Returns:
            Mid-price as Decimal or None if either side is empty
        """
        bid = self.best_bid
        ask = self.best_ask

        if bid is None or ask is None:
            return None

        return (bid.price + ask.price) / 2

    @property
    def spread(self) -> Optional[Decimal]:
        """
        Calculate the bid-ask spread: best_ask - best_bid

        Returns:
            Spread as Decimal or None if either side is empty
        """
        bid = self.best_bid
        ask = self.best_ask

        if bid is None or ask is None:
            return None

        return ask.price - bid.price

    def cumulative_depth(self, side: BookSide) -> List[Tuple[Decimal, Decimal]]:
        """
        Running quantity totals from the best price outward.

        Returns:
            List of (price, cumulative quantity) pairs
        """
        total = Decimal("0")
        depth = []
        for level in self.levels(side):
            total += level.quantity
            depth.append((level.price, total))
        return depth

    def to_dict(self) -> Dict:
        """Convert to dictionary for logging/serialization."""
        return {
            "venue": self.venue,
            "symbol": self.symbol,
            "bids": [level.to_dict() for level in self.bids],
            "asks": [level.to_dict() for level in self.asks],
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        """String representation of the order book."""
        bid = self.best_bid
        ask = self.best_ask

        bid_str = f"{bid.price} x {bid.quantity}" if bid else "None"
        ask_str = f"{ask.price} x {ask.quantity}" if ask else "None"

        return (
            f"OrderBookSnapshot({self.venue}:{self.symbol}, "
            f"bid={bid_str}, ask={ask_str}, "
            f"levels={len(self.bids)}x{len(self.asks)})"
        )
