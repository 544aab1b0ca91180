"""
Market Data Models: Normalized output of venue feed adapters

Every venue speaks its own wire format. Adapters decode raw frames into the
types defined here so the rest of the application only ever sees:
- ParsedBookUpdate: a replace, merge or ignore instruction for one book
- VenueSymbol: one entry from a venue's instrument list

Author: VenueBook Team
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional, Tuple
import logging

from .order_book import PriceLevel

logger = logging.getLogger(__name__)


class MalformedMessage(ValueError):
    """
    Raised while decoding a venue payload that does not match its format.

    Adapters catch this at their boundary and report the frame as ignored;
    it never reaches callers of FeedAdapter.parse().
    """


class ParseMode(Enum):
    """What the caller should do with a parsed frame."""
    REPLACE = "replace"
    MERGE = "merge"
    IGNORE = "ignore"


@dataclass
class ParsedBookUpdate:
    """
    Result of decoding one raw venue frame.

    Attributes:
        mode: REPLACE (full level lists), MERGE (incremental updates) or IGNORE
        symbol: Venue-native symbol the frame refers to
        bids: Normalized bid levels (full list or updates depending on mode)
        asks: Normalized ask levels
        timestamp: Venue time in milliseconds, display metadata only
    """
    mode: ParseMode
    symbol: Optional[str] = None
    bids: List[PriceLevel] = field(default_factory=list)
    asks: List[PriceLevel] = field(default_factory=list)
    timestamp: Optional[int] = None

    @classmethod
    def ignore(cls) -> "ParsedBookUpdate":
        return cls(mode=ParseMode.IGNORE)

    @property
    def is_ignored(self) -> bool:
        return self.mode is ParseMode.IGNORE

    def __repr__(self) -> str:
        return (
            f"ParsedBookUpdate({self.mode.value}, {self.symbol}, "
            f"bids={len(self.bids)}, asks={len(self.asks)})"
        )


@dataclass(frozen=True)
class VenueSymbol:
    """
    One tradable instrument as listed by a venue.

    Attributes:
        symbol: Venue-native instrument id (e.g. "BTCUSDT")
        base: Base currency
        quote: Quote currency
    """
    symbol: str
    base: str
    quote: str


def parse_decimal(value: Any) -> Decimal:
    """
    Convert a wire value (string or number) to Decimal.

    Floats go through str() so 0.1 stays 0.1.

    Raises:
        MalformedMessage: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise MalformedMessage(f"Invalid numeric value: {value!r}")
    try:
        result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedMessage(f"Invalid numeric value: {value!r}") from e
    if not result.is_finite():
        raise MalformedMessage(f"Non-finite numeric value: {value!r}")
    return result


def parse_level(price: Any, quantity: Any) -> PriceLevel:
    """
    Build a PriceLevel from raw wire values.

    Raises:
        MalformedMessage: If either value is non-numeric or negative
    """
    level = PriceLevel(price=parse_decimal(price), quantity=parse_decimal(quantity))
    if level.price < 0 or level.quantity < 0:
        raise MalformedMessage(f"Negative price or quantity: {price}, {quantity}")
    return level


def parse_level_pairs(raw_levels: Any) -> List[PriceLevel]:
    """
    Parse a list of [price, quantity, ...] tuples.

    Extra trailing fields (order counts, liquidation flags) are ignored.

    Raises:
        MalformedMessage: If the payload is not a list of tuples
    """
    if raw_levels is None:
        return []
    if not isinstance(raw_levels, list):
        raise MalformedMessage(f"Expected level list, got {type(raw_levels).__name__}")

    levels = []
    for entry in raw_levels:
        if not isinstance(entry, (list, tuple)) or len(entry) < 2:
            raise MalformedMessage(f"Invalid level format: {entry}")
        levels.append(parse_level(entry[0], entry[1]))
    return levels


def split_symbol(symbol: str) -> Tuple[str, str]:
    """Split a canonical "BASE-QUOTE" symbol into its two currencies."""
    base, _, quote = symbol.partition("-")
    return base, quote
