"""
BookStore - registry of the latest book per (venue, symbol).

Writers publish whole OrderBookSnapshot values; readers get whatever value
was last published. Because snapshots are immutable, a reader never sees a
half-applied update and never has to wait on a writer.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from ..models.order_book import OrderBookSnapshot

logger = logging.getLogger(__name__)

BookKey = Tuple[str, str]


class BookStore:
    """
    Thin (venue, symbol) -> OrderBookSnapshot registry.

    Usage:
        store = BookStore()
        store.publish("OKX", "BTC-USD", snapshot)
        book = store.get_snapshot("OKX", "BTC-USD")
        store.clear("OKX")  # venue disconnected
    """

    def __init__(self):
        self._books: Dict[BookKey, OrderBookSnapshot] = {}
        # Guards the dict itself; published values are never mutated
        self._lock = threading.Lock()

    def get_snapshot(self, venue: str, symbol: str) -> Optional[OrderBookSnapshot]:
        """Latest published book, or None if there is none."""
        return self._books.get((venue, symbol))

    def publish(self, venue: str, symbol: str, snapshot: OrderBookSnapshot) -> None:
        """Make `snapshot` the current book for (venue, symbol)."""
        with self._lock:
            self._books[(venue, symbol)] = snapshot

    def clear(self, venue: str, symbol: Optional[str] = None) -> int:
        """
        Tear down books for a venue, or one symbol on a venue.

        Args:
            venue: Venue whose books to remove
            symbol: If given, only this symbol is removed

        Returns:
            Number of books removed
        """
        with self._lock:
            if symbol is not None:
                keys = [(venue, symbol)] if (venue, symbol) in self._books else []
            else:
                keys = [key for key in self._books if key[0] == venue]
            for key in keys:
                del self._books[key]

        if keys:
            logger.debug(f"Cleared {len(keys)} book(s) for {venue}")
        return len(keys)

    def keys(self) -> List[BookKey]:
        """All (venue, symbol) pairs that currently have a book."""
        with self._lock:
            return list(self._books)

    def __len__(self) -> int:
        return len(self._books)

    def __contains__(self, key: BookKey) -> bool:
        return key in self._books

    def __repr__(self) -> str:
        return f"BookStore(books={len(self._books)})"
