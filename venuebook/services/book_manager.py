"""
BookManager Service - Application Layer

This service keeps the BookStore in sync with venue feeds. It sits between the
infrastructure layer (websocket clients + venue adapters) and the consumers of
book state (simulation, display).

Key Responsibilities:
1. Route raw frames to the venue's FeedAdapter
2. Replace a book on snapshot frames, merge deltas into the existing book
3. Publish each resulting immutable snapshot to the BookStore
4. Serialize writers per (venue, symbol); readers never wait
5. Track statistics and notify subscribers after every applied update

Architecture:
- Receives frames from VenueWebSocketClient callbacks
- Uses FeedAdapter.decode() for venue decoding
- Uses the LevelBook merge engine on OrderBookSnapshot
- Publishes to BookStore, read by SimulationEngine
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Callable, List, Tuple
from dataclasses import dataclass
from datetime import datetime

from ..clients.venues import FeedAdapter, get_adapter, promote_without_book
from ..models.market_data import ParsedBookUpdate, ParseMode
from ..models.order_book import MAX_DEPTH, OrderBookSnapshot
from .book_store import BookStore


@dataclass
class BookManagerStats:
    """Statistics for BookManager performance monitoring."""
    total_messages_processed: int = 0
    snapshots_applied: int = 0
    deltas_applied: int = 0
    messages_ignored: int = 0
    errors_encountered: int = 0
    last_update_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "total_messages_processed": self.total_messages_processed,
            "snapshots_applied": self.snapshots_applied,
            "deltas_applied": self.deltas_applied,
            "messages_ignored": self.messages_ignored,
            "errors_encountered": self.errors_encountered,
            "last_update_time": self.last_update_time.isoformat() if self.last_update_time else None,
        }


class BookManager:
    """
    Multi-venue order book synchronization service.

    Usage:
        store = BookStore()
        manager = BookManager(store)
        manager.track("Bybit", "BTC-USD")

        # Feed raw frames from the websocket client
        await manager.process_message("Bybit", raw_frame)

        # Query current state
        book = store.get_snapshot("Bybit", "BTC-USD")

        # Subscribe to updates
        manager.subscribe(on_book_update)

    Attributes:
        store: BookStore receiving published snapshots
        depth: Number of levels kept per side
        stats: Performance and diagnostic statistics
    """

    def __init__(
        self,
        store: Optional[BookStore] = None,
        adapters: Optional[Dict[str, FeedAdapter]] = None,
        depth: int = MAX_DEPTH,
    ):
        """
        Initialize BookManager.

        Args:
            store: BookStore to publish into (a new one is created if omitted)
            adapters: Venue name -> adapter. Adapters for tracked venues that
                      are missing here are created on demand.
            depth: Levels retained per side
        """
        self.store = store if store is not None else BookStore()
        self.depth = depth
        self.stats = BookManagerStats()

        self._adapters: Dict[str, FeedAdapter] = dict(adapters or {})
        # (venue, venue-native symbol) -> canonical symbol
        self._tracked: Dict[Tuple[str, str], str] = {}
        # One writer slot per (venue, canonical symbol)
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

        # Subscriber callbacks (observer pattern)
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []

        self.logger = logging.getLogger(__name__)
        self.logger.debug("BookManager initialized")

    def adapter(self, venue: str) -> FeedAdapter:
        """
        Adapter for a venue, created on first use.

        Raises:
            ValueError: If the venue is not supported
        """
        if venue not in self._adapters:
            self._adapters[venue] = get_adapter(venue)
        return self._adapters[venue]

    def track(self, venue: str, symbol: str) -> str:
        """
        Start accepting book frames for a canonical symbol on a venue.

        Args:
            venue: Venue name
            symbol: Canonical symbol (e.g. "BTC-USD")

        Returns:
            The venue-native symbol frames will carry
        """
        venue_symbol = self.adapter(venue).symbol_format(symbol)
        self._tracked[(venue, venue_symbol)] = symbol
        self.logger.debug(f"Tracking {venue}:{symbol} as {venue_symbol}")
        return venue_symbol

    def untrack(self, venue: str, symbol: str) -> None:
        """Stop accepting frames for a symbol and tear down its book."""
        venue_symbol = self.adapter(venue).symbol_format(symbol)
        self._tracked.pop((venue, venue_symbol), None)
        self._locks.pop((venue, symbol), None)
        self.store.clear(venue, symbol)

    def switch_symbol(self, venue: str, old_symbol: str, new_symbol: str) -> str:
        """
        Move tracking on a venue from one canonical symbol to another.

        The old symbol's book is torn down and its frames are ignored from
        now on. Matches VenueWebSocketClient's symbol-change callback.

        Returns:
            The venue-native symbol for new_symbol
        """
        self.untrack(venue, old_symbol)
        venue_symbol = self.track(venue, new_symbol)
        self.logger.info(f"{venue}: now tracking {new_symbol} (was {old_symbol})")
        return venue_symbol

    def tracked_symbols(self, venue: str) -> List[str]:
        """Canonical symbols currently tracked on a venue."""
        return [symbol for (v, _), symbol in self._tracked.items() if v == venue]

    async def process_message(self, venue: str, message: Any) -> bool:
        """
        Process a raw frame from a venue feed.

        This is the main entry point for websocket client callbacks.

        Args:
            venue: Venue the frame came from
            message: Raw JSON text/bytes or decoded dict

        Returns:
            True if a book was updated, False if the frame was ignored or failed
        """
        try:
            self.stats.total_messages_processed += 1
            self.stats.last_update_time = datetime.utcnow()

            # Decode first: the symbol is only known once the frame is read
            update = self.adapter(venue).decode(message)
            if update.is_ignored:
                self.stats.messages_ignored += 1
                return False

            symbol = self._tracked.get((venue, update.symbol))
            if symbol is None:
                self.stats.messages_ignored += 1
                self.logger.debug(f"Ignoring untracked symbol {venue}:{update.symbol}")
                return False

            lock = self._locks.setdefault((venue, symbol), asyncio.Lock())
            async with lock:
                existing = self.store.get_snapshot(venue, symbol)
                update = promote_without_book(update, existing)
                book = self.apply_update(venue, symbol, update, existing)
                self.store.publish(venue, symbol, book)

            await self._notify_subscribers(update.mode, book)
            return True

        except ValueError as e:
            self.stats.errors_encountered += 1
            self.logger.error(f"Cannot process message for {venue}: {e}")
            return False

        except Exception as e:
            self.stats.errors_encountered += 1
            self.logger.error(f"Error processing message: {e}", exc_info=True)
            return False

    def apply_update(
        self,
        venue: str,
        symbol: str,
        update: ParsedBookUpdate,
        existing: Optional[OrderBookSnapshot] = None,
    ) -> OrderBookSnapshot:
        """
        Produce the next book value for a parsed frame.

        REPLACE (or any frame without an existing book) rebuilds both sides;
        MERGE applies the updates against the existing book.

        Args:
            venue: Venue name
            symbol: Canonical symbol
            update: Parsed REPLACE or MERGE frame
            existing: Current book, if any

        Returns:
            New OrderBookSnapshot (existing is left untouched)
        """
        if update.mode is ParseMode.MERGE and existing is not None:
            self.stats.deltas_applied += 1
            return existing.with_delta(
                update.bids, update.asks, timestamp=update.timestamp, depth=self.depth
            )

        self.stats.snapshots_applied += 1
        book = OrderBookSnapshot.from_levels(
            venue=venue,
            symbol=symbol,
            bids=update.bids,
            asks=update.asks,
            timestamp=update.timestamp,
            depth=self.depth,
        )
        self.logger.debug(
            f"Snapshot applied for {venue}:{symbol}: "
            f"{len(book.bids)} bids, {len(book.asks)} asks"
        )
        return book

    def get_book_state(self, venue: str, symbol: str) -> Dict[str, Any]:
        """
        Get a summary of the current book for display.

        Returns:
            Dictionary with venue, symbol, initialized flag, best bid/ask,
            mid price, spread and level counts
        """
        book = self.store.get_snapshot(venue, symbol)
        best_bid = book.best_bid if book else None
        best_ask = book.best_ask if book else None

        return {
            "venue": venue,
            "symbol": symbol,
            "initialized": book is not None,
            "best_bid_price": float(best_bid.price) if best_bid else None,
            "best_bid_size": float(best_bid.quantity) if best_bid else None,
            "best_ask_price": float(best_ask.price) if best_ask else None,
            "best_ask_size": float(best_ask.quantity) if best_ask else None,
            "mid_price": float(book.mid_price) if book and book.mid_price is not None else None,
            "spread": float(book.spread) if book and book.spread is not None else None,
            "num_bid_levels": len(book.bids) if book else 0,
            "num_ask_levels": len(book.asks) if book else 0,
            "timestamp": book.timestamp if book else None,
        }

    def get_stats(self) -> Dict[str, Any]:
        """
        Get BookManager statistics.

        Returns:
            Statistics dictionary with processing counts and diagnostics
        """
        return self.stats.to_dict()

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """
        Subscribe to book update events.

        Subscribers are notified after each successful replace or merge.

        Args:
            callback: Sync or async function receiving
                      {"type": "replace"|"merge", "venue", "symbol", "book", "timestamp"}

        Example:
            async def on_update(event):
                print(f"Book updated: {event['venue']} {event['book'].best_bid}")

            manager.subscribe(on_update)
        """
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """
        Unsubscribe from book update events.

        Args:
            callback: Previously registered callback to remove
        """
        if callback in self._subscribers:
            self._subscribers.remove(callback)
            self.logger.debug(f"Subscriber removed (total: {len(self._subscribers)})")

    async def _notify_subscribers(self, mode: ParseMode, book: OrderBookSnapshot) -> None:
        if not self._subscribers:
            return

        event = {
            "type": mode.value,
            "venue": book.venue,
            "symbol": book.symbol,
            "book": book,
            "timestamp": book.timestamp,
        }

        for callback in self._subscribers:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(event)
                else:
                    callback(event)
            except Exception as e:
                self.logger.error(f"Error in subscriber callback: {e}", exc_info=True)

    def reset(self, venue: str, symbol: Optional[str] = None) -> None:
        """
        Tear down the books for a venue, or one symbol on it.

        Called when the venue disconnects (matches VenueWebSocketClient's
        teardown callback). Tracking is kept so a reconnect starts filling
        books again from the next snapshot.
        """
        self.store.clear(venue, symbol)
        # Don't reset stats - keep cumulative counts
        self.logger.debug(f"Books reset for {venue}" + (f":{symbol}" if symbol else ""))

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"BookManager(books={len(self.store)}, "
            f"tracked={len(self._tracked)}, "
            f"processed={self.stats.total_messages_processed})"
        )
