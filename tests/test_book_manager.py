"""
Tests for BookManager service.

This module tests the application layer service that keeps order books in
sync with venue feeds, including snapshot/delta routing, symbol tracking,
statistics and subscriber notification.
"""

import pytest
import asyncio
import json
from decimal import Decimal

from venuebook.clients.venue_client import VenueWebSocketClient
from venuebook.services.book_manager import BookManager, BookManagerStats
from venuebook.services.book_store import BookStore
from venuebook.models.market_data import ParsedBookUpdate, ParseMode
from venuebook.models.order_book import OrderBookSnapshot, PriceLevel


def lv(price, quantity):
    return PriceLevel(Decimal(str(price)), Decimal(str(quantity)))


def bybit_frame(msg_type="snapshot", bids=None, asks=None, symbol="BTCUSDT"):
    return {
        "topic": f"orderbook.50.{symbol}",
        "type": msg_type,
        "ts": 1700000000000,
        "data": {
            "s": symbol,
            "b": bids if bids is not None else [["100", "1"], ["99", "2"]],
            "a": asks if asks is not None else [["101", "3"], ["102", "4"]],
        },
    }


def okx_frame(action="snapshot", bids=None, asks=None):
    return {
        "arg": {"channel": "books", "instId": "BTC-USD"},
        "action": action,
        "data": [{
            "bids": bids if bids is not None else [["100", "1", "0", "1"]],
            "asks": asks if asks is not None else [["101", "1", "0", "1"]],
            "ts": "1700000000000",
        }],
    }


@pytest.fixture
def store():
    return BookStore()


@pytest.fixture
def manager(store):
    manager = BookManager(store)
    manager.track("Bybit", "BTC-USD")
    manager.track("OKX", "BTC-USD")
    return manager


class TestBookManagerStats:
    """Tests for BookManagerStats data class."""

    def test_stats_initialization(self):
        stats = BookManagerStats()

        assert stats.total_messages_processed == 0
        assert stats.snapshots_applied == 0
        assert stats.deltas_applied == 0
        assert stats.messages_ignored == 0
        assert stats.errors_encountered == 0
        assert stats.last_update_time is None

    def test_stats_to_dict(self):
        data = BookManagerStats(total_messages_processed=3, snapshots_applied=1).to_dict()

        assert data["total_messages_processed"] == 3
        assert data["snapshots_applied"] == 1
        assert data["last_update_time"] is None


class TestTracking:
    """Tests for symbol tracking."""

    def test_track_returns_venue_symbol(self, store):
        manager = BookManager(store)

        assert manager.track("Bybit", "ETH-USD") == "ETHUSDT"
        assert manager.track("Deribit", "ETH-USD") == "ETH-PERPETUAL"
        assert manager.tracked_symbols("Bybit") == ["ETH-USD"]

    def test_track_unknown_venue(self, store):
        manager = BookManager(store)

        with pytest.raises(ValueError, match="Unsupported venue"):
            manager.track("Kraken", "BTC-USD")

    @pytest.mark.asyncio
    async def test_untrack_clears_book(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())
        assert store.get_snapshot("Bybit", "BTC-USD") is not None

        manager.untrack("Bybit", "BTC-USD")

        assert store.get_snapshot("Bybit", "BTC-USD") is None
        assert manager.tracked_symbols("Bybit") == []
        assert await manager.process_message("Bybit", bybit_frame()) is False


class TestProcessMessage:
    """Tests for snapshot and delta routing."""

    @pytest.mark.asyncio
    async def test_snapshot_creates_book(self, manager, store):
        result = await manager.process_message("Bybit", bybit_frame())

        book = store.get_snapshot("Bybit", "BTC-USD")
        assert result is True
        assert book.venue == "Bybit"
        assert book.symbol == "BTC-USD"
        assert book.bids == (lv(100, 1), lv(99, 2))
        assert book.asks == (lv(101, 3), lv(102, 4))
        assert manager.stats.snapshots_applied == 1

    @pytest.mark.asyncio
    async def test_delta_merges_into_book(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())
        first = store.get_snapshot("Bybit", "BTC-USD")

        result = await manager.process_message(
            "Bybit", bybit_frame("delta", bids=[["100", "0"], ["99.5", "5"]], asks=[["101", "1"]])
        )

        book = store.get_snapshot("Bybit", "BTC-USD")
        assert result is True
        assert book.bids == (lv(99.5, 5), lv(99, 2))
        assert book.asks == (lv(101, 1), lv(102, 4))
        assert manager.stats.deltas_applied == 1
        # Earlier snapshot reference is unchanged
        assert first.bids == (lv(100, 1), lv(99, 2))

    @pytest.mark.asyncio
    async def test_first_delta_builds_full_book(self, manager, store):
        """A delta with no existing book is applied as a snapshot."""
        await manager.process_message("OKX", okx_frame(action="update"))

        book = store.get_snapshot("OKX", "BTC-USD")
        assert book.bids == (lv(100, 1),)
        assert manager.stats.snapshots_applied == 1
        assert manager.stats.deltas_applied == 0

    @pytest.mark.asyncio
    async def test_snapshot_replaces_previous_book(self, manager, store):
        await manager.process_message("OKX", okx_frame())

        await manager.process_message("OKX", okx_frame(bids=[["95", "7"]], asks=[]))

        book = store.get_snapshot("OKX", "BTC-USD")
        assert book.bids == (lv(95, 7),)
        assert book.asks == ()

    @pytest.mark.asyncio
    async def test_json_text_frame(self, manager, store):
        result = await manager.process_message("Bybit", json.dumps(bybit_frame()))

        assert result is True
        assert ("Bybit", "BTC-USD") in store

    @pytest.mark.asyncio
    async def test_venues_are_isolated(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())
        await manager.process_message("OKX", okx_frame())

        assert store.get_snapshot("Bybit", "BTC-USD").best_bid == lv(100, 1)
        assert store.get_snapshot("OKX", "BTC-USD").best_ask == lv(101, 1)
        assert len(store) == 2


class TestIgnoredFrames:
    """Tests for frames that do not touch any book."""

    @pytest.mark.asyncio
    async def test_control_frame_ignored(self, manager, store):
        result = await manager.process_message("Bybit", {"op": "subscribe", "success": True})

        assert result is False
        assert manager.stats.messages_ignored == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_malformed_frame_leaves_book_unchanged(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())
        before = store.get_snapshot("Bybit", "BTC-USD")

        result = await manager.process_message("Bybit", bybit_frame("delta", bids=[["oops", "1"]]))

        assert result is False
        assert store.get_snapshot("Bybit", "BTC-USD") is before

    @pytest.mark.asyncio
    async def test_untracked_symbol_ignored(self, manager, store):
        result = await manager.process_message("Bybit", bybit_frame(symbol="ETHUSDT"))

        assert result is False
        assert manager.stats.messages_ignored == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unknown_venue_counts_error(self, manager):
        result = await manager.process_message("Kraken", bybit_frame())

        assert result is False
        assert manager.stats.errors_encountered == 1

    @pytest.mark.asyncio
    async def test_total_count_includes_ignored(self, manager):
        await manager.process_message("Bybit", bybit_frame())
        await manager.process_message("Bybit", {"op": "pong"})

        stats = manager.get_stats()
        assert stats["total_messages_processed"] == 2
        assert stats["messages_ignored"] == 1
        assert stats["last_update_time"] is not None


class TestApplyUpdate:
    """Tests for direct update application."""

    def test_replace_builds_book(self):
        manager = BookManager()
        update = ParsedBookUpdate(mode=ParseMode.REPLACE, symbol="X", bids=[lv(1, 1)], asks=[lv(2, 1)])

        book = manager.apply_update("OKX", "X-USD", update)

        assert book.symbol == "X-USD"
        assert book.best_bid == lv(1, 1)

    def test_depth_bound(self):
        manager = BookManager(depth=3)
        update = ParsedBookUpdate(
            mode=ParseMode.REPLACE, symbol="X", bids=[lv(i, 1) for i in range(1, 10)], asks=[]
        )

        book = manager.apply_update("OKX", "X-USD", update)

        assert [level.price for level in book.bids] == [Decimal("9"), Decimal("8"), Decimal("7")]

    def test_merge_leaves_existing_untouched(self):
        manager = BookManager()
        existing = OrderBookSnapshot.from_levels("OKX", "X-USD", [lv(1, 1)], [lv(2, 1)])
        update = ParsedBookUpdate(mode=ParseMode.MERGE, symbol="X", bids=[lv(1, 0)])

        book = manager.apply_update("OKX", "X-USD", update, existing)

        assert book.bids == ()
        assert existing.bids == (lv(1, 1),)


class TestBookState:
    """Tests for display summaries."""

    def test_uninitialized_state(self, manager):
        state = manager.get_book_state("Bybit", "BTC-USD")

        assert state["initialized"] is False
        assert state["best_bid_price"] is None
        assert state["num_bid_levels"] == 0

    @pytest.mark.asyncio
    async def test_initialized_state(self, manager):
        await manager.process_message("Bybit", bybit_frame())

        state = manager.get_book_state("Bybit", "BTC-USD")

        assert state["initialized"] is True
        assert state["best_bid_price"] == 100.0
        assert state["best_ask_price"] == 101.0
        assert state["mid_price"] == 100.5
        assert state["spread"] == 1.0
        assert state["num_ask_levels"] == 2
        assert state["timestamp"] == 1700000000000


class TestSubscribers:
    """Tests for the observer interface."""

    @pytest.mark.asyncio
    async def test_sync_subscriber(self, manager):
        events = []
        manager.subscribe(events.append)

        await manager.process_message("Bybit", bybit_frame())
        await manager.process_message("Bybit", bybit_frame("delta", bids=[], asks=[]))

        assert [event["type"] for event in events] == ["replace", "merge"]
        assert events[0]["venue"] == "Bybit"
        assert events[0]["symbol"] == "BTC-USD"
        assert isinstance(events[0]["book"], OrderBookSnapshot)

    @pytest.mark.asyncio
    async def test_async_subscriber(self, manager):
        events = []

        async def on_update(event):
            events.append(event)

        manager.subscribe(on_update)
        await manager.process_message("OKX", okx_frame())

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_processing(self, manager, store):
        def broken(event):
            raise RuntimeError("boom")

        manager.subscribe(broken)

        assert await manager.process_message("Bybit", bybit_frame()) is True
        assert ("Bybit", "BTC-USD") in store

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager):
        events = []
        manager.subscribe(events.append)
        manager.unsubscribe(events.append)

        await manager.process_message("Bybit", bybit_frame())

        assert events == []

    @pytest.mark.asyncio
    async def test_ignored_frame_does_not_notify(self, manager):
        events = []
        manager.subscribe(events.append)

        await manager.process_message("Bybit", {"op": "pong"})

        assert events == []


class TestReset:
    """Tests for venue teardown."""

    @pytest.mark.asyncio
    async def test_reset_clears_only_that_venue(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())
        await manager.process_message("OKX", okx_frame())

        manager.reset("Bybit")

        assert store.get_snapshot("Bybit", "BTC-USD") is None
        assert store.get_snapshot("OKX", "BTC-USD") is not None
        # Tracking survives, so the next snapshot rebuilds the book
        assert await manager.process_message("Bybit", bybit_frame()) is True

    @pytest.mark.asyncio
    async def test_concurrent_writers_serialized(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())
        deltas = [
            bybit_frame("delta", bids=[[str(90 + i), "1"]], asks=[]) for i in range(5)
        ]

        results = await asyncio.gather(*(manager.process_message("Bybit", d) for d in deltas))

        book = store.get_snapshot("Bybit", "BTC-USD")
        assert all(results)
        for i in range(5):
            assert lv(90 + i, 1) in book.bids

    def test_reset_single_symbol(self, store):
        manager = BookManager(store)
        store.publish("OKX", "BTC-USD", OrderBookSnapshot(venue="OKX", symbol="BTC-USD"))
        store.publish("OKX", "ETH-USD", OrderBookSnapshot(venue="OKX", symbol="ETH-USD"))

        manager.reset("OKX", "BTC-USD")

        assert store.keys() == [("OKX", "ETH-USD")]


class TestSymbolSwitch:
    """Tests for moving tracking from one symbol to another."""

    @pytest.mark.asyncio
    async def test_old_symbol_frames_dropped_after_switch(self, manager, store):
        await manager.process_message("Bybit", bybit_frame())

        assert manager.switch_symbol("Bybit", "BTC-USD", "ETH-USD") == "ETHUSDT"

        assert store.get_snapshot("Bybit", "BTC-USD") is None
        assert manager.tracked_symbols("Bybit") == ["ETH-USD"]
        assert await manager.process_message("Bybit", bybit_frame()) is False
        assert await manager.process_message("Bybit", bybit_frame(symbol="ETHUSDT")) is True
        assert store.get_snapshot("Bybit", "ETH-USD") is not None

    @pytest.mark.asyncio
    async def test_client_switch_retargets_manager(self, manager, store):
        """Wired the way the feed runner wires them."""
        client = VenueWebSocketClient(adapter=manager.adapter("Bybit"), symbol="BTC-USD")
        client.add_teardown_callback(manager.reset)
        client.add_symbol_change_callback(manager.switch_symbol)
        await manager.process_message("Bybit", bybit_frame())

        await client.switch_symbol("ETH-USD")

        assert store.get_snapshot("Bybit", "BTC-USD") is None
        assert manager.tracked_symbols("Bybit") == ["ETH-USD"]
        assert await manager.process_message("Bybit", bybit_frame()) is False
        assert await manager.process_message("Bybit", bybit_frame(symbol="ETHUSDT")) is True

    @pytest.mark.asyncio
    async def test_client_teardown_keeps_tracking(self, manager, store):
        client = VenueWebSocketClient(adapter=manager.adapter("Bybit"), symbol="BTC-USD")
        client.add_teardown_callback(manager.reset)
        await manager.process_message("Bybit", bybit_frame())
        await manager.process_message("OKX", okx_frame())

        await client.disconnect()

        assert store.get_snapshot("Bybit", "BTC-USD") is None
        assert store.get_snapshot("OKX", "BTC-USD") is not None
        assert "BTC-USD" in manager.tracked_symbols("Bybit")
