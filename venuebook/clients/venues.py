"""
Venue feed adapters - normalize venue-specific book messages.

Each supported venue gets one FeedAdapter subclass that knows:
- how canonical symbols ("BTC-USD") map to the venue's instrument ids
- the subscribe/unsubscribe frames for its order book channel
- how to decode raw frames into ParsedBookUpdate (replace / merge / ignore)
- how to read the venue's instrument list

Adding a venue means adding a subclass and registering it in VENUE_ADAPTERS;
the merge engine and the simulation engine are untouched.
"""

import itertools
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

from ..models.market_data import (
    MalformedMessage,
    ParsedBookUpdate,
    ParseMode,
    VenueSymbol,
    parse_level,
    parse_level_pairs,
    split_symbol,
)
from ..models.order_book import OrderBookSnapshot, PriceLevel
from ..utils.time_utils import parse_exchange_timestamp

logger = logging.getLogger(__name__)


def promote_without_book(
    update: ParsedBookUpdate,
    existing: Optional[OrderBookSnapshot],
) -> ParsedBookUpdate:
    """Treat a MERGE as a REPLACE when there is no book to merge into."""
    if update.mode is ParseMode.MERGE and existing is None:
        update.mode = ParseMode.REPLACE
    return update


class FeedAdapter(ABC):
    """
    Base class for venue feed adapters.

    Subclasses implement `_decode`, which may raise MalformedMessage freely;
    `decode` and `parse` turn every decoding failure into an ignored frame
    so errors never propagate to the caller.

    Attributes:
        name: Venue name used as the BookStore key
        ws_url: Public websocket endpoint
        instruments_url: REST endpoint listing tradable instruments
    """

    name: str = ""
    ws_url: str = ""
    instruments_url: str = ""

    @abstractmethod
    def symbol_format(self, symbol: str) -> str:
        """Map a canonical symbol to the venue-native instrument id."""

    @abstractmethod
    def subscribe_message(self, symbol: str) -> Dict[str, Any]:
        """Frame subscribing to the book channel for a canonical symbol."""

    @abstractmethod
    def unsubscribe_message(self, symbol: str) -> Dict[str, Any]:
        """Frame unsubscribing from the book channel for a canonical symbol."""

    @abstractmethod
    def parse_instruments(self, payload: Dict[str, Any]) -> List[VenueSymbol]:
        """Normalize the venue's instrument list response."""

    @abstractmethod
    def _decode(self, message: Dict[str, Any]) -> ParsedBookUpdate:
        """Decode one frame. May raise MalformedMessage."""

    def decode(self, raw_message: Any) -> ParsedBookUpdate:
        """
        Classify and normalize one raw frame without looking at any book.

        Subscription acks, heartbeats and malformed payloads come back with
        mode IGNORE; nothing is raised.
        """
        try:
            message = self._load(raw_message)
            return self._decode(message)
        except MalformedMessage as e:
            logger.warning(f"{self.name}: dropping malformed message: {e}")
        except (KeyError, TypeError, AttributeError, ValueError, OverflowError) as e:
            # Fields of the wrong JSON type or out-of-range values
            logger.warning(f"{self.name}: dropping malformed message: {e!r}")
        return ParsedBookUpdate.ignore()

    def parse(
        self,
        raw_message: Any,
        existing: Optional[OrderBookSnapshot] = None,
    ) -> ParsedBookUpdate:
        """
        Classify and normalize one raw venue frame against the current book.

        Args:
            raw_message: JSON text, bytes, or an already-decoded dict
            existing: Current book for the frame's symbol, if any

        Returns:
            ParsedBookUpdate. A MERGE with no existing book is promoted to
            REPLACE so the first frame always builds a full book.
        """
        return promote_without_book(self.decode(raw_message), existing)

    @staticmethod
    def _load(raw_message: Any) -> Dict[str, Any]:
        if isinstance(raw_message, (str, bytes, bytearray)):
            try:
                raw_message = json.loads(raw_message)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise MalformedMessage(f"Invalid JSON: {e}") from e
        if not isinstance(raw_message, dict):
            raise MalformedMessage(f"Expected JSON object, got {type(raw_message).__name__}")
        return raw_message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name})"


class OKXAdapter(FeedAdapter):
    """
    OKX v5 public `books` channel.

    Frames:
        {"arg": {"channel": "books", "instId": "BTC-USDT"},
         "action": "snapshot" | "update",
         "data": [{"bids": [[px, sz, "0", orders], ...], "asks": [...], "ts": "..."}]}

    Control frames carry an "event" key (subscribe, unsubscribe, error).
    """

    name = "OKX"
    ws_url = "wss://ws.okx.com:8443/ws/v5/public"
    instruments_url = "https://www.okx.com/api/v5/public/instruments?instType=SPOT"

    def symbol_format(self, symbol: str) -> str:
        return symbol

    def subscribe_message(self, symbol: str) -> Dict[str, Any]:
        return {
            "op": "subscribe",
            "args": [{"channel": "books", "instId": self.symbol_format(symbol)}],
        }

    def unsubscribe_message(self, symbol: str) -> Dict[str, Any]:
        return {
            "op": "unsubscribe",
            "args": [{"channel": "books", "instId": self.symbol_format(symbol)}],
        }

    def parse_instruments(self, payload: Dict[str, Any]) -> List[VenueSymbol]:
        return [
            VenueSymbol(symbol=item["instId"], base=item["baseCcy"], quote=item["quoteCcy"])
            for item in payload.get("data") or []
        ]

    def _decode(self, message):
        if "event" in message:
            if message["event"] == "error":
                logger.warning(f"OKX error frame: {message.get('msg')}")
            return ParsedBookUpdate.ignore()

        data = message.get("data")
        if not data:
            return ParsedBookUpdate.ignore()
        if not isinstance(data, list) or not isinstance(data[0], dict):
            raise MalformedMessage("data must be a list of book objects")

        arg = message.get("arg") or {}
        symbol = arg.get("instId")
        if not symbol:
            raise MalformedMessage("missing arg.instId")

        action = message.get("action")
        if action == "snapshot":
            mode = ParseMode.REPLACE
        elif action in ("update", None):
            mode = ParseMode.MERGE
        else:
            raise MalformedMessage(f"unknown action {action!r}")

        book_data = data[0]
        return ParsedBookUpdate(
            mode=mode,
            symbol=symbol,
            bids=parse_level_pairs(book_data.get("bids")),
            asks=parse_level_pairs(book_data.get("asks")),
            timestamp=parse_exchange_timestamp(book_data.get("ts")),
        )


class BybitAdapter(FeedAdapter):
    """
    Bybit v5 spot `orderbook.{depth}.{symbol}` topic.

    Frames:
        {"topic": "orderbook.50.BTCUSDT", "type": "snapshot" | "delta",
         "ts": 1700000000000,
         "data": {"s": "BTCUSDT", "b": [[px, sz], ...], "a": [...], "u": 1}}

    Responses to operations carry an "op" key ({"op": "subscribe", "success": true}).
    """

    name = "Bybit"
    ws_url = "wss://stream.bybit.com/v5/public/spot"
    instruments_url = "https://api.bybit.com/v5/market/instruments-info?category=spot"
    depth = 50

    def symbol_format(self, symbol: str) -> str:
        base, quote = split_symbol(symbol)
        # Bybit spot quotes dollar pairs in USDT
        if quote == "USD":
            quote = "USDT"
        return f"{base}{quote}"

    def _topic(self, symbol: str) -> str:
        return f"orderbook.{self.depth}.{self.symbol_format(symbol)}"

    def subscribe_message(self, symbol: str) -> Dict[str, Any]:
        return {"op": "subscribe", "args": [self._topic(symbol)]}

    def unsubscribe_message(self, symbol: str) -> Dict[str, Any]:
        return {"op": "unsubscribe", "args": [self._topic(symbol)]}

    def parse_instruments(self, payload: Dict[str, Any]) -> List[VenueSymbol]:
        items = (payload.get("result") or {}).get("list") or []
        return [
            VenueSymbol(symbol=item["symbol"], base=item["baseCoin"], quote=item["quoteCoin"])
            for item in items
        ]

    def _decode(self, message):
        if "op" in message:
            if message.get("success") is False:
                logger.warning(f"Bybit {message['op']} failed: {message.get('ret_msg')}")
            return ParsedBookUpdate.ignore()

        topic = message.get("topic") or ""
        if not topic.startswith("orderbook."):
            return ParsedBookUpdate.ignore()

        data = message.get("data")
        if not isinstance(data, dict):
            raise MalformedMessage("data must be an object")

        msg_type = message.get("type")
        if msg_type == "snapshot":
            mode = ParseMode.REPLACE
        elif msg_type == "delta":
            mode = ParseMode.MERGE
        else:
            raise MalformedMessage(f"unknown type {msg_type!r}")

        symbol = data.get("s") or topic.rsplit(".", 1)[-1]
        return ParsedBookUpdate(
            mode=mode,
            symbol=symbol,
            bids=parse_level_pairs(data.get("b")),
            asks=parse_level_pairs(data.get("a")),
            timestamp=parse_exchange_timestamp(message.get("ts")),
        )


class DeribitAdapter(FeedAdapter):
    """
    Deribit JSON-RPC `book.{instrument}.100ms` channel.

    Frames:
        {"jsonrpc": "2.0", "method": "subscription",
         "params": {"channel": "book.BTC-PERPETUAL.100ms",
                    "data": {"type": "snapshot" | "change",
                             "instrument_name": "BTC-PERPETUAL",
                             "timestamp": 1700000000000,
                             "bids": [["new", px, sz], ["delete", px, 0], ...],
                             "asks": [...]}}}

    Levels arrive either as [price, quantity] or [action, price, quantity];
    a "delete" action removes the level regardless of the quantity sent.
    RPC responses ({"id": ..., "result": ...}) and heartbeats are ignored.
    """

    name = "Deribit"
    ws_url = "wss://www.deribit.com/ws/api/v2"
    instruments_url = "https://www.deribit.com/api/v2/public/get_instruments?currency=any&kind=future"
    interval = "100ms"

    def __init__(self):
        self._request_ids = itertools.count(1)

    def symbol_format(self, symbol: str) -> str:
        if symbol.endswith("-USD"):
            return symbol[: -len("-USD")] + "-PERPETUAL"
        return symbol

    def _channel(self, symbol: str) -> str:
        return f"book.{self.symbol_format(symbol)}.{self.interval}"

    def _rpc(self, method: str, symbol: str) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "method": method,
            "id": next(self._request_ids),
            "params": {"channels": [self._channel(symbol)]},
        }

    def subscribe_message(self, symbol: str) -> Dict[str, Any]:
        return self._rpc("public/subscribe", symbol)

    def unsubscribe_message(self, symbol: str) -> Dict[str, Any]:
        return self._rpc("public/unsubscribe", symbol)

    def parse_instruments(self, payload: Dict[str, Any]) -> List[VenueSymbol]:
        return [
            VenueSymbol(
                symbol=item["instrument_name"],
                base=item["base_currency"],
                quote=item["quote_currency"],
            )
            for item in payload.get("result") or []
        ]

    @staticmethod
    def _parse_levels(raw_levels: Any) -> List[PriceLevel]:
        if raw_levels is None:
            return []
        if not isinstance(raw_levels, list):
            raise MalformedMessage("levels must be a list")

        levels = []
        for entry in raw_levels:
            if not isinstance(entry, (list, tuple)):
                raise MalformedMessage(f"Invalid level format: {entry}")
            if len(entry) == 2:
                levels.append(parse_level(entry[0], entry[1]))
            elif len(entry) == 3:
                action, price, quantity = entry
                if action == "delete":
                    quantity = 0
                elif action not in ("new", "change"):
                    raise MalformedMessage(f"unknown level action {action!r}")
                levels.append(parse_level(price, quantity))
            else:
                raise MalformedMessage(f"Invalid level format: {entry}")
        return levels

    def _decode(self, message):
        if "id" in message and ("result" in message or "error" in message):
            if "error" in message:
                logger.warning(f"Deribit RPC error: {message['error']}")
            return ParsedBookUpdate.ignore()

        if message.get("method") != "subscription":
            return ParsedBookUpdate.ignore()

        params = message.get("params") or {}
        data = params.get("data")
        if not data:
            return ParsedBookUpdate.ignore()
        if not isinstance(data, dict):
            raise MalformedMessage("params.data must be an object")

        msg_type = data.get("type")
        if msg_type == "snapshot":
            mode = ParseMode.REPLACE
        elif msg_type == "change":
            mode = ParseMode.MERGE
        else:
            raise MalformedMessage(f"unknown type {msg_type!r}")

        symbol = data.get("instrument_name")
        if not symbol:
            raise MalformedMessage("missing instrument_name")

        return ParsedBookUpdate(
            mode=mode,
            symbol=symbol,
            bids=self._parse_levels(data.get("bids")),
            asks=self._parse_levels(data.get("asks")),
            timestamp=parse_exchange_timestamp(data.get("timestamp")),
        )


VENUE_ADAPTERS: Dict[str, Type[FeedAdapter]] = {
    OKXAdapter.name: OKXAdapter,
    BybitAdapter.name: BybitAdapter,
    DeribitAdapter.name: DeribitAdapter,
}


def get_adapter(venue: str) -> FeedAdapter:
    """
    Create the adapter for a venue name.

    Raises:
        ValueError: If the venue is not supported
    """
    try:
        return VENUE_ADAPTERS[venue]()
    except KeyError:
        raise ValueError(
            f"Unsupported venue {venue!r}, expected one of {sorted(VENUE_ADAPTERS)}"
        ) from None
