"""
Command-line feed runner.

Connects to one venue, keeps its book in sync and logs the top of book after
every update. Optionally simulates a hypothetical order against each new
book.

Usage:
    python -m venuebook.app.feed_runner --venue Bybit --symbol BTC-USD
    python -m venuebook.app.feed_runner --venue OKX --simulate-side buy --simulate-qty 2.5
    python -m venuebook.app.feed_runner --venue Deribit --simulate-side sell \\
        --simulate-qty 1 --simulate-price 65000 --timing 10s
"""

import argparse
import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import requests

from ..clients.instruments import load_instruments
from ..clients.venue_client import VenueWebSocketClient
from ..clients.venues import VENUE_ADAPTERS, get_adapter
from ..models.simulation import (
    HypotheticalOrder,
    InvalidOrder,
    OrderSide,
    OrderTiming,
    OrderType,
)
from ..services.book_manager import BookManager
from ..services.book_store import BookStore
from ..services.simulation_engine import SimulationEngine
from ..services.symbol_cache import SymbolCache
from ..utils.time_utils import format_timestamp


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Root logger at WARNING, this package at the requested level."""
    logging.basicConfig(
        level=logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger('venuebook').setLevel(level.upper())

    # Keep the websocket library quiet unless there's an issue
    logging.getLogger('websockets').setLevel(logging.WARNING)

    # Merge engine logs every deleted level at DEBUG
    logging.getLogger('venuebook.models.order_book').setLevel(logging.INFO)


def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal number: {value!r}") from None


def build_order(args: argparse.Namespace) -> Optional[HypotheticalOrder]:
    """Hypothetical order described by the CLI flags, or None."""
    if not args.simulate_side:
        return None

    price = args.simulate_price
    return HypotheticalOrder(
        venue=args.venue,
        symbol=args.symbol,
        order_type=OrderType.LIMIT if price is not None else OrderType.MARKET,
        side=OrderSide(args.simulate_side),
        quantity=args.simulate_qty,
        price=price,
        timing=OrderTiming(args.timing),
    )


async def verify_symbol(cache: SymbolCache, venue: str, symbol: str) -> bool:
    """
    Check that a venue lists the instrument a symbol maps to.

    Only warns: a failed lookup or a missing instrument is logged and the
    feed still starts.

    Returns:
        True if the venue-native symbol is in the venue's instrument list
    """
    venue_symbol = get_adapter(venue).symbol_format(symbol)
    try:
        listed = await cache.get(venue)
    except (requests.RequestException, ValueError, KeyError) as e:
        logger.warning(f"Could not load {venue} instruments to check {symbol}: {e}")
        return False

    if any(item.symbol == venue_symbol for item in listed):
        return True

    logger.warning(f"{venue} does not list {venue_symbol} (from {symbol})")
    return False


async def run_feed(args: argparse.Namespace) -> None:
    """Wire store, manager, simulator and websocket client, then stream."""
    store = BookStore()
    manager = BookManager(store)
    engine = SimulationEngine()
    order = build_order(args)

    if order is not None:
        # Reject a bad order before connecting
        engine.validate(order)

    if args.verify_symbol:
        await verify_symbol(SymbolCache(load_instruments), args.venue, args.symbol)

    manager.track(args.venue, args.symbol)

    def on_book_update(event):
        book = event["book"]
        bid, ask = book.best_bid, book.best_ask
        logger.info(
            f"{book.venue}:{book.symbol} [{event['type']}] "
            f"bid={bid.price if bid else None} ask={ask.price if ask else None} "
            f"spread={book.spread} at {format_timestamp(book.timestamp)}"
        )
        if order is not None:
            placement = engine.simulate(order, book)
            impact = placement.impact
            logger.info(
                f"  simulated {order.side.value} {order.quantity}: "
                f"fill={impact.estimated_fill_percentage:.2f}% "
                f"avg={impact.average_fill_price} "
                f"slippage={impact.slippage_estimation} "
                f"impact={impact.market_impact:.2f}% "
                f"ttf={impact.time_to_fill}ms "
                f"level={placement.position.level}"
            )

    manager.subscribe(on_book_update)

    client = VenueWebSocketClient(
        adapter=manager.adapter(args.venue),
        symbol=args.symbol,
        reconnect_delay=args.reconnect_delay,
        max_reconnect_attempts=args.max_reconnect_attempts,
    )
    client.add_message_callback(manager.process_message)
    client.add_teardown_callback(manager.reset)
    client.add_symbol_change_callback(manager.switch_symbol)

    try:
        await client.run()
    finally:
        await client.disconnect()
        logger.info(f"Final stats: {manager.get_stats()}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="VenueBook - Multi-venue order book sync and order impact simulation"
    )

    parser.add_argument(
        '--venue',
        type=str,
        choices=sorted(VENUE_ADAPTERS),
        default='OKX',
        help='Venue to connect to (default: OKX)'
    )

    parser.add_argument(
        '--symbol',
        type=str,
        default='BTC-USD',
        help='Canonical symbol (default: BTC-USD)'
    )

    parser.add_argument(
        '--simulate-side',
        type=str,
        choices=[side.value for side in OrderSide],
        help='Simulate an order on this side after every update'
    )

    parser.add_argument(
        '--simulate-qty',
        type=_decimal_arg,
        default=Decimal('1'),
        help='Quantity of the simulated order (default: 1)'
    )

    parser.add_argument(
        '--simulate-price',
        type=_decimal_arg,
        help='Limit price; omit for a market order'
    )

    parser.add_argument(
        '--timing',
        type=str,
        choices=[timing.value for timing in OrderTiming],
        default=OrderTiming.IMMEDIATE.value,
        help='Submission timing class (default: immediate)'
    )

    parser.add_argument(
        '--reconnect-delay',
        type=float,
        default=1.0,
        help='Base reconnect delay in seconds (default: 1.0)'
    )

    parser.add_argument(
        '--max-reconnect-attempts',
        type=int,
        default=5,
        help='Reconnect attempts before giving up (default: 5)'
    )

    parser.add_argument(
        '--no-verify-symbol',
        dest='verify_symbol',
        action='store_false',
        help='Skip checking the symbol against the venue instrument list'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Log level for venuebook loggers (default: INFO)'
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        asyncio.run(run_feed(args))
    except InvalidOrder as e:
        logger.error(f"Invalid simulated order: {e.reason}")
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
