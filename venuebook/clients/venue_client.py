"""
VenueWebSocketClient - WebSocket connection manager for one venue feed.

This module handles the WebSocket lifecycle, book channel subscription and
automatic reconnection with exponential backoff. Frames are handed to
registered callbacks untouched; decoding belongs to the venue's FeedAdapter.

Connection states form an explicit machine:

    IDLE ──> CONNECTING ──> CONNECTED
      ^          │  ^           │
      │          v  │           v
      └──────── BACKOFF <───────┘

Every state can also return to IDLE (disconnect, or retries exhausted).
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .venues import FeedAdapter

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """WebSocket connection states."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"


TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.BACKOFF, ConnectionState.IDLE}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.BACKOFF, ConnectionState.IDLE}),
    ConnectionState.BACKOFF: frozenset({ConnectionState.CONNECTING, ConnectionState.IDLE}),
}


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: Optional[float] = None) -> float:
    """
    Delay before reconnect attempt `attempt` (0-based): base * 2**attempt.

    Args:
        attempt: Number of reconnects already tried
        base_delay: Delay for the first reconnect, in seconds
        max_delay: Optional cap in seconds
    """
    delay = base_delay * (2 ** attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


class VenueWebSocketClient:
    """
    Asynchronous WebSocket client for one venue and symbol.

    Key Features:
    - Subscription frames built by the venue's FeedAdapter
    - Exponential backoff reconnection with a bounded number of attempts
    - Teardown callbacks so the book for a lost feed is dropped, never served stale

    Attributes:
        adapter: FeedAdapter for the venue
        symbol: Canonical symbol being streamed
        state: Current connection state
    """

    def __init__(
        self,
        adapter: FeedAdapter,
        symbol: str = "BTC-USD",
        subscription_timeout: float = 5.0,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: Optional[float] = None,
        max_reconnect_attempts: int = 5,
        ping_interval: float = 20.0,
    ):
        """
        Initialize the client.

        Args:
            adapter: FeedAdapter for the venue to connect to
            symbol: Canonical symbol (e.g. "BTC-USD")
            subscription_timeout: Max seconds to send the subscribe frame
            reconnect_delay: Base reconnect delay in seconds
            max_reconnect_delay: Optional cap on a single backoff delay
            max_reconnect_attempts: Consecutive failed reconnects before giving up
            ping_interval: Interval for connection health checks
        """
        self.adapter = adapter
        self.symbol = symbol
        self.subscription_timeout = subscription_timeout
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.ping_interval = ping_interval

        # Connection state
        self._ws: Optional[Any] = None
        self._state = ConnectionState.IDLE
        self._reconnect_attempts = 0
        self._stopped = False

        # Message statistics
        self._total_messages = 0

        # Callbacks for application-level hooks
        self._on_message_callbacks: List[Callable] = []
        self._on_teardown_callbacks: List[Callable] = []
        self._on_symbol_change_callbacks: List[Callable] = []

        logger.debug(
            f"VenueWebSocketClient initialized: venue={adapter.name}, "
            f"url={adapter.ws_url}, symbol={symbol}"
        )

    @property
    def venue(self) -> str:
        return self.adapter.name

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True if connected and subscribed."""
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def _transition(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        if new_state not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid connection transition {self._state.value} -> {new_state.value}"
            )
        logger.debug(f"{self.venue}: {self._state.value} -> {new_state.value}")
        self._state = new_state

    def add_message_callback(self, callback: Callable) -> None:
        """
        Add a callback to be invoked for each frame.

        Args:
            callback: Async function called with (venue, raw_frame).
        """
        self._on_message_callbacks.append(callback)

    def add_teardown_callback(self, callback: Callable) -> None:
        """
        Add a callback invoked when the book for a symbol must be dropped.

        Fired on connection loss, on disconnect and on symbol switch.

        Args:
            callback: Sync or async function called with (venue, symbol).
        """
        self._on_teardown_callbacks.append(callback)

    def add_symbol_change_callback(self, callback: Callable) -> None:
        """
        Add a callback invoked when switch_symbol() moves the subscription.

        Runs after the old symbol is torn down and before the new
        subscription is sent, so frames for the new symbol are accepted.

        Args:
            callback: Sync or async function called with (venue, old_symbol, new_symbol).
        """
        self._on_symbol_change_callbacks.append(callback)

    async def connect(self) -> None:
        """
        Establish the WebSocket connection and subscribe to the book channel.

        Returns without connecting if disconnect() is called meanwhile.

        Raises:
            websockets.exceptions.WebSocketException: On connection failure
            asyncio.TimeoutError: If subscription times out
        """
        self._stopped = False
        try:
            await self._open()
        except Exception as e:
            logger.error(f"{self.venue}: connection failed: {e}")
            self._ws = None
            self._transition(ConnectionState.IDLE)
            raise

    async def _open(self) -> bool:
        """
        Connect and subscribe.

        Returns:
            False if disconnect() ran while the connection was being opened
        """
        self._transition(ConnectionState.CONNECTING)
        logger.debug(f"Connecting to {self.adapter.ws_url}...")

        # Snapshots can be large, so no frame size limit
        ws = await websockets.connect(
            self.adapter.ws_url,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_interval * 2,
            max_size=None,
        )
        if self._stopped:
            await self._close_socket(ws)
            return False

        self._ws = ws
        try:
            await self._send(self.adapter.subscribe_message(self.symbol))
        except Exception:
            self._ws = None
            await self._close_socket(ws)
            if self._stopped:
                return False
            raise

        if self._stopped:
            return False

        self._transition(ConnectionState.CONNECTED)
        self._reconnect_attempts = 0
        logger.info(f"Connected to {self.venue} feed: {self.symbol}")
        return True

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.warning(f"{self.venue}: error closing socket: {e}")

    async def _send(self, message: Dict[str, Any]) -> None:
        logger.debug(f"{self.venue}: sending {message}")
        try:
            await asyncio.wait_for(
                self._ws.send(json.dumps(message)),
                timeout=self.subscription_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"{self.venue}: failed to send frame within {self.subscription_timeout}s"
            )
            raise

    async def switch_symbol(self, symbol: str) -> None:
        """
        Move the live subscription to another symbol.

        The old symbol's book is torn down and symbol-change callbacks run
        before the new subscription is sent.
        """
        if symbol == self.symbol:
            return

        old_symbol = self.symbol
        if self.is_connected:
            await self._send(self.adapter.unsubscribe_message(old_symbol))
        await self._trigger_teardown_callbacks(old_symbol)

        self.symbol = symbol
        await self._run_callbacks(
            self._on_symbol_change_callbacks, "symbol change", old_symbol, symbol
        )
        if self.is_connected:
            await self._send(self.adapter.subscribe_message(symbol))
        logger.info(f"{self.venue}: switched symbol {old_symbol} -> {symbol}")

    async def disconnect(self) -> None:
        """
        Gracefully close the WebSocket connection.

        This sends an unsubscribe frame before closing and tears down the book.
        """
        self._stopped = True
        if self._ws:
            try:
                await self._ws.send(json.dumps(self.adapter.unsubscribe_message(self.symbol)))
                await self._ws.close()
                logger.info(f"{self.venue}: connection closed gracefully")

            except Exception as e:
                logger.warning(f"{self.venue}: error during disconnect: {e}")

            finally:
                self._ws = None

        self._transition(ConnectionState.IDLE)
        await self._trigger_teardown_callbacks(self.symbol)

    async def run(self, auto_reconnect: bool = True) -> None:
        """
        Main event loop: receive frames and hand them to callbacks.

        Runs until disconnect() is called, auto_reconnect is off and the
        connection drops, or max_reconnect_attempts consecutive reconnects
        fail.

        Args:
            auto_reconnect: If True, reconnect with exponential backoff.
        """
        self._stopped = False

        while not self._stopped:
            try:
                if not self.is_connected and not await self._open():
                    break

                async for raw_message in self._ws:
                    await self._handle_message(raw_message)

                logger.warning(f"{self.venue}: connection closed by server")

            except ConnectionClosed as e:
                logger.warning(f"{self.venue}: connection closed: {e}")

            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.error(f"{self.venue}: WebSocket error: {e}")

            if self._stopped:
                break

            if self._ws is not None:
                await self._close_socket(self._ws)
                self._ws = None
            await self._trigger_teardown_callbacks(self.symbol)

            if not auto_reconnect:
                logger.info("Auto-reconnect disabled, stopping")
                self._transition(ConnectionState.IDLE)
                break

            if not await self._backoff():
                break

    async def _backoff(self) -> bool:
        """
        Wait before the next reconnect attempt.

        Returns:
            False if the attempt budget is exhausted (state is then IDLE)
        """
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(
                f"{self.venue}: giving up after {self._reconnect_attempts} reconnect attempts"
            )
            self._transition(ConnectionState.IDLE)
            return False

        self._transition(ConnectionState.BACKOFF)
        delay = backoff_delay(
            self._reconnect_attempts, self.reconnect_delay, self.max_reconnect_delay
        )
        self._reconnect_attempts += 1

        logger.info(
            f"{self.venue}: reconnecting in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts})..."
        )
        await asyncio.sleep(delay)
        return True

    async def _handle_message(self, raw_message: Any) -> None:
        self._total_messages += 1
        for callback in self._on_message_callbacks:
            try:
                await callback(self.venue, raw_message)
            except Exception as e:
                logger.error(f"Error in message callback: {e}")

    async def _trigger_teardown_callbacks(self, symbol: str) -> None:
        await self._run_callbacks(self._on_teardown_callbacks, "teardown", symbol)

    async def _run_callbacks(self, callbacks: List[Callable], kind: str, *args: Any) -> None:
        for callback in callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(self.venue, *args)
                else:
                    callback(self.venue, *args)
            except Exception as e:
                logger.error(f"Error in {kind} callback: {e}")

    def get_stats(self) -> dict:
        """
        Get connection and message statistics.

        Returns:
            Dict containing venue, symbol, state, total_messages and
            reconnect_attempts
        """
        return {
            "venue": self.venue,
            "symbol": self.symbol,
            "state": self._state.value,
            "total_messages": self._total_messages,
            "reconnect_attempts": self._reconnect_attempts,
        }

    def __repr__(self) -> str:
        """String representation showing connection state."""
        return (
            f"VenueWebSocketClient({self.venue}:{self.symbol}, "
            f"state={self._state.value}, messages={self._total_messages})"
        )
