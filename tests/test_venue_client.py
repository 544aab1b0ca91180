"""
Tests for VenueWebSocketClient.

The websocket library is mocked; these tests cover the connection state
machine, subscription frames, teardown hooks and bounded reconnection.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, patch

from venuebook.clients.venue_client import (
    ConnectionState,
    TRANSITIONS,
    VenueWebSocketClient,
    backoff_delay,
)
from venuebook.clients.venues import BybitAdapter


class FakeWebSocket:
    """Minimal stand-in for a websockets connection."""

    def __init__(self, messages=()):
        self.messages = list(messages)
        self.send = AsyncMock()
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


def sent_frames(ws):
    return [json.loads(call.args[0]) for call in ws.send.await_args_list]


@pytest.fixture
def client():
    return VenueWebSocketClient(
        adapter=BybitAdapter(),
        symbol="BTC-USD",
        reconnect_delay=0.0,
        max_reconnect_attempts=1,
    )


class TestBackoffDelay:
    """Tests for the exponential backoff schedule."""

    def test_doubles_each_attempt(self):
        assert [backoff_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_base_delay(self):
        assert backoff_delay(2, base_delay=0.5) == 2.0

    def test_max_delay_caps(self):
        assert backoff_delay(5, base_delay=1.0, max_delay=10.0) == 10.0


class TestStateMachine:
    """Tests for connection state transitions."""

    def test_initial_state(self, client):
        assert client.state is ConnectionState.IDLE
        assert not client.is_connected
        assert client.venue == "Bybit"

    def test_invalid_transition_raises(self, client):
        with pytest.raises(RuntimeError, match="Invalid connection transition"):
            client._transition(ConnectionState.CONNECTED)

    def test_every_state_can_return_to_idle(self):
        for state, targets in TRANSITIONS.items():
            if state is not ConnectionState.IDLE:
                assert ConnectionState.IDLE in targets


class TestConnect:
    """Tests for connect/disconnect/switch."""

    @pytest.mark.asyncio
    async def test_connect_subscribes(self, client):
        ws = FakeWebSocket()
        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=ws)

            await client.connect()

        assert client.state is ConnectionState.CONNECTED
        assert sent_frames(ws) == [{"op": "subscribe", "args": ["orderbook.50.BTCUSDT"]}]
        assert mock_websockets.connect.await_args.args[0] == BybitAdapter.ws_url

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(self, client):
        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(side_effect=OSError("refused"))

            with pytest.raises(OSError):
                await client.connect()

        assert client.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_disconnect_tears_down(self, client):
        ws = FakeWebSocket()
        torn_down = []
        client.add_teardown_callback(lambda venue, symbol: torn_down.append((venue, symbol)))

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=ws)
            await client.connect()
            await client.disconnect()

        assert client.state is ConnectionState.IDLE
        assert sent_frames(ws)[-1] == {"op": "unsubscribe", "args": ["orderbook.50.BTCUSDT"]}
        ws.close.assert_awaited_once()
        assert torn_down == [("Bybit", "BTC-USD")]

    @pytest.mark.asyncio
    async def test_switch_symbol(self, client):
        ws = FakeWebSocket()
        torn_down = []

        async def on_teardown(venue, symbol):
            torn_down.append((venue, symbol))

        client.add_teardown_callback(on_teardown)

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=ws)
            await client.connect()
            await client.switch_symbol("ETH-USD")

        assert client.symbol == "ETH-USD"
        assert torn_down == [("Bybit", "BTC-USD")]
        assert sent_frames(ws)[1:] == [
            {"op": "unsubscribe", "args": ["orderbook.50.BTCUSDT"]},
            {"op": "subscribe", "args": ["orderbook.50.ETHUSDT"]},
        ]

    @pytest.mark.asyncio
    async def test_switch_to_same_symbol_is_noop(self, client):
        torn_down = []
        client.add_teardown_callback(lambda venue, symbol: torn_down.append(symbol))

        await client.switch_symbol("BTC-USD")

        assert torn_down == []

    @pytest.mark.asyncio
    async def test_switch_symbol_runs_symbol_change_callbacks(self, client):
        changes = []
        order = []
        client.add_teardown_callback(lambda venue, symbol: order.append("teardown"))

        async def on_change(venue, old_symbol, new_symbol):
            order.append("change")
            changes.append((venue, old_symbol, new_symbol))

        client.add_symbol_change_callback(on_change)

        await client.switch_symbol("ETH-USD")

        assert changes == [("Bybit", "BTC-USD", "ETH-USD")]
        assert order == ["teardown", "change"]


class TestRun:
    """Tests for the receive loop and reconnection."""

    @pytest.mark.asyncio
    async def test_messages_reach_callbacks(self):
        client = VenueWebSocketClient(
            adapter=BybitAdapter(), reconnect_delay=0.0, max_reconnect_attempts=0
        )
        received = []

        async def on_message(venue, raw):
            received.append((venue, raw))

        client.add_message_callback(on_message)

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=FakeWebSocket(["a", "b"]))
            await client.run()

        assert received == [("Bybit", "a"), ("Bybit", "b")]
        assert client.get_stats()["total_messages"] == 2
        assert client.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_reconnects_then_gives_up(self, client):
        received = []
        torn_down = []

        async def on_message(venue, raw):
            received.append(raw)

        client.add_message_callback(on_message)
        client.add_teardown_callback(lambda venue, symbol: torn_down.append(symbol))

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(
                side_effect=[OSError("refused"), FakeWebSocket(["frame"]), OSError("refused")]
            )
            await client.run()

        assert received == ["frame"]
        assert mock_websockets.connect.await_count == 3
        # Book dropped after every lost or failed connection
        assert torn_down == ["BTC-USD", "BTC-USD", "BTC-USD"]
        assert client.state is ConnectionState.IDLE
        assert client.reconnect_attempts == 1

    @pytest.mark.asyncio
    async def test_no_auto_reconnect(self, client):
        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=FakeWebSocket())
            await client.run(auto_reconnect=False)

        assert mock_websockets.connect.await_count == 1
        assert client.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_loop(self):
        client = VenueWebSocketClient(adapter=BybitAdapter(), max_reconnect_attempts=0)
        received = []

        async def broken(venue, raw):
            raise RuntimeError("boom")

        async def on_message(venue, raw):
            received.append(raw)

        client.add_message_callback(broken)
        client.add_message_callback(on_message)

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=FakeWebSocket(["x", "y"]))
            await client.run()

        assert received == ["x", "y"]


class TestSocketCleanup:
    """Tests that half-open connections are always closed."""

    @pytest.mark.asyncio
    async def test_subscribe_timeout_closes_socket(self):
        client = VenueWebSocketClient(adapter=BybitAdapter(), subscription_timeout=0.01)
        ws = FakeWebSocket()

        async def hang(frame):
            await asyncio.sleep(10)

        ws.send = AsyncMock(side_effect=hang)

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=ws)
            await client.run(auto_reconnect=False)

        ws.close.assert_awaited()
        assert client.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_connect_subscribe_failure_closes_socket(self, client):
        ws = FakeWebSocket()
        ws.send = AsyncMock(side_effect=OSError("broken pipe"))

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(return_value=ws)
            with pytest.raises(OSError):
                await client.connect()

        ws.close.assert_awaited_once()
        assert client.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_every_failed_reconnect_closes_its_socket(self, client):
        sockets = [FakeWebSocket(), FakeWebSocket()]
        for ws in sockets:
            ws.send = AsyncMock(side_effect=OSError("broken pipe"))

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(side_effect=sockets)
            await client.run()

        for ws in sockets:
            ws.close.assert_awaited()


class TestDisconnectWhileConnecting:
    """disconnect() racing a pending websockets.connect()."""

    @pytest.mark.asyncio
    async def test_run_stops_cleanly(self, client):
        ws = FakeWebSocket()

        async def slow_connect(*args, **kwargs):
            await client.disconnect()
            return ws

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(side_effect=slow_connect)
            await client.run()

        assert client.state is ConnectionState.IDLE
        ws.close.assert_awaited_once()
        ws.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_returns_without_subscribing(self, client):
        ws = FakeWebSocket()

        async def slow_connect(*args, **kwargs):
            await client.disconnect()
            return ws

        with patch("venuebook.clients.venue_client.websockets") as mock_websockets:
            mock_websockets.connect = AsyncMock(side_effect=slow_connect)
            await client.connect()

        assert client.state is ConnectionState.IDLE
        assert not client.is_connected
        ws.close.assert_awaited_once()
