"""Unit tests for the PriceFeed.

The websocket transport is replaced by FakeWebSocket, a scripted in-memory
stream, by patching PriceFeed._open_transport.
"""
import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import aiohttp
import pytest

from src.core.config import FeedConfig
from src.core.exceptions import FeedError
from src.core.models import ConnectionState, PriceSource
from src.feed.price_feed import PriceFeed, create_price_feed


class FakeWebSocket:
    """Scripted websocket: frames are queued by the test and iterated by the feed."""

    def __init__(self):
        self.closed = False
        self.sent = []
        self.pings = 0
        self._frames: asyncio.Queue = asyncio.Queue()

    def push_text(self, payload):
        self._frames.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(payload)))

    def push_pong(self):
        self._frames.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.PONG, data=b""))

    def finish(self):
        self._frames.put_nowait(None)

    async def send_json(self, payload):
        self.sent.append(payload)

    async def ping(self):
        self.pings += 1

    async def pong(self, data=b""):
        pass

    async def close(self):
        self.closed = True
        self._frames.put_nowait(None)

    def exception(self):
        return None

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._frames.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


def price_frame(asset, price):
    return {"type": "PRICE_DATA", "data": {"address": asset, "value": price, "type": "TOKEN"}}


def stream_config(**overrides) -> FeedConfig:
    settings = dict(
        api_key="test-key",
        stream_url="wss://example.invalid/socket",
        heartbeat_interval_seconds=30.0,
        heartbeat_timeout_seconds=60.0,
        reconnect_base_delay_seconds=10.0,
        max_reconnect_attempts=2,
    )
    settings.update(overrides)
    return FeedConfig(**settings)


@pytest.fixture
def stream_feed(market_data, clock):
    """Feed with credentials; the transport is patched per test."""
    return PriceFeed(config=stream_config(), market_data=market_data, clock=clock)


# =============================================================================
# Polling Fallback Tests
# =============================================================================

class TestPolling:
    """Test the pull path."""

    @pytest.mark.asyncio
    async def test_connect_without_credentials(self, feed):
        """No API key means polling only."""
        assert await feed.connect() is False
        assert feed.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_poll_returns_polled_observation(self, feed, clock):
        """Polls are tagged and cached."""
        observation = await feed.poll("TOKEN_A")

        assert observation.price == Decimal("1.00")
        assert observation.source == PriceSource.POLLED
        assert observation.timestamp == clock()
        assert feed.get_last("TOKEN_A") == observation
        assert feed.polls_made == 1

    @pytest.mark.asyncio
    async def test_poll_unknown_asset(self, feed):
        """Provider errors surface as None."""
        assert await feed.poll("UNLISTED") is None
        assert feed.get_last("UNLISTED") is None

    @pytest.mark.asyncio
    async def test_poll_without_provider(self, test_config):
        feed = create_price_feed(test_config.feed)

        assert await feed.poll("TOKEN_A") is None

    @pytest.mark.asyncio
    async def test_poll_network_error(self, feed, market_data):
        """Transport errors from the provider are not raised."""
        market_data.get_quote = AsyncMock(side_effect=aiohttp.ClientConnectionError("reset"))

        assert await feed.poll("TOKEN_A") is None

    @pytest.mark.asyncio
    async def test_poll_keeps_fresh_live_price(self, feed, clock):
        """A poll never overwrites a fresh live observation."""
        feed.state = ConnectionState.CONNECTED
        await feed._handle_message(json.dumps(price_frame("TOKEN_A", 1.10)))

        polled = await feed.poll("TOKEN_A")

        assert polled.price == Decimal("1.00")
        assert feed.get_last("TOKEN_A").source == PriceSource.LIVE


# =============================================================================
# Message Handling Tests
# =============================================================================

class TestMessages:
    """Test frame parsing and dispatch."""

    @pytest.mark.asyncio
    async def test_price_frame_updates_cache_before_callbacks(self, feed):
        """Subscribers see the cache already updated."""
        seen = []

        def on_price(observation):
            seen.append((observation.price, feed.get_last("TOKEN_A").price))

        await feed.subscribe("TOKEN_A", on_price=on_price)
        await feed._handle_message(json.dumps(price_frame("TOKEN_A", 1.23)))

        assert seen == [(Decimal("1.23"), Decimal("1.23"))]
        assert feed.get_last("TOKEN_A").source == PriceSource.LIVE

    @pytest.mark.asyncio
    async def test_price_field_preferred_over_value(self, feed):
        await feed._handle_message(json.dumps(
            {"type": "PRICE_DATA", "data": {"address": "TOKEN_A", "price": 2.5, "value": 9}}
        ))

        assert feed.get_last("TOKEN_A").price == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self, feed):
        """One subscriber raising does not block the rest."""
        received = []

        def broken(observation):
            raise RuntimeError("subscriber bug")

        async def healthy(observation):
            received.append(observation.price)

        await feed.subscribe("TOKEN_A", on_price=broken)
        await feed.subscribe("TOKEN_A", on_price=healthy)
        await feed._handle_message(json.dumps(price_frame("TOKEN_A", 1.5)))

        assert received == [Decimal("1.5")]

    @pytest.mark.asyncio
    async def test_observers_see_every_asset(self, feed):
        """Global observers receive updates for any asset."""
        seen = []
        feed.add_observer(on_price=lambda o: seen.append(o.asset))

        await feed._handle_message(json.dumps(price_frame("TOKEN_A", 1)))
        await feed._handle_message(json.dumps(price_frame("TOKEN_B", 2)))

        assert seen == ["TOKEN_A", "TOKEN_B"]

    @pytest.mark.asyncio
    async def test_trade_frame(self, feed):
        """Trade prints are normalised into TradeUpdate."""
        trades = []
        await feed.subscribe("TOKEN_A", on_trade=trades.append)

        await feed._handle_message(json.dumps({
            "type": "TXS_DATA",
            "data": {
                "address": "TOKEN_A",
                "side": "buy",
                "price": 1.2,
                "tokenAmount": 5000,
                "usdValue": 6000,
                "txHash": "abc",
                "blockUnixTime": 1709294400,
            },
        }))

        assert len(trades) == 1
        assert trades[0].side == "buy"
        assert trades[0].value == Decimal("6000")
        assert trades[0].timestamp.year == 2024

    @pytest.mark.parametrize("raw", [
        "not json at all",
        json.dumps({"data": {}}),
        json.dumps({"type": "PRICE_DATA", "data": {"address": "TOKEN_A"}}),
        json.dumps({"type": "PRICE_DATA", "data": {"address": "TOKEN_A", "value": -1}}),
        json.dumps({"type": "PRICE_DATA", "data": {"value": 1}}),
        json.dumps({"type": "TXS_DATA", "data": {
            "address": "TOKEN_A", "side": "buy", "blockUnixTime": 10 ** 20,
        }}),
    ])
    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, feed, raw):
        """Malformed frames are counted and dropped, never raised."""
        await feed._handle_message(raw)

        assert feed.messages_received == 1
        assert feed.messages_dropped == 1
        assert feed.get_last("TOKEN_A") is None

    @pytest.mark.asyncio
    async def test_unknown_frame_type_ignored(self, feed):
        await feed._handle_message(json.dumps({"type": "WELCOME", "data": None}))

        assert feed.messages_dropped == 0


# =============================================================================
# Subscription And Staleness Tests
# =============================================================================

class TestSubscriptions:
    """Test subscribe, unsubscribe and get_live."""

    @pytest.mark.asyncio
    async def test_unsubscribe_clears_cache(self, feed):
        await feed.subscribe("TOKEN_A")
        await feed.poll("TOKEN_A")

        await feed.unsubscribe("TOKEN_A")

        assert "TOKEN_A" not in feed.subscriptions
        assert feed.get_last("TOKEN_A") is None

    @pytest.mark.asyncio
    async def test_get_live_requires_connection(self, feed):
        """Disconnected feeds serve no live prices."""
        await feed._handle_message(json.dumps(price_frame("TOKEN_A", 1.1)))

        assert feed.get_last("TOKEN_A") is not None
        assert feed.get_live("TOKEN_A") is None

    @pytest.mark.asyncio
    async def test_get_live_goes_stale(self, feed, clock):
        """Live observations expire after the staleness window."""
        feed.state = ConnectionState.CONNECTED
        await feed._handle_message(json.dumps(price_frame("TOKEN_A", 1.1)))

        assert feed.get_live("TOKEN_A").price == Decimal("1.1")

        clock.advance(seconds=121)

        assert feed.get_live("TOKEN_A") is None

    def test_unknown_listener_event(self, feed):
        with pytest.raises(FeedError):
            feed.add_listener("exploded", lambda: None)


# =============================================================================
# Connection State Machine Tests
# =============================================================================

class TestConnection:
    """Test connect, reconnect, heartbeat and disconnect."""

    @pytest.mark.asyncio
    async def test_connect_subscribes_tracked_assets(self, stream_feed):
        """Assets registered while offline are subscribed on connect."""
        ws = FakeWebSocket()
        stream_feed._open_transport = AsyncMock(return_value=ws)
        await stream_feed.subscribe("TOKEN_A")

        assert await stream_feed.connect() is True
        assert stream_feed.is_connected
        assert {
            "type": "SUBSCRIBE_PRICE",
            "data": {"address": "TOKEN_A", "type": "TOKEN", "chartType": "1m", "currency": "usd"},
        } in ws.sent
        assert {"type": "SUBSCRIBE_TXS", "data": {"address": "TOKEN_A"}} in ws.sent

        await stream_feed.disconnect()

    @pytest.mark.asyncio
    async def test_stream_frames_reach_subscribers(self, stream_feed):
        """Frames read from the socket are dispatched."""
        ws = FakeWebSocket()
        stream_feed._open_transport = AsyncMock(return_value=ws)
        arrived = asyncio.Event()
        await stream_feed.subscribe("TOKEN_A", on_price=lambda o: arrived.set())
        await stream_feed.connect()

        ws.push_text(price_frame("TOKEN_A", 1.05))
        await asyncio.wait_for(arrived.wait(), timeout=2)

        assert stream_feed.get_live("TOKEN_A").price == Decimal("1.05")
        await stream_feed.disconnect()

    @pytest.mark.asyncio
    async def test_pong_refreshes_liveness(self, stream_feed, clock):
        """PONG frames move the liveness clock."""
        ws = FakeWebSocket()
        stream_feed._open_transport = AsyncMock(return_value=ws)
        arrived = asyncio.Event()
        await stream_feed.subscribe("TOKEN_A", on_price=lambda o: arrived.set())
        await stream_feed.connect()

        clock.advance(seconds=45)
        ws.push_pong()
        ws.push_text(price_frame("TOKEN_A", 1.0))
        await asyncio.wait_for(arrived.wait(), timeout=2)

        assert stream_feed._last_pong == clock()
        await stream_feed.disconnect()

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_tears_down(self, market_data, clock):
        """Silence beyond the timeout drops the connection and backs off."""
        feed = PriceFeed(
            config=stream_config(heartbeat_interval_seconds=0.01),
            market_data=market_data,
            clock=clock,
        )
        ws = FakeWebSocket()
        feed._open_transport = AsyncMock(return_value=ws)
        dropped = asyncio.Event()
        feed.add_listener("disconnected", dropped.set)
        await feed.connect()

        clock.advance(seconds=61)
        await asyncio.wait_for(dropped.wait(), timeout=2)
        await asyncio.sleep(0)

        assert ws.closed is True
        assert feed.state == ConnectionState.BACKING_OFF
        assert feed.reconnect_attempts == 1
        await feed.disconnect()
        assert feed.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes(self, market_data, clock):
        """After a drop the feed reconnects and restores subscriptions."""
        feed = PriceFeed(
            config=stream_config(reconnect_base_delay_seconds=0.01),
            market_data=market_data,
            clock=clock,
        )
        first, second = FakeWebSocket(), FakeWebSocket()
        feed._open_transport = AsyncMock(side_effect=[first, second])
        connections = []
        reconnected = asyncio.Event()

        def on_connected():
            connections.append(1)
            if len(connections) == 2:
                reconnected.set()

        feed.add_listener("connected", on_connected)
        await feed.subscribe("TOKEN_A")
        await feed.connect()

        first.finish()
        await asyncio.wait_for(reconnected.wait(), timeout=2)

        assert feed.is_connected
        assert feed.reconnect_attempts == 0
        assert {"type": "SUBSCRIBE_TXS", "data": {"address": "TOKEN_A"}} in second.sent
        await feed.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_gives_up(self, market_data, clock):
        """After the attempt budget the feed stays on polling."""
        feed = PriceFeed(
            config=stream_config(reconnect_base_delay_seconds=0.01, max_reconnect_attempts=2),
            market_data=market_data,
            clock=clock,
        )
        feed._open_transport = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        gave_up = asyncio.Event()
        feed.add_listener("reconnect_failed", gave_up.set)

        assert await feed.connect() is False
        await asyncio.wait_for(gave_up.wait(), timeout=2)

        assert feed._open_transport.await_count == 3
        assert feed.state == ConnectionState.DISCONNECTED
        assert (await feed.poll("TOKEN_A")).source == PriceSource.POLLED
        await feed.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self, market_data, clock):
        """A deliberate disconnect wins over a scheduled reconnect."""
        feed = PriceFeed(config=stream_config(), market_data=market_data, clock=clock)
        feed._open_transport = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        await feed.connect()
        assert feed.state == ConnectionState.BACKING_OFF

        await feed.disconnect()

        assert feed.state == ConnectionState.DISCONNECTED
        assert feed._reconnect_task is None
        assert feed._open_transport.await_count == 1

    @pytest.mark.asyncio
    async def test_subscribe_while_connected_sends_frames(self, stream_feed):
        ws = FakeWebSocket()
        stream_feed._open_transport = AsyncMock(return_value=ws)
        await stream_feed.connect()

        await stream_feed.subscribe("TOKEN_B")
        await stream_feed.unsubscribe("TOKEN_B")

        types = [frame["type"] for frame in ws.sent]
        assert types == [
            "SUBSCRIBE_PRICE", "SUBSCRIBE_TXS", "UNSUBSCRIBE_PRICE", "UNSUBSCRIBE_TXS",
        ]
        await stream_feed.disconnect()

    @pytest.mark.asyncio
    async def test_status(self, feed):
        await feed.subscribe("TOKEN_A")

        status = feed.get_status()

        assert status["state"] == "disconnected"
        assert status["subscriptions"] == ["TOKEN_A"]
