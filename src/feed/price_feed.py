"""Live price stream with polling fallback.

The feed keeps one websocket to the price provider, resubscribes every
tracked asset after each (re)connect and caches the last observation per
asset. Connection management is an explicit state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
         ^              |             |
         |              v             v
         +------- BACKING_OFF <-------+

Heartbeat and reconnect timers are tasks owned by the feed, so
disconnect() can cancel them before the transport is closed.
"""
import asyncio
import inspect
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

import aiohttp
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from src.core.config import FeedConfig
from src.core.exceptions import FeedError, MarketDataError
from src.core.models import (
    ConnectionState,
    PriceObservation,
    PriceSource,
    TradeUpdate,
    utcnow,
)
from src.exchange.market_data import MarketDataProvider

logger = structlog.get_logger(__name__)

PriceCallback = Callable[[PriceObservation], Any]
TradeCallback = Callable[[TradeUpdate], Any]

FEED_EVENTS = ("connected", "disconnected", "reconnect_failed")


# =============================================================================
# Wire Schemas
# =============================================================================

class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: Optional[Dict[str, Any]] = None


class _PricePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str
    price: Optional[Decimal] = None
    value: Optional[Decimal] = None


class _TradePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str
    side: str = "sell"
    price: Decimal = Decimal("0")
    tokenAmount: Decimal = Decimal("0")
    usdValue: Optional[Decimal] = None
    solValue: Optional[Decimal] = None
    txHash: str = ""
    blockUnixTime: Optional[int] = None


class PriceFeed:
    """
    Dual-mode price source.

    Push: websocket stream with subscribe/unsubscribe, heartbeat and bounded
    reconnect. Pull: poll() queries the market data provider on demand.
    get_last() returns whichever observation is newest in the cache, tagged
    with its provenance.
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        market_data: Optional[MarketDataProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or FeedConfig()
        self.market_data = market_data
        self._clock = clock

        self.state = ConnectionState.DISCONNECTED

        # Subscriptions survive reconnects
        self._subscribed: Set[str] = set()
        self._price_callbacks: Dict[str, List[PriceCallback]] = {}
        self._trade_callbacks: Dict[str, List[TradeCallback]] = {}
        self._price_observers: List[PriceCallback] = []
        self._trade_observers: List[TradeCallback] = []
        self._listeners: Dict[str, List[Callable[[], Any]]] = {e: [] for e in FEED_EVENTS}

        self._latest: Dict[str, PriceObservation] = {}

        # Transport and owned timers
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._last_pong: Optional[datetime] = None
        self._closing = False

        # Counters
        self.messages_received = 0
        self.messages_dropped = 0
        self.polls_made = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscribed)

    async def connect(self) -> bool:
        """Open the stream. Returns True once connected.

        A failed attempt enters the backoff path; callers may keep using
        poll() meanwhile. Calling connect() after a terminal
        reconnect_failed starts a fresh attempt budget.
        """
        if not self.config.has_credentials:
            logger.warning("price_feed.no_credentials", fallback="polling")
            return False

        if self.state == ConnectionState.CONNECTED:
            logger.warning("price_feed.already_connected")
            return True
        if self.state == ConnectionState.CONNECTING:
            return False

        self._closing = False
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        self._reconnect_attempts = 0

        if await self._open():
            return True
        await self._schedule_reconnect()
        return False

    async def disconnect(self):
        """Close the stream and cancel every owned timer."""
        self._closing = True

        # Timers first, so nothing reconnects behind our back
        await self._cancel_task(self._reconnect_task)
        await self._cancel_task(self._heartbeat_task)
        self._reconnect_task = None
        self._heartbeat_task = None

        await self._cancel_task(self._reader_task)
        self._reader_task = None

        await self._close_transport()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

        self.state = ConnectionState.DISCONNECTED
        logger.info("price_feed.disconnected", subscriptions=len(self._subscribed))

    async def subscribe(
        self,
        asset: str,
        on_price: Optional[PriceCallback] = None,
        on_trade: Optional[TradeCallback] = None,
    ):
        """Register interest in an asset's price and trade updates."""
        self._subscribed.add(asset)
        if on_price is not None:
            self._price_callbacks.setdefault(asset, []).append(on_price)
        if on_trade is not None:
            self._trade_callbacks.setdefault(asset, []).append(on_trade)

        if self.is_connected:
            await self._send_subscribe(asset)

        logger.info("price_feed.subscribed", asset=asset, live=self.is_connected)

    async def unsubscribe(self, asset: str):
        """Drop an asset, its callbacks and its cached price."""
        if asset not in self._subscribed:
            return
        self._subscribed.discard(asset)
        self._price_callbacks.pop(asset, None)
        self._trade_callbacks.pop(asset, None)
        self._latest.pop(asset, None)

        if self.is_connected:
            await self._send({"type": "UNSUBSCRIBE_PRICE", "data": {"address": asset}})
            await self._send({"type": "UNSUBSCRIBE_TXS", "data": {"address": asset}})

        logger.info("price_feed.unsubscribed", asset=asset)

    def get_last(self, asset: str) -> Optional[PriceObservation]:
        """Most recent cached observation for asset, live or polled."""
        return self._latest.get(asset)

    def get_live(self, asset: str) -> Optional[PriceObservation]:
        """Cached live observation, if connected and not stale."""
        observation = self._latest.get(asset)
        if observation is None or not observation.is_live or not self.is_connected:
            return None
        if observation.age_seconds(self._clock()) > self.config.stale_after_seconds:
            return None
        return observation

    async def poll(self, asset: str) -> Optional[PriceObservation]:
        """Fetch a price on demand through the market data provider.

        Returns None when the provider has no usable price. A fresher live
        observation in the cache is not overwritten.
        """
        if self.market_data is None:
            return None

        try:
            quote = await self.market_data.get_quote(asset)
        except MarketDataError as e:
            logger.warning("price_feed.poll_failed", asset=asset, error=str(e))
            return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("price_feed.poll_unreachable", asset=asset, error=str(e))
            return None

        self.polls_made += 1
        observation = PriceObservation(
            asset=asset,
            price=quote.price,
            source=PriceSource.POLLED,
            timestamp=self._clock(),
        )
        if self.get_live(asset) is None:
            self._latest[asset] = observation
        return observation

    def add_observer(
        self,
        on_price: Optional[PriceCallback] = None,
        on_trade: Optional[TradeCallback] = None,
    ):
        """Register a global observer for every price and trade update."""
        if on_price is not None:
            self._price_observers.append(on_price)
        if on_trade is not None:
            self._trade_observers.append(on_trade)

    def add_listener(self, event: str, callback: Callable[[], Any]):
        """Register a lifecycle listener (connected, disconnected, reconnect_failed)."""
        if event not in self._listeners:
            raise FeedError(f"Unknown feed event '{event}'")
        self._listeners[event].append(callback)

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "subscriptions": sorted(self._subscribed),
            "cached_prices": len(self._latest),
            "reconnect_attempts": self._reconnect_attempts,
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
            "polls_made": self.polls_made,
            "last_pong": self._last_pong.isoformat() if self._last_pong else None,
        }

    # ------------------------------------------------------------------
    # Connection state machine
    # ------------------------------------------------------------------

    async def _open_transport(self) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(
            self.config.stream_url,
            params={"x-api-key": self.config.api_key},
            headers={"X-API-KEY": self.config.api_key},
            autoping=False,
        )

    async def _open(self) -> bool:
        self.state = ConnectionState.CONNECTING
        try:
            ws = await asyncio.wait_for(
                self._open_transport(), timeout=self.config.connect_timeout_seconds
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(
                "price_feed.connect_failed",
                error=str(e) or type(e).__name__,
                attempt=self._reconnect_attempts,
            )
            return False

        self._ws = ws
        self.state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        self._last_pong = self._clock()

        for asset in sorted(self._subscribed):
            await self._send_subscribe(asset)

        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        logger.info("price_feed.connected", subscriptions=len(self._subscribed))
        await self._emit("connected")
        return True

    async def _schedule_reconnect(self):
        if self._closing:
            return
        pending = self._reconnect_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return

        if self._reconnect_attempts >= self.config.max_reconnect_attempts:
            self.state = ConnectionState.DISCONNECTED
            logger.error(
                "price_feed.reconnect_failed",
                attempts=self._reconnect_attempts,
                fallback="polling",
            )
            await self._emit("reconnect_failed")
            return

        self._reconnect_attempts += 1
        delay = self.config.reconnect_base_delay_seconds * self._reconnect_attempts
        self.state = ConnectionState.BACKING_OFF
        logger.info(
            "price_feed.reconnect_scheduled",
            attempt=self._reconnect_attempts,
            max_attempts=self.config.max_reconnect_attempts,
            delay=delay,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        if self._closing:
            return
        if not await self._open():
            await self._schedule_reconnect()

    async def _teardown(self, reason: str):
        """Drop a broken connection and enter backoff."""
        if self._closing or self._ws is None:
            return

        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not current:
                await self._cancel_task(task)
        self._heartbeat_task = None
        self._reader_task = None

        await self._close_transport()
        self.state = ConnectionState.DISCONNECTED
        logger.warning("price_feed.connection_lost", reason=reason)
        await self._emit("disconnected")
        await self._schedule_reconnect()

    async def _close_transport(self):
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.warning("price_feed.close_error", error=str(e))

    async def _heartbeat_loop(self):
        interval = self.config.heartbeat_interval_seconds
        timeout = self.config.heartbeat_timeout_seconds
        while True:
            await asyncio.sleep(interval)
            ws = self._ws
            if ws is None:
                return

            silence = (self._clock() - self._last_pong).total_seconds()
            if silence > timeout:
                logger.warning("price_feed.heartbeat_timeout", silence=silence)
                await self._teardown("heartbeat timeout")
                return

            try:
                await ws.ping()
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                await self._teardown(f"ping failed: {e}")
                return

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse):
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.PONG:
                    self._last_pong = self._clock()
                elif msg.type == aiohttp.WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("price_feed.stream_error", error=str(ws.exception()))
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("price_feed.reader_error", error=str(e))
        await self._teardown("stream closed")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _send_subscribe(self, asset: str):
        await self._send({
            "type": "SUBSCRIBE_PRICE",
            "data": {"address": asset, "type": "TOKEN", "chartType": "1m", "currency": "usd"},
        })
        await self._send({"type": "SUBSCRIBE_TXS", "data": {"address": asset}})

    async def _send(self, payload: Dict[str, Any]):
        ws = self._ws
        if ws is None or ws.closed:
            return
        try:
            await ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning("price_feed.send_failed", type=payload.get("type"), error=str(e))

    async def _handle_message(self, raw: str):
        """Parse one frame. Malformed frames are logged and dropped."""
        self.messages_received += 1
        try:
            envelope = _Envelope.model_validate(json.loads(raw, parse_float=Decimal))
            if envelope.type == "PRICE_DATA":
                await self._on_price_data(_PricePayload.model_validate(envelope.data or {}))
            elif envelope.type == "TXS_DATA":
                await self._on_trade_data(_TradePayload.model_validate(envelope.data or {}))
            elif envelope.type == "SUBSCRIBE_RESULT":
                logger.debug("price_feed.subscribe_ack", data=envelope.data)
        except (ValueError, ValidationError) as e:
            self.messages_dropped += 1
            logger.warning("price_feed.malformed_message", error=str(e)[:200])

    async def _on_price_data(self, payload: _PricePayload):
        price = payload.price or payload.value
        if price is None or price <= 0:
            raise ValueError(f"no usable price for {payload.address}")

        observation = PriceObservation(
            asset=payload.address,
            price=price,
            source=PriceSource.LIVE,
            timestamp=self._clock(),
        )
        self._latest[observation.asset] = observation

        await self._dispatch(self._price_callbacks.get(observation.asset, []), observation)
        await self._dispatch(self._price_observers, observation)

    async def _on_trade_data(self, payload: _TradePayload):
        if payload.blockUnixTime:
            try:
                timestamp = datetime.fromtimestamp(payload.blockUnixTime, tz=timezone.utc)
            except (OverflowError, OSError, ValueError) as e:
                raise ValueError(f"block time out of range: {payload.blockUnixTime}") from e
        else:
            timestamp = self._clock()

        update = TradeUpdate(
            asset=payload.address,
            side="buy" if payload.side == "buy" else "sell",
            quantity=payload.tokenAmount,
            value=payload.usdValue or payload.solValue or Decimal("0"),
            price=payload.price,
            tx_hash=payload.txHash,
            timestamp=timestamp,
        )
        await self._dispatch(self._trade_callbacks.get(update.asset, []), update)
        await self._dispatch(self._trade_observers, update)

    async def _dispatch(self, callbacks: List[Callable[[Any], Any]], payload: Any):
        """Call each subscriber in turn; one failure never stops the rest."""
        for callback in list(callbacks):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "price_feed.callback_error",
                    asset=getattr(payload, "asset", None),
                    callback=getattr(callback, "__qualname__", repr(callback)),
                    error=str(e),
                )

    async def _emit(self, event: str):
        for callback in list(self._listeners[event]):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("price_feed.listener_error", event_name=event, error=str(e))

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]):
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def create_price_feed(
    config: Optional[FeedConfig] = None,
    market_data: Optional[MarketDataProvider] = None,
    clock: Callable[[], datetime] = utcnow,
) -> PriceFeed:
    """Factory function to create a configured PriceFeed instance."""
    return PriceFeed(config=config, market_data=market_data, clock=clock)
