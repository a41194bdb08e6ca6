"""Informational alerts for held assets (large moves, whale trades)."""
import inspect
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from src.core.config import FeedConfig
from src.core.models import (
    AlertType,
    PriceAlert,
    PriceObservation,
    TradeUpdate,
    Urgency,
)
from src.feed.price_feed import PriceFeed

logger = structlog.get_logger(__name__)

AlertCallback = Callable[[PriceAlert], Any]


class PriceWatcher:
    """
    Watches the global feed stream for assets the agent holds.

    Exit decisions belong to the position ledger; the watcher only raises
    alerts for operators and dashboards.
    """

    def __init__(self, feed: PriceFeed, config: Optional[FeedConfig] = None):
        self.config = config or feed.config
        self._watched: Set[str] = set()
        self._last_price: Dict[str, Decimal] = {}
        self._callbacks: List[AlertCallback] = []
        self.alerts: List[PriceAlert] = []

        feed.add_observer(on_price=self.on_price, on_trade=self.on_trade)

    def watch(self, asset: str, price: Optional[Decimal] = None):
        self._watched.add(asset)
        if price is not None:
            self._last_price[asset] = price

    def unwatch(self, asset: str):
        self._watched.discard(asset)
        self._last_price.pop(asset, None)

    def is_watching(self, asset: str) -> bool:
        return asset in self._watched

    def on_alert(self, callback: AlertCallback):
        self._callbacks.append(callback)

    async def on_price(self, observation: PriceObservation):
        if observation.asset not in self._watched:
            return

        previous = self._last_price.get(observation.asset)
        self._last_price[observation.asset] = observation.price
        if previous is None or previous <= 0:
            return

        move = (observation.price - previous) / previous * 100
        if abs(move) < self.config.large_move_percent:
            return

        await self._raise(PriceAlert(
            alert_type=AlertType.LARGE_MOVE,
            asset=observation.asset,
            price=observation.price,
            percent_change=move,
            urgency=Urgency.HIGH if move < 0 else Urgency.MEDIUM,
            message=f"Large move {move:+.1f}%",
        ))

    async def on_trade(self, update: TradeUpdate):
        if update.asset not in self._watched:
            return
        if update.value < self.config.whale_trade_usd:
            return

        await self._raise(PriceAlert(
            alert_type=AlertType.WHALE_TRADE,
            asset=update.asset,
            price=update.price,
            value=update.value,
            urgency=Urgency.HIGH if update.side == "sell" else Urgency.MEDIUM,
            message=f"Whale {update.side}: ${update.value:,.0f}",
        ))

    async def _raise(self, alert: PriceAlert):
        self.alerts.append(alert)
        if len(self.alerts) > 100:
            self.alerts = self.alerts[-100:]

        logger.info(
            "price_watcher.alert",
            alert_type=alert.alert_type.value,
            asset=alert.asset,
            urgency=alert.urgency.value,
            message=alert.message,
        )
        for callback in list(self._callbacks):
            try:
                result = callback(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("price_watcher.callback_error", error=str(e))
