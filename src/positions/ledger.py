"""
Position Ledger for the survival agent.

Owns every open position and derives hold/partial/full exit decisions from
price observations. Two paths feed it:

- the scheduled path (check_all), which resolves a price per position from
  the live cache or, failing that, a market data poll
- the push path (on_live_price), which reacts to stream updates and queues
  urgent exits when a stop is breached

One asyncio.Lock per asset serialises writes from both paths.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from src.core.config import PositionRulesConfig
from src.core.context import AgentContext
from src.core.models import (
    ExitAction,
    ExitSignal,
    Position,
    PositionStatus,
    PriceObservation,
    UrgentExit,
    Urgency,
)
from src.feed.price_feed import PriceFeed

logger = structlog.get_logger(__name__)


class PositionLedger:
    """
    Exclusive owner of open positions.

    Callers receive copies; the only way to change a position is through
    the ledger's methods.
    """

    def __init__(
        self,
        context: AgentContext,
        feed: Optional[PriceFeed] = None,
        config: Optional[PositionRulesConfig] = None,
    ):
        self.context = context
        self.config = config or context.config.positions
        self.feed = feed

        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.urgent_exits: "asyncio.Queue[UrgentExit]" = asyncio.Queue(
            maxsize=self.config.urgent_queue_size
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _lock(self, asset: str) -> asyncio.Lock:
        lock = self._locks.get(asset)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[asset] = lock
        return lock

    def get(self, asset: str) -> Optional[Position]:
        """Copy of the position for asset, if held."""
        position = self._positions.get(asset)
        return position.model_copy() if position else None

    def has(self, asset: str) -> bool:
        return asset in self._positions

    @property
    def assets(self) -> List[str]:
        return list(self._positions.keys())

    @property
    def positions(self) -> List[Position]:
        return [p.model_copy() for p in self._positions.values()]

    def __len__(self) -> int:
        return len(self._positions)

    def total_exposure(self) -> Decimal:
        """Capital committed across all open positions."""
        return sum((p.capital_value for p in self._positions.values()), Decimal("0"))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(
        self,
        asset: str,
        entry_price: Decimal,
        quantity: Decimal,
        capital_value: Decimal,
        opened_at: Optional[datetime] = None,
    ) -> Position:
        """
        Record a buy fill.

        Buying an asset that is already held averages into the existing
        position: the entry price becomes the quantity-weighted average and
        quantity and capital value are summed.
        """
        if entry_price <= 0 or quantity <= 0:
            raise ValueError(f"Invalid fill for {asset}: price={entry_price} qty={quantity}")

        is_new = False
        async with self._lock(asset):
            existing = self._positions.get(asset)
            if existing is None:
                position = Position(
                    asset=asset,
                    entry_price=entry_price,
                    quantity=quantity,
                    capital_value=capital_value,
                    opened_at=opened_at or self.context.now(),
                )
                self._positions[asset] = position
                is_new = True
                logger.info(
                    "ledger.position_opened",
                    asset=asset,
                    entry_price=str(entry_price),
                    quantity=str(quantity),
                    capital_value=str(capital_value),
                )
            else:
                total_quantity = existing.quantity + quantity
                existing.entry_price = (
                    existing.entry_price * existing.quantity + entry_price * quantity
                ) / total_quantity
                existing.quantity = total_quantity
                existing.capital_value += capital_value
                existing.highest_price = max(existing.highest_price, entry_price)
                existing.lowest_price = min(existing.lowest_price, entry_price)
                position = existing
                logger.info(
                    "ledger.position_averaged",
                    asset=asset,
                    entry_price=str(existing.entry_price),
                    quantity=str(existing.quantity),
                    capital_value=str(existing.capital_value),
                )

        if is_new and self.feed is not None:
            await self.feed.subscribe(asset, on_price=self.on_live_price)

        self.context.mark_dirty("ledger")
        return position.model_copy()

    async def record_partial_exit(
        self,
        asset: str,
        sold_quantity: Decimal,
        sold_capital_value: Decimal,
    ) -> Optional[Position]:
        """Reduce a position after a partial sale. Returns None if not held."""
        async with self._lock(asset):
            position = self._positions.get(asset)
            if position is None:
                return None

            remaining = position.quantity - sold_quantity
            if remaining <= 0:
                raise ValueError(
                    f"Partial exit of {sold_quantity} would empty {asset}; close it instead"
                )

            position.quantity = remaining
            position.capital_value = max(
                Decimal("0"), position.capital_value - sold_capital_value
            )
            position.partial_exit_done = True
            self._restore_status(position)

        logger.info(
            "ledger.partial_exit_recorded",
            asset=asset,
            sold_quantity=str(sold_quantity),
            remaining_quantity=str(position.quantity),
            capital_value=str(position.capital_value),
        )
        self.context.mark_dirty("ledger")
        return position.model_copy()

    async def close(self, asset: str) -> Optional[Position]:
        """Remove a fully exited position. Returns None if not held."""
        async with self._lock(asset):
            position = self._positions.pop(asset, None)
        if position is None:
            return None

        if self.feed is not None:
            await self.feed.unsubscribe(asset)

        logger.info(
            "ledger.position_closed",
            asset=asset,
            quantity=str(position.quantity),
            capital_value=str(position.capital_value),
        )
        self.context.mark_dirty("ledger")
        return position

    def release_exit(self, asset: str) -> bool:
        """Return a position stuck in EXITING to its trading status."""
        position = self._positions.get(asset)
        if position is None or position.status != PositionStatus.EXITING:
            return False
        self._restore_status(position)
        logger.info("ledger.exit_released", asset=asset, status=position.status.value)
        self.context.mark_dirty("ledger")
        return True

    @staticmethod
    def _restore_status(position: Position):
        position.status = (
            PositionStatus.TRAILING
            if position.trailing_stop_price is not None
            else PositionStatus.ACTIVE
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _apply_price(self, position: Position, price: Decimal, now: datetime):
        """Update extremes, evaluation bookkeeping and the trailing stop."""
        if price > position.highest_price:
            position.highest_price = price
        if price < position.lowest_price:
            position.lowest_price = price
        position.last_evaluated_at = now
        position.evaluation_count += 1

        if position.gain_percent(price) < self.config.trailing_activation_percent:
            return

        candidate = position.highest_price * (1 - self.config.trailing_stop_percent / 100)
        current = position.trailing_stop_price
        if current is None or candidate > current:
            position.trailing_stop_price = candidate
            if position.status == PositionStatus.ACTIVE:
                position.status = PositionStatus.TRAILING
            logger.debug(
                "ledger.trailing_stop_raised",
                asset=position.asset,
                stop=str(candidate),
                highest=str(position.highest_price),
            )

    def _stop_breach(self, position: Position, price: Decimal) -> Optional[str]:
        """Reason string if a hard or trailing stop is breached."""
        gain = position.gain_percent(price)
        if gain <= -self.config.stop_loss_percent:
            return f"Stop loss hit ({gain:.1f}%)"
        stop = position.trailing_stop_price
        if stop is not None and price <= stop:
            return f"Trailing stop hit (price {price} <= stop {stop:.6f})"
        return None

    def _decide(self, position: Position, price: Decimal, now: datetime) -> ExitSignal:
        gain = position.gain_percent(price)

        def signal(action, reason, urgency, fraction=Decimal("0")):
            return ExitSignal(
                asset=position.asset,
                action=action,
                reason=reason,
                urgency=urgency,
                fraction=fraction,
                price=price,
                gain_percent=gain,
            )

        breach = self._stop_breach(position, price)
        if breach:
            return signal(ExitAction.FULL_EXIT, breach, Urgency.CRITICAL, Decimal("1"))

        held = position.hold_seconds(now)
        if held < self.config.min_hold_minutes * 60:
            return signal(ExitAction.HOLD, "Minimum hold time not reached", Urgency.LOW)

        if gain >= self.config.take_profit_percent:
            return signal(
                ExitAction.FULL_EXIT, f"Take profit hit ({gain:.1f}%)", Urgency.HIGH, Decimal("1")
            )

        if not position.partial_exit_done and gain >= self.config.partial_take_percent:
            position.partial_exit_done = True
            return signal(
                ExitAction.PARTIAL_EXIT,
                f"Partial take profit ({gain:.1f}%)",
                Urgency.MEDIUM,
                self.config.partial_size_percent / 100,
            )

        if held >= self.config.max_hold_hours * 3600:
            return signal(
                ExitAction.FULL_EXIT,
                f"Max hold time reached ({held / 3600:.1f}h)",
                Urgency.MEDIUM,
                Decimal("1"),
            )

        return signal(ExitAction.HOLD, "Holding", Urgency.LOW)

    async def evaluate(self, asset: str, current_price: Decimal) -> Optional[ExitSignal]:
        """
        Apply a price to a position and decide what to do with it.

        Returns None when the asset is not held. A position with an urgent
        exit already in flight is updated but always held.
        """
        async with self._lock(asset):
            position = self._positions.get(asset)
            if position is None:
                return None

            now = self.context.now()
            self._apply_price(position, current_price, now)

            if position.status == PositionStatus.EXITING:
                result = ExitSignal(
                    asset=asset,
                    action=ExitAction.HOLD,
                    reason="Exit in progress",
                    price=current_price,
                    gain_percent=position.gain_percent(current_price),
                )
            else:
                result = self._decide(position, current_price, now)

        if result.is_exit:
            logger.info(
                "ledger.exit_signal",
                asset=asset,
                action=result.action.value,
                reason=result.reason,
                urgency=result.urgency.value,
                price=str(current_price),
            )
        self.context.mark_dirty("ledger")
        return result

    async def check_all(self) -> List[ExitSignal]:
        """Evaluate every open position using live prices or a poll."""
        signals = []
        for asset in self.assets:
            observation = await self._resolve_price(asset)
            if observation is None:
                logger.warning("ledger.price_unavailable", asset=asset)
                continue

            result = await self.evaluate(asset, observation.price)
            if result is not None and result.is_exit:
                signals.append(result)
        return signals

    async def _resolve_price(self, asset: str) -> Optional[PriceObservation]:
        if self.feed is None:
            return None
        observation = self.feed.get_live(asset)
        if observation is None:
            observation = await self.feed.poll(asset)
        return observation

    async def on_live_price(self, observation: PriceObservation):
        """Push-path handler: queue an urgent exit on a stop breach."""
        urgent = None
        async with self._lock(observation.asset):
            position = self._positions.get(observation.asset)
            if position is None:
                return

            self._apply_price(position, observation.price, self.context.now())
            if position.status != PositionStatus.EXITING:
                reason = self._stop_breach(position, observation.price)
                if reason:
                    position.status = PositionStatus.EXITING
                    urgent = UrgentExit(
                        asset=observation.asset,
                        price=observation.price,
                        reason=reason,
                        detected_at=observation.timestamp,
                    )

        self.context.mark_dirty("ledger")
        if urgent is not None:
            logger.warning(
                "ledger.urgent_exit_queued",
                asset=urgent.asset,
                price=str(urgent.price),
                reason=urgent.reason,
            )
            await self.urgent_exits.put(urgent)

    # ------------------------------------------------------------------
    # Account-wide actions
    # ------------------------------------------------------------------

    async def tighten_stops(self, factor: Optional[Decimal] = None) -> int:
        """
        Pull armed trailing stops closer to each position's high.

        new_stop = highest - (highest - stop) * factor, applied only when it
        raises the stop. Returns the number of stops moved.
        """
        factor = self.config.tighten_factor if factor is None else Decimal(str(factor))
        if factor < 0 or factor > 1:
            raise ValueError(f"Tighten factor must be within [0, 1], got {factor}")

        tightened = 0
        for asset in self.assets:
            async with self._lock(asset):
                position = self._positions.get(asset)
                if position is None or position.trailing_stop_price is None:
                    continue
                stop = position.trailing_stop_price
                new_stop = position.highest_price - (position.highest_price - stop) * factor
                if new_stop > stop:
                    position.trailing_stop_price = new_stop
                    tightened += 1

        if tightened:
            logger.info("ledger.stops_tightened", count=tightened, factor=str(factor))
            self.context.mark_dirty("ledger")
        return tightened

    def force_exit_all(self) -> List[ExitSignal]:
        """Full-exit signals for every position, regardless of price."""
        signals = []
        for position in self._positions.values():
            position.status = PositionStatus.EXITING
            last = self.feed.get_last(position.asset) if self.feed is not None else None
            signals.append(ExitSignal(
                asset=position.asset,
                action=ExitAction.FULL_EXIT,
                reason="Emergency exit",
                urgency=Urgency.CRITICAL,
                fraction=Decimal("1"),
                price=last.price if last else None,
            ))

        logger.warning("ledger.force_exit_all", positions=len(signals))
        if signals:
            self.context.mark_dirty("ledger")
        return signals

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Position]:
        return {asset: p.model_copy() for asset, p in self._positions.items()}

    async def restore(self, positions: Dict[str, Position]):
        """Replace the book with persisted positions and resubscribe them."""
        self._positions = {}
        for asset, position in positions.items():
            restored = position.model_copy()
            if restored.status == PositionStatus.EXITING:
                # A sale in flight at shutdown did not complete
                self._restore_status(restored)
            self._positions[asset] = restored

        if self.feed is not None:
            for asset in self._positions:
                await self.feed.subscribe(asset, on_price=self.on_live_price)

        logger.info("ledger.restored", positions=len(self._positions))

    def get_summary(self) -> Dict[str, Any]:
        return {
            "open_positions": len(self._positions),
            "total_exposure": str(self.total_exposure()),
            "urgent_pending": self.urgent_exits.qsize(),
            "positions": [
                {
                    "asset": p.asset,
                    "entry_price": str(p.entry_price),
                    "quantity": str(p.quantity),
                    "capital_value": str(p.capital_value),
                    "highest_price": str(p.highest_price),
                    "trailing_stop": str(p.trailing_stop_price) if p.trailing_stop_price else None,
                    "partial_exit_done": p.partial_exit_done,
                    "status": p.status.value,
                    "opened_at": p.opened_at.isoformat(),
                }
                for p in self._positions.values()
            ],
        }
