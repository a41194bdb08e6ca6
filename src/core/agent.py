"""Survival agent - orchestrates all components."""
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from src.core.context import AgentContext
from src.core.exceptions import ExecutionError
from src.core.models import (
    EntrySignal,
    ExitAction,
    ExitSignal,
    HealthStatus,
    RiskMode,
    StateSnapshot,
    SurvivalAction,
    Trade,
    TradeSide,
    Severity,
    UrgentExit,
    Urgency,
)
from src.exchange.execution import TradeExecutor, create_executor
from src.exchange.market_data import MarketDataProvider, create_market_data
from src.feed.price_feed import PriceFeed, create_price_feed
from src.feed.price_watcher import PriceWatcher
from src.positions.ledger import PositionLedger
from src.risk.risk_manager import RiskGuardrail
from src.storage.database import StateStore
from src.strategies.base import EntrySignalProducer
from src.strategies.watchlist import WatchlistStrategy
from src.survival.profit_allocator import ProfitAllocator
from src.survival.survival_manager import SurvivalAllocator

logger = structlog.get_logger(__name__)


class SurvivalAgent:
    """
    Main agent loop that orchestrates all components.

    Responsibilities:
    - Runs one sequential tick every interval (balance, health, posture,
      exits, entries)
    - Drains the ledger's urgent exit queue outside the tick cadence
    - Sells positions and records the resulting trades
    - Routes realized profit to the reserve asset and the profit split
    - Persists state through the state store
    """

    RECENT_TRADES_KEPT = 100

    def __init__(
        self,
        context: AgentContext,
        executor: TradeExecutor,
        feed: PriceFeed,
        ledger: PositionLedger,
        risk: RiskGuardrail,
        survival: SurvivalAllocator,
        allocator: ProfitAllocator,
        producers: Optional[List[EntrySignalProducer]] = None,
        store: Optional[StateStore] = None,
        watcher: Optional[PriceWatcher] = None,
        market_data: Optional[MarketDataProvider] = None,
    ):
        self.context = context
        self.config = context.config
        self.executor = executor
        self.feed = feed
        self.ledger = ledger
        self.risk = risk
        self.survival = survival
        self.allocator = allocator
        self.producers = producers or []
        self.store = store
        self.watcher = watcher
        self.market_data = market_data

        # State
        self.recent_trades: List[Trade] = []
        self.last_balance: Optional[Decimal] = None
        self.last_mode: RiskMode = RiskMode.NORMAL
        self.tick_count = 0
        self._exits_in_flight: set = set()
        self._deferred_exits: Dict[str, ExitSignal] = {}

        # Control
        self._running = False
        self._main_task: Optional[asyncio.Task] = None
        self._urgent_task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Restore state, connect the feed and start the loops."""
        logger.info("agent.starting")

        await self.load_state()

        connected = await self.feed.connect()
        if not connected:
            logger.warning("agent.feed_unavailable", fallback="polling")

        self._running = True
        self._main_task = asyncio.create_task(self._main_loop())
        self._urgent_task = asyncio.create_task(self._urgent_loop())

        logger.info(
            "agent.started",
            positions=len(self.ledger),
            producers=[p.name for p in self.producers],
            execution_mode=self.config.system.execution_mode,
        )

    async def stop(self):
        """Stop the agent gracefully and flush state."""
        logger.info("agent.stopping")
        self._running = False

        current = asyncio.current_task()
        for task in (self._main_task, self._urgent_task):
            if task is None or task.done() or task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._main_task = None
        self._urgent_task = None

        await self.feed.disconnect()
        if self.store is not None:
            await self.store.flush()

        logger.info("agent.stopped")

    async def _main_loop(self):
        """Main loop: one tick, then sleep."""
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.config.loop.tick_interval_seconds)
            except Exception as e:
                logger.error("agent.tick_error", error=str(e), exc_info=True)
                await asyncio.sleep(self.config.loop.error_backoff_seconds)

    async def _urgent_loop(self):
        """Execute urgent exits as soon as the ledger queues them."""
        while self._running:
            urgent: UrgentExit = await self.ledger.urgent_exits.get()
            try:
                await self._execute_exit(ExitSignal(
                    asset=urgent.asset,
                    action=ExitAction.FULL_EXIT,
                    reason=urgent.reason,
                    urgency=urgent.urgency,
                    fraction=Decimal("1"),
                    price=urgent.price,
                ))
            except Exception as e:
                logger.error("agent.urgent_exit_error", asset=urgent.asset, error=str(e))
            finally:
                self.ledger.urgent_exits.task_done()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self):
        """Run one full iteration. Concurrent calls are serialised."""
        async with self._tick_lock:
            self.tick_count += 1

            # 1. Balance and drawdown
            balance = await self.executor.get_balance()
            self.last_balance = balance
            capital = balance + self.ledger.total_exposure()
            self.risk.observe_balance(capital)

            # 2. Capital health
            await self.survival.refresh_reserve()
            check = self.survival.check_health(capital)
            if check.status in (HealthStatus.CRITICAL, HealthStatus.EMERGENCY):
                self._release_operating_reserve(capital)
            if check.action == SurvivalAction.LIQUIDATE:
                sold = self.survival.state.reserve_balance * check.fraction
                received = await self.survival.execute_liquidation(check)
                if received is not None:
                    await self._store_trade(Trade(
                        asset=self.survival.reserve_asset,
                        side=TradeSide.RESERVE_SELL,
                        quantity=sold,
                        capital_value=received,
                        reason=check.reason,
                        timestamp=self.context.now(),
                    ))
                    balance = await self.executor.get_balance()

            # 3. Posture
            mode = self.risk.suggested_mode()
            if mode != self.last_mode:
                logger.warning("agent.mode_changed", previous=self.last_mode.value, mode=mode.value)
                if mode == RiskMode.CONSERVATIVE:
                    await self.ledger.tighten_stops()
                self.last_mode = mode

            # 4. Manage open positions
            for signal in await self.ledger.check_all():
                await self._execute_exit(signal)

            # 5. New entries
            if mode == RiskMode.NORMAL:
                balance = await self.executor.get_balance()
                await self._process_entries(balance)

            # 6. Status
            logger.info(
                "agent.tick_completed",
                tick=self.tick_count,
                balance=str(balance),
                positions=len(self.ledger),
                exposure=str(self.ledger.total_exposure()),
                mode=mode.value,
                health=check.status.value,
            )

    def tradable_balance(self, balance: Decimal) -> Decimal:
        """Balance left for entries once the operating reserve is set aside."""
        return max(Decimal("0"), balance - self.context.survival_state.operating_reserve)

    def _release_operating_reserve(self, capital: Decimal):
        shortfall = self.survival.low_threshold - capital
        covered = self.allocator.emergency_allocation(shortfall)
        if covered > 0:
            self.survival.debit_operating_reserve(covered)
            logger.warning("agent.operating_reserve_released", amount=str(covered))

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    async def _execute_exit(self, signal: ExitSignal) -> Optional[Trade]:
        """
        Sell a position (fully or partially) and record the trade.

        A per-asset in-flight guard keeps the tick and the urgent path from
        selling the same asset twice. A critical exit that meets the guard
        is deferred and runs once the sale in flight has finished.
        """
        asset = signal.asset
        if asset in self._exits_in_flight:
            if signal.urgency == Urgency.CRITICAL:
                self._deferred_exits[asset] = signal
                logger.warning("agent.exit_deferred", asset=asset, reason=signal.reason)
            else:
                logger.info("agent.exit_already_in_flight", asset=asset, reason=signal.reason)
            return None

        self._exits_in_flight.add(asset)
        try:
            trade = await self._sell_position(signal)
        finally:
            self._exits_in_flight.discard(asset)
            deferred = self._deferred_exits.pop(asset, None)

        if deferred is not None:
            deferred_trade = await self._execute_exit(deferred)
            trade = trade or deferred_trade
        return trade

    async def _sell_position(self, signal: ExitSignal) -> Optional[Trade]:
        """Sell through the executor. Any failed sale releases the position."""
        asset = signal.asset
        position = self.ledger.get(asset)
        if position is None:
            return None

        full = signal.action == ExitAction.FULL_EXIT
        fraction = Decimal("1") if full else signal.fraction
        quantity = position.quantity if full else position.quantity * fraction

        logger.info(
            "agent.exit_started",
            asset=asset,
            action=signal.action.value,
            reason=signal.reason,
            urgency=signal.urgency.value,
            quantity=str(quantity),
        )
        try:
            fill = await self.executor.sell(asset, quantity)
        except ExecutionError as e:
            logger.error("agent.exit_failed", asset=asset, error=str(e))
            self.ledger.release_exit(asset)
            return None
        except Exception:
            self.ledger.release_exit(asset)
            raise

        if full:
            cost = position.capital_value
            await self.ledger.close(asset)
            if self.watcher is not None:
                self.watcher.unwatch(asset)
        else:
            cost = position.capital_value * fraction
            await self.ledger.record_partial_exit(asset, fill.quantity, cost)

        trade = Trade(
            asset=asset,
            side=TradeSide.SELL,
            quantity=fill.quantity,
            capital_value=fill.received_capital,
            price=fill.fill_price,
            profit=fill.received_capital - cost,
            reason=signal.reason,
            tx_id=fill.tx_id,
            timestamp=self.context.now(),
        )
        logger.info(
            "agent.exit_completed",
            asset=asset,
            received=str(fill.received_capital),
            profit=str(trade.profit),
            full=full,
        )
        await self._record_close(trade)
        return trade

    async def _record_close(self, trade: Trade):
        self.risk.record_close(trade)
        await self._store_trade(trade)
        for producer in self.producers:
            await producer.on_position_closed(trade.asset, trade.profit)
        if trade.profit is not None and trade.profit > 0:
            await self._route_profit(trade.profit)

    async def _route_profit(self, profit: Decimal):
        """Survival share to the reserve asset, the rest through the allocator."""
        purchase = await self.survival.on_realized_profit(profit)
        if purchase.executed:
            await self._store_trade(Trade(
                asset=self.survival.reserve_asset,
                side=TradeSide.RESERVE_BUY,
                quantity=purchase.quantity,
                capital_value=purchase.spent,
                price=purchase.spent / purchase.quantity,
                reason="Profit to reserve",
                timestamp=self.context.now(),
            ))

        remaining = profit * (1 - self.survival.config.profit_to_reserve_fraction)
        balance = await self.executor.get_balance()
        allocation = self.allocator.allocate(remaining, balance, self.win_rate())
        self.survival.credit_operating_reserve(allocation.operating_reserve)
        self.survival.add_earmark(allocation.reserve_purchase)
        # The reinvest share stays in the tradable balance
        logger.info(
            "agent.profit_routed",
            profit=str(profit),
            reserve_asset=str(purchase.spent) if purchase.executed else "0",
            operating_reserve=str(allocation.operating_reserve),
            reinvest=str(allocation.reinvest),
            earmarked=str(allocation.reserve_purchase),
            tradable=str(self.tradable_balance(balance)),
        )

    async def _store_trade(self, trade: Trade):
        self.recent_trades.append(trade)
        if len(self.recent_trades) > self.RECENT_TRADES_KEPT:
            self.recent_trades = self.recent_trades[-self.RECENT_TRADES_KEPT:]
        if self.store is not None:
            await self.store.record_trade(trade)

    def win_rate(self) -> Decimal:
        """Share of profitable closes among the most recent sells."""
        closes = [
            t for t in self.recent_trades
            if t.side == TradeSide.SELL and t.profit is not None
        ][-self.config.loop.win_rate_window:]
        if not closes:
            return Decimal("0.5")
        wins = sum(1 for t in closes if t.profit > 0)
        return Decimal(wins) / Decimal(len(closes))

    async def emergency_exit(self) -> List[Trade]:
        """Sell every position regardless of price, then stop."""
        logger.warning("agent.emergency_exit", positions=len(self.ledger))
        trades = []
        for signal in self.ledger.force_exit_all():
            try:
                trade = await self._execute_exit(signal)
            except Exception as e:
                logger.error("agent.emergency_exit_failed", asset=signal.asset, error=str(e))
                continue
            if trade is not None:
                trades.append(trade)
        await self.stop()
        return trades

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def _process_entries(self, balance: Decimal):
        """Run producers and open positions that pass sizing and guardrails."""
        for producer in self.producers:
            if not producer.is_active:
                continue
            try:
                signals = await producer.generate()
            except Exception as e:
                logger.error("agent.producer_error", producer=producer.name, error=str(e))
                continue

            for signal in signals:
                if self.ledger.has(signal.asset):
                    continue
                spent = await self._execute_entry(signal, producer, balance)
                if spent is not None:
                    balance -= spent

    async def _execute_entry(
        self,
        signal: EntrySignal,
        producer: EntrySignalProducer,
        balance: Decimal,
    ) -> Optional[Decimal]:
        tradable = self.tradable_balance(balance)
        base = signal.suggested_amount or self.config.capital.max_trade_size * Decimal("0.2")
        amount = self.risk.size_position(base, tradable, signal.confidence)
        amount = min(amount, self.config.capital.max_trade_size)
        if amount > tradable:
            logger.info(
                "agent.entry_skipped",
                asset=signal.asset,
                amount=str(amount),
                tradable=str(tradable),
                reason="operating reserve",
            )
            return None

        check = self.risk.can_open(amount, balance)
        if not check.allowed:
            return None

        try:
            fill = await self.executor.buy(signal.asset, amount)
        except ExecutionError as e:
            logger.error("agent.entry_failed", asset=signal.asset, error=str(e))
            return None

        await self.ledger.open(
            signal.asset, fill.fill_price, fill.filled_quantity, fill.capital_spent
        )
        self.risk.record_open()
        if self.watcher is not None:
            self.watcher.watch(signal.asset, fill.fill_price)
        await producer.on_entry_filled(signal.asset, fill.capital_spent, fill.fill_price)

        await self._store_trade(Trade(
            asset=signal.asset,
            side=TradeSide.BUY,
            quantity=fill.filled_quantity,
            capital_value=fill.capital_spent,
            price=fill.fill_price,
            reason=signal.reason,
            tx_id=fill.tx_id,
            timestamp=self.context.now(),
        ))
        logger.info(
            "agent.entry_completed",
            asset=signal.asset,
            amount=str(fill.capital_spent),
            price=str(fill.fill_price),
            confidence=str(signal.confidence),
            warning=check.reason if check.severity == Severity.WARNING else None,
        )
        return fill.capital_spent

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            positions=self.ledger.snapshot(),
            risk=self.risk.snapshot(),
            survival=self.context.survival_state.model_copy(),
            saved_at=self.context.now(),
        )

    async def load_state(self):
        """Restore persisted state and hook up debounced saves."""
        if self.store is None:
            return

        snapshot = await self.store.load()
        if snapshot is not None:
            self.risk.restore(snapshot.risk)
            self.context.survival_state = snapshot.survival
            await self.ledger.restore(snapshot.positions)
            await self.executor.adopt_positions(self.ledger.positions)
            if self.watcher is not None:
                for position in snapshot.positions.values():
                    self.watcher.watch(position.asset, position.entry_price)
            self.recent_trades = list(reversed(
                await self.store.get_trades(limit=self.RECENT_TRADES_KEPT)
            ))

        self.store.snapshot_provider = self.snapshot
        self.context.on_change(self.store.request_save)
        logger.info("agent.state_loaded", positions=len(self.ledger))

    def clear_cooldown(self):
        """Manual override of the loss-streak cooldown."""
        self.risk.clear_cooldown()

    def get_status(self) -> Dict[str, Any]:
        """Get current agent status."""
        return {
            'running': self._running,
            'tick_count': self.tick_count,
            'balance': str(self.last_balance) if self.last_balance is not None else None,
            'mode': self.risk.suggested_mode().value,
            'ledger': self.ledger.get_summary(),
            'risk': self.risk.get_status(),
            'survival': self.survival.get_status(),
            'feed': self.feed.get_status(),
            'win_rate': str(self.win_rate()),
            'recent_trades': [
                {
                    'asset': t.asset,
                    'side': t.side.value,
                    'capital_value': str(t.capital_value),
                    'profit': str(t.profit) if t.profit is not None else None,
                    'reason': t.reason,
                    'timestamp': t.timestamp.isoformat(),
                }
                for t in self.recent_trades[-10:]
            ],
            'producers': [p.get_stats() for p in self.producers],
        }


def create_agent(
    context: Optional[AgentContext] = None,
    store: Optional[StateStore] = None,
) -> SurvivalAgent:
    """Factory function wiring the agent from configuration."""
    context = context or AgentContext()
    config = context.config

    market_data = create_market_data(config.market_data)
    executor = create_executor(
        market_data,
        mode=config.system.execution_mode,
        starting_balance=config.loop.paper_starting_balance,
        slippage_percent=config.loop.paper_slippage_percent,
    )
    feed = create_price_feed(config.feed, market_data, clock=context.clock)
    ledger = PositionLedger(context, feed)
    risk = RiskGuardrail(context, exposure=ledger.total_exposure)
    survival = SurvivalAllocator(context, executor, market_data)
    allocator = ProfitAllocator(context)
    watcher = PriceWatcher(feed)

    producers: List[EntrySignalProducer] = []
    if config.loop.watchlist:
        producers.append(WatchlistStrategy(
            market_data,
            config.loop.watchlist,
            min_liquidity=config.loop.min_liquidity_usd,
            min_volume=config.loop.min_volume_usd,
            base_amount=config.capital.max_trade_size * Decimal("0.2"),
            is_held=ledger.has,
        ))

    return SurvivalAgent(
        context=context,
        executor=executor,
        feed=feed,
        ledger=ledger,
        risk=risk,
        survival=survival,
        allocator=allocator,
        producers=producers,
        store=store,
        watcher=watcher,
        market_data=market_data,
    )
