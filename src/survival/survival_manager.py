"""
Capital Survival Allocator.

Keeps the agent alive:

1. PROFIT: a share of every realized profit buys the reserve asset
2. HOLD: the reserve asset is held as a store of value
3. SURVIVE: when trading capital falls below the watermarks, part of the
   reserve is sold back into base currency

Capital health is a pure function of the trading capital against two
thresholds derived from the initial capital.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog

from src.core.config import SurvivalConfig
from src.core.context import AgentContext
from src.core.exceptions import ExecutionError, MarketDataError
from src.core.models import HealthStatus, SurvivalAction, SurvivalState
from src.exchange.execution import TradeExecutor
from src.exchange.market_data import MarketDataProvider

logger = structlog.get_logger(__name__)


@dataclass
class HealthCheck:
    """Outcome of a capital health check.

    Attributes:
        status: Health bucket for the observed capital
        action: What the allocator recommends
        fraction: Share of the reserve to liquidate (0 unless liquidating)
        reason: Human-readable explanation
        capital: Capital the check was made against
    """
    status: HealthStatus
    action: SurvivalAction
    fraction: Decimal = Decimal("0")
    reason: str = ""
    capital: Decimal = Decimal("0")


@dataclass
class ReservePurchase:
    """Outcome of routing realized profit into the reserve asset."""
    requested: Decimal
    executed: bool = False
    spent: Decimal = Decimal("0")
    quantity: Decimal = Decimal("0")
    pending: Decimal = Decimal("0")
    reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class SurvivalAllocator:
    """
    Owns SurvivalState in the agent context.

    Thresholds (fractions of initial capital):
    - capital >= 2 x low watermark: healthy
    - capital >= low watermark: low (monitor)
    - capital >= critical watermark: critical (sell a small share of reserve)
    - below: emergency (sell a larger share of reserve)
    """

    def __init__(
        self,
        context: AgentContext,
        executor: TradeExecutor,
        market_data: Optional[MarketDataProvider] = None,
        config: Optional[SurvivalConfig] = None,
    ):
        self.context = context
        self.executor = executor
        self.market_data = market_data
        self.config = config or context.config.survival

        initial = context.config.capital.initial_capital
        self.low_threshold = initial * self.config.low_watermark_fraction
        self.critical_threshold = initial * self.config.critical_watermark_fraction

    @property
    def state(self) -> SurvivalState:
        return self.context.survival_state

    @property
    def reserve_asset(self) -> str:
        return self.config.reserve_asset

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _status_for(self, capital: Decimal) -> HealthStatus:
        if capital >= self.low_threshold * 2:
            return HealthStatus.HEALTHY
        if capital >= self.low_threshold:
            return HealthStatus.LOW
        if capital >= self.critical_threshold:
            return HealthStatus.CRITICAL
        return HealthStatus.EMERGENCY

    def check_health(self, capital_balance: Decimal) -> HealthCheck:
        """Classify capital and recommend an action. Deterministic for equal inputs."""
        status = self._status_for(capital_balance)
        has_reserve = self.state.reserve_balance > 0

        if status == HealthStatus.EMERGENCY and has_reserve:
            fraction = self.config.emergency_sell_fraction
            check = HealthCheck(
                status, SurvivalAction.LIQUIDATE, fraction,
                f"EMERGENCY: capital at {capital_balance:.2f}, selling {fraction * 100:.0f}% of reserve",
                capital_balance,
            )
        elif status == HealthStatus.CRITICAL and has_reserve:
            fraction = self.config.critical_sell_fraction
            check = HealthCheck(
                status, SurvivalAction.LIQUIDATE, fraction,
                f"CRITICAL: capital at {capital_balance:.2f}, selling {fraction * 100:.0f}% of reserve",
                capital_balance,
            )
        elif status == HealthStatus.HEALTHY:
            check = HealthCheck(
                status, SurvivalAction.NONE,
                reason=f"HEALTHY: capital at {capital_balance:.2f}",
                capital=capital_balance,
            )
        else:
            check = HealthCheck(
                status, SurvivalAction.MONITOR,
                reason=f"{status.value.upper()}: capital at {capital_balance:.2f}, monitoring closely",
                capital=capital_balance,
            )

        previous = self.state.status
        if status != previous:
            logger.warning(
                "survival.status_changed",
                previous=previous.value,
                status=status.value,
                capital=str(capital_balance),
            )
        self.state.status = status
        self.state.last_checked_at = self.context.now()
        self.context.mark_dirty("survival")
        return check

    async def execute_liquidation(self, check: HealthCheck) -> Optional[Decimal]:
        """
        Sell the recommended share of the reserve.

        The survival-sell counter only moves after the sale succeeds.

        Returns:
            Base currency received, or None if nothing was sold
        """
        if check.action != SurvivalAction.LIQUIDATE or not self.reserve_asset:
            return None

        quantity = self.state.reserve_balance * check.fraction
        if quantity <= 0:
            return None

        logger.warning(
            "survival.liquidation_started",
            status=check.status.value,
            fraction=str(check.fraction),
            quantity=str(quantity),
        )
        try:
            fill = await self.executor.sell(self.reserve_asset, quantity)
        except ExecutionError as e:
            logger.error("survival.liquidation_failed", error=str(e), quantity=str(quantity))
            return None

        previous_balance = self.state.reserve_balance
        self.state.reserve_balance = max(Decimal("0"), previous_balance - fill.quantity)
        if previous_balance > 0:
            self.state.reserve_value = (
                self.state.reserve_value * self.state.reserve_balance / previous_balance
            )
        self.state.total_reserve_sold += fill.received_capital
        self.state.survival_sell_count += 1

        logger.info(
            "survival.liquidation_completed",
            received=str(fill.received_capital),
            remaining_reserve=str(self.state.reserve_balance),
            survival_sell_count=self.state.survival_sell_count,
        )
        self.context.mark_dirty("survival")
        return fill.received_capital

    # ------------------------------------------------------------------
    # Profit routing
    # ------------------------------------------------------------------

    async def on_realized_profit(self, profit_amount: Decimal) -> ReservePurchase:
        """
        Route a share of realized profit into the reserve asset.

        The share plus any carried earmark is bought in one go. Amounts below
        the minimum trade, a missing reserve asset and failed purchases all
        leave the earmark pending for the next profit.
        """
        if profit_amount <= 0:
            return ReservePurchase(
                requested=Decimal("0"),
                pending=self.state.pending_reserve_purchase,
                reason="No profit to route",
            )

        share = profit_amount * self.config.profit_to_reserve_fraction
        return await self._buy_reserve(share + self.state.pending_reserve_purchase)

    def add_earmark(self, amount: Decimal):
        """Add base currency to the pending reserve purchase."""
        if amount <= 0:
            return
        self.state.pending_reserve_purchase += amount
        logger.info(
            "survival.earmark_added",
            amount=str(amount),
            pending=str(self.state.pending_reserve_purchase),
        )
        self.context.mark_dirty("survival")

    def credit_operating_reserve(self, amount: Decimal):
        if amount <= 0:
            return
        self.state.operating_reserve += amount
        self.context.mark_dirty("survival")

    def debit_operating_reserve(self, amount: Decimal) -> Decimal:
        """Withdraw up to amount from the operating reserve."""
        taken = min(max(amount, Decimal("0")), self.state.operating_reserve)
        if taken > 0:
            self.state.operating_reserve -= taken
            self.context.mark_dirty("survival")
        return taken

    async def _buy_reserve(self, amount: Decimal) -> ReservePurchase:
        def carry(reason: str) -> ReservePurchase:
            self.state.pending_reserve_purchase = amount
            self.context.mark_dirty("survival")
            logger.info("survival.earmark_carried", pending=str(amount), reason=reason)
            return ReservePurchase(requested=amount, pending=amount, reason=reason)

        if amount < self.config.min_reserve_trade:
            return carry("Below minimum reserve purchase")
        if not self.reserve_asset:
            return carry("No reserve asset configured")

        try:
            fill = await self.executor.buy(self.reserve_asset, amount)
        except ExecutionError as e:
            logger.error("survival.reserve_purchase_failed", amount=str(amount), error=str(e))
            return carry(f"Purchase failed: {e}")

        self.state.pending_reserve_purchase = Decimal("0")
        self.state.total_reserve_purchased += fill.capital_spent
        self.state.reserve_balance += fill.filled_quantity
        self.state.reserve_value += fill.capital_spent
        self.context.mark_dirty("survival")

        logger.info(
            "survival.reserve_purchased",
            spent=str(fill.capital_spent),
            quantity=str(fill.filled_quantity),
            reserve_balance=str(self.state.reserve_balance),
        )
        return ReservePurchase(
            requested=amount,
            executed=True,
            spent=fill.capital_spent,
            quantity=fill.filled_quantity,
            reason="Reserve purchased",
        )

    # ------------------------------------------------------------------
    # Reserve valuation
    # ------------------------------------------------------------------

    async def refresh_reserve(self):
        """Re-read the reserve holding and value it at the current quote."""
        if not self.reserve_asset:
            return

        try:
            balance = await self.executor.get_holding(self.reserve_asset)
        except ExecutionError as e:
            logger.warning("survival.reserve_refresh_failed", error=str(e))
            return
        self.state.reserve_balance = balance

        if self.market_data is not None and balance > 0:
            try:
                quote = await self.market_data.get_quote(self.reserve_asset)
                self.state.reserve_value = balance * quote.price
            except (MarketDataError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("survival.reserve_valuation_failed", error=str(e))
        elif balance == 0:
            self.state.reserve_value = Decimal("0")

        self.context.mark_dirty("survival")

    def get_status(self) -> Dict[str, Any]:
        s = self.state
        return {
            "status": s.status.value,
            "reserve_asset": self.reserve_asset or None,
            "reserve_balance": str(s.reserve_balance),
            "reserve_value": str(s.reserve_value),
            "total_reserve_purchased": str(s.total_reserve_purchased),
            "total_reserve_sold": str(s.total_reserve_sold),
            "survival_sell_count": s.survival_sell_count,
            "pending_reserve_purchase": str(s.pending_reserve_purchase),
            "operating_reserve": str(s.operating_reserve),
            "low_threshold": str(self.low_threshold),
            "critical_threshold": str(self.critical_threshold),
            "last_checked_at": s.last_checked_at.isoformat() if s.last_checked_at else None,
        }
