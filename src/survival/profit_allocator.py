"""Dynamic split of realized profit.

After the survival share has gone to the reserve asset, the rest of a
realized profit is divided by priority:

1. Operating reserve (months of running costs): survival first
2. Reinvestment into trading capital: growth
3. Extra reserve asset purchases: whatever is left
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog

from src.core.config import CapitalConfig, ProfitAllocationConfig
from src.core.context import AgentContext

logger = structlog.get_logger(__name__)


@dataclass
class ProfitAllocation:
    """How a profit was split, in base currency."""
    operating_reserve: Decimal = Decimal("0")
    reinvest: Decimal = Decimal("0")
    reserve_purchase: Decimal = Decimal("0")
    reason: str = ""

    @property
    def total(self) -> Decimal:
        return self.operating_reserve + self.reinvest + self.reserve_purchase


class ProfitAllocator:
    """Decides the operating/reinvest/reserve split for a profit."""

    HIGH_WIN_RATE = Decimal("0.6")
    LOW_WIN_RATE = Decimal("0.4")
    AGGRESSIVE_RATIO = Decimal("0.7")
    CONSERVATIVE_RATIO = Decimal("0.4")
    TARGET_BOOST = Decimal("0.2")
    MAX_REINVEST_RATIO = Decimal("0.8")

    def __init__(
        self,
        context: AgentContext,
        config: Optional[ProfitAllocationConfig] = None,
        capital: Optional[CapitalConfig] = None,
    ):
        self.context = context
        self.config = config or context.config.allocation
        self.capital = capital or context.config.capital

    @property
    def min_reserve(self) -> Decimal:
        return self.capital.monthly_operating_cost * self.config.reserve_min_months

    @property
    def ideal_reserve(self) -> Decimal:
        return self.capital.monthly_operating_cost * self.config.reserve_ideal_months

    def allocate(
        self,
        profit: Decimal,
        current_balance: Decimal,
        win_rate: Decimal,
    ) -> ProfitAllocation:
        """
        Split profit by survival priorities.

        Args:
            profit: Profit left after the survival share
            current_balance: Trading balance, compared with the capital target
            win_rate: Recent win rate in [0, 1]

        Returns:
            ProfitAllocation whose parts sum to profit
        """
        result = ProfitAllocation()
        if profit <= 0:
            result.reason = "No profit to allocate"
            return result

        reasons = []
        remaining = profit
        operating = self.context.survival_state.operating_reserve

        # Priority 1: operating reserve
        deficit = max(Decimal("0"), self.min_reserve - operating)
        if deficit > 0:
            result.operating_reserve = min(remaining, deficit)
            reasons.append(f"Reserve below minimum, adding {result.operating_reserve:.4f}")
        elif operating < self.ideal_reserve:
            result.operating_reserve = min(
                remaining * self.config.reserve_topup_fraction,
                self.ideal_reserve - operating,
            )
            reasons.append(f"Building reserve: {result.operating_reserve:.4f}")
        remaining -= result.operating_reserve

        if remaining <= 0:
            result.reason = " | ".join(reasons)
            self._log(result, profit)
            return result

        # Priority 2: reinvestment
        ratio = self.config.base_reinvest_ratio
        if win_rate > self.HIGH_WIN_RATE:
            ratio = self.AGGRESSIVE_RATIO
            reasons.append("High win rate: aggressive reinvest")
        elif win_rate < self.LOW_WIN_RATE:
            ratio = self.CONSERVATIVE_RATIO
            reasons.append("Low win rate: conservative reinvest")
        else:
            reasons.append("Normal reinvest")

        if current_balance < self.capital.capital_target * Decimal("0.5"):
            ratio = min(self.MAX_REINVEST_RATIO, ratio + self.TARGET_BOOST)
            reasons.append("Below capital target: boosting reinvest")

        result.reinvest = remaining * ratio
        remaining -= result.reinvest

        # Priority 3: reserve asset
        has_reserve_asset = bool(self.context.config.survival.reserve_asset)
        if has_reserve_asset and remaining >= self.config.min_reserve_purchase:
            result.reserve_purchase = remaining
            reasons.append(f"Reserve purchase: {remaining:.4f}")
        else:
            result.reinvest += remaining
            reasons.append(
                "No reserve asset: added to reinvest"
                if not has_reserve_asset
                else "Below reserve purchase threshold: added to reinvest"
            )

        result.reason = " | ".join(reasons)
        self._log(result, profit)
        return result

    def emergency_allocation(self, shortfall: Decimal) -> Decimal:
        """Part of a capital shortfall the operating reserve can cover."""
        if shortfall <= 0:
            return Decimal("0")
        covered = min(shortfall, self.context.survival_state.operating_reserve)
        logger.warning(
            "profit_allocator.emergency_allocation",
            shortfall=str(shortfall),
            covered=str(covered),
        )
        return covered

    def _log(self, result: ProfitAllocation, profit: Decimal):
        logger.info(
            "profit_allocator.allocated",
            profit=str(profit),
            operating_reserve=str(result.operating_reserve),
            reinvest=str(result.reinvest),
            reserve_purchase=str(result.reserve_purchase),
            reason=result.reason,
        )
