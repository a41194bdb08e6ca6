"""Risk guardrail - account-wide protection for the survival agent.

Every new entry is gated through a priority-ordered rule registry:
cooldown, daily loss ceiling, drawdown ceiling, exposure ceiling and
per-position ceiling block; trade spacing and an approaching daily loss
only warn. Closed trades feed the loss streak and cooldown, and the
current posture (normal, conservative, pause, stop) is derived from the
same state.

CRITICAL: these limits are the last line between a bad streak and a
drained account. Change them only with tests.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.core.config import RiskLimitsConfig
from src.core.context import AgentContext
from src.core.models import RiskMode, RiskState, Severity, Trade

logger = structlog.get_logger(__name__)


@dataclass
class RiskCheck:
    """Result of a guardrail check.

    Attributes:
        allowed: Whether the entry may proceed
        reason: Human-readable explanation
        severity: ok, warning or blocked
        rule_triggered: Name of the rule that produced the result (if any)
        metadata: Additional diagnostic information
    """
    allowed: bool
    reason: str = ""
    severity: Severity = Severity.OK
    rule_triggered: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskRule:
    """Individual guardrail rule.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Returns a RiskCheck when the rule fires, None otherwise
        priority: Lower numbers are checked first
    """
    name: str
    check_fn: Callable[[Decimal, Decimal], Optional[RiskCheck]]
    priority: int = 100


class RiskGuardrail:
    """
    Account-wide guardrail evaluator.

    Owns the RiskState held in the agent context; nothing else mutates it.

    Limits (defaults):
    - Daily loss ceiling: 10% of initial capital
    - Drawdown ceiling: 25% from peak balance
    - Exposure ceiling: 60% of balance
    - Single position ceiling: 20% of balance
    - Cooldown: 30 minutes after 3 consecutive losses
    - Spacing: 60 seconds between entries (warning only)
    """

    STREAK_SIZE_STEP = Decimal("0.2")
    STREAK_SIZE_FLOOR = Decimal("0.3")
    DRAWDOWN_SIZE_THRESHOLD = Decimal("10")
    DRAWDOWN_SIZE_FLOOR = Decimal("0.5")
    CONSERVATIVE_LOSS_STREAK = 2

    def __init__(
        self,
        context: AgentContext,
        exposure: Optional[Callable[[], Decimal]] = None,
        config: Optional[RiskLimitsConfig] = None,
    ):
        self.context = context
        self.config = config or context.config.risk
        self.max_daily_loss = context.config.max_daily_loss
        self._exposure = exposure or (lambda: Decimal("0"))

        if self.state.peak_balance == 0:
            self.state.peak_balance = context.config.capital.initial_capital
        if not self.state.daily_reset_date:
            self.state.daily_reset_date = self._today()

        self._rules: List[RiskRule] = []
        self._register_default_rules()

    @property
    def state(self) -> RiskState:
        return self.context.risk_state

    def _register_default_rules(self):
        """Register the guardrail rules in priority order."""
        self._rules = [
            RiskRule(name="cooldown", check_fn=self._check_cooldown, priority=1),
            RiskRule(name="daily_loss_limit", check_fn=self._check_daily_loss, priority=2),
            RiskRule(name="max_drawdown", check_fn=self._check_drawdown, priority=3),
            RiskRule(name="max_exposure", check_fn=self._check_exposure, priority=4),
            RiskRule(name="max_position_size", check_fn=self._check_position_size, priority=5),
            # Warning-only rules
            RiskRule(name="trade_spacing", check_fn=self._check_spacing, priority=6),
            RiskRule(name="daily_loss_warning", check_fn=self._check_daily_loss_warning, priority=7),
        ]
        self._rules.sort(key=lambda r: r.priority)

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def can_open(self, amount: Decimal, current_balance: Decimal) -> RiskCheck:
        """
        Decide whether a new entry of amount is allowed.

        The first rule that fires decides the outcome. A rule that raises
        blocks the entry. Drawdown and the exposure ceilings are measured
        against total balance: free balance plus committed exposure.

        Args:
            amount: Capital the entry would commit
            current_balance: Free balance in base currency

        Returns:
            RiskCheck with allowed flag, reason and severity
        """
        self._check_daily_reset()

        for rule in self._rules:
            try:
                result = rule.check_fn(amount, current_balance)
            except Exception as e:
                logger.error("risk.rule_error", rule=rule.name, error=str(e))
                return RiskCheck(
                    allowed=False,
                    reason=f"Risk rule '{rule.name}' encountered an error",
                    severity=Severity.BLOCKED,
                    rule_triggered=rule.name,
                )

            if result is None:
                continue

            result.rule_triggered = rule.name
            if not result.allowed:
                logger.warning(
                    "risk.entry_blocked",
                    rule=rule.name,
                    reason=result.reason,
                    amount=str(amount),
                    balance=str(current_balance),
                )
            else:
                logger.info("risk.entry_warning", rule=rule.name, reason=result.reason)
            return result

        return RiskCheck(allowed=True, reason="Risk checks passed")

    # === Rule Implementations ===

    def _check_cooldown(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        if not self.in_cooldown:
            return None
        remaining = (self.state.cooldown_until - self.context.now()).total_seconds() / 60
        return RiskCheck(
            allowed=False,
            reason=(
                f"In cooldown ({remaining:.0f} min remaining) after "
                f"{self.state.consecutive_losses} consecutive losses"
            ),
            severity=Severity.BLOCKED,
            metadata={"cooldown_until": self.state.cooldown_until.isoformat()},
        )

    def _check_daily_loss(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        if self.state.daily_pnl > -self.max_daily_loss:
            return None
        return RiskCheck(
            allowed=False,
            reason=f"Daily loss limit hit ({self.state.daily_pnl:.4f})",
            severity=Severity.BLOCKED,
            metadata={"daily_pnl": str(self.state.daily_pnl), "limit": str(self.max_daily_loss)},
        )

    def _check_drawdown(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        drawdown = self._drawdown(self._total(balance))
        if drawdown < self.config.max_drawdown_percent:
            return None
        return RiskCheck(
            allowed=False,
            reason=f"Max drawdown hit ({drawdown:.1f}%)",
            severity=Severity.BLOCKED,
            metadata={"drawdown": str(drawdown)},
        )

    def _check_exposure(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        if balance <= 0 or amount > balance:
            return RiskCheck(
                allowed=False,
                reason=f"Insufficient free balance ({balance:.4f})",
                severity=Severity.BLOCKED,
            )
        exposure_pct = (self._exposure() + amount) / self._total(balance) * 100
        if exposure_pct <= self.config.max_exposure_percent:
            return None
        return RiskCheck(
            allowed=False,
            reason=(
                f"Max exposure exceeded ({exposure_pct:.1f}% > "
                f"{self.config.max_exposure_percent}%)"
            ),
            severity=Severity.BLOCKED,
            metadata={"exposure_pct": str(exposure_pct)},
        )

    def _check_position_size(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        position_pct = amount / self._total(balance) * 100
        if position_pct <= self.config.max_single_position_percent:
            return None
        return RiskCheck(
            allowed=False,
            reason=(
                f"Position too large ({position_pct:.1f}% > "
                f"{self.config.max_single_position_percent}% max)"
            ),
            severity=Severity.BLOCKED,
            metadata={"position_pct": str(position_pct)},
        )

    def _check_spacing(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        last = self.state.last_trade_at
        if last is None:
            return None
        elapsed = (self.context.now() - last).total_seconds()
        if elapsed >= self.config.min_seconds_between_trades:
            return None
        wait = self.config.min_seconds_between_trades - elapsed
        return RiskCheck(
            allowed=True,
            reason=f"Trades closely spaced: {wait:.0f}s short of the minimum gap",
            severity=Severity.WARNING,
        )

    def _check_daily_loss_warning(self, amount: Decimal, balance: Decimal) -> Optional[RiskCheck]:
        if self.state.daily_pnl > -self.max_daily_loss * self.config.daily_loss_warning_ratio:
            return None
        return RiskCheck(
            allowed=True,
            reason=f"Approaching daily loss limit ({self.state.daily_pnl:.4f})",
            severity=Severity.WARNING,
        )

    # ------------------------------------------------------------------
    # State updates
    # ------------------------------------------------------------------

    def record_close(self, trade: Trade):
        """Feed a closed trade into daily P&L and the loss streak."""
        self._check_daily_reset()

        if trade.profit is None:
            return

        self.state.daily_pnl += trade.profit
        if trade.profit < 0:
            self.state.consecutive_losses += 1
            logger.warning(
                "risk.loss_recorded",
                asset=trade.asset,
                profit=str(trade.profit),
                consecutive_losses=self.state.consecutive_losses,
            )
            if self.state.consecutive_losses >= self.config.max_consecutive_losses:
                self.state.cooldown_until = self.context.now() + timedelta(
                    minutes=self.config.cooldown_minutes
                )
                logger.warning(
                    "risk.cooldown_started",
                    until=self.state.cooldown_until.isoformat(),
                    consecutive_losses=self.state.consecutive_losses,
                )
        else:
            if self.state.consecutive_losses > 0:
                logger.info(
                    "risk.loss_streak_reset",
                    previous=self.state.consecutive_losses,
                )
            self.state.consecutive_losses = 0

        self.context.mark_dirty("risk")

    def record_open(self):
        """Stamp the entry time used for trade spacing."""
        self.state.last_trade_at = self.context.now()
        self.context.mark_dirty("risk")

    def observe_balance(self, balance: Decimal) -> Decimal:
        """Track the peak balance and return the current drawdown percent."""
        self._check_daily_reset()
        if balance > self.state.peak_balance:
            self.state.peak_balance = balance
            logger.info("risk.new_peak", balance=str(balance))
        self.state.current_drawdown = self._drawdown(balance)
        self.context.mark_dirty("risk")
        return self.state.current_drawdown

    def clear_cooldown(self):
        """Manual override: clear cooldown and the loss streak."""
        self.state.cooldown_until = None
        self.state.consecutive_losses = 0
        logger.info("risk.cooldown_cleared")
        self.context.mark_dirty("risk")

    def snapshot(self) -> RiskState:
        return self.state.model_copy()

    def restore(self, state: RiskState):
        """Replace protective state with a persisted copy."""
        self.context.risk_state = state.model_copy()
        self._check_daily_reset()
        logger.info(
            "risk.restored",
            daily_pnl=str(self.state.daily_pnl),
            consecutive_losses=self.state.consecutive_losses,
            in_cooldown=self.in_cooldown,
        )

    # ------------------------------------------------------------------
    # Sizing and posture
    # ------------------------------------------------------------------

    def size_position(
        self,
        base_amount: Decimal,
        balance: Decimal,
        confidence: Decimal,
    ) -> Decimal:
        """
        Risk-adjusted entry size.

        base x confidence multiplier (0.5-1.0) x loss-streak multiplier x
        drawdown multiplier, capped at the single position ceiling and
        floored at the minimum viable trade.
        """
        confidence = min(max(Decimal(str(confidence)), Decimal("0")), Decimal("100"))
        size = base_amount * (Decimal("0.5") + confidence / 100 * Decimal("0.5"))

        losses = self.state.consecutive_losses
        if losses > 0:
            size *= max(self.STREAK_SIZE_FLOOR, 1 - losses * self.STREAK_SIZE_STEP)

        drawdown = self.state.current_drawdown
        if drawdown > self.DRAWDOWN_SIZE_THRESHOLD:
            size *= max(self.DRAWDOWN_SIZE_FLOOR, 1 - drawdown / 100)

        ceiling = balance * self.config.max_single_position_percent / 100
        size = min(size, ceiling)
        return max(size, self.config.min_position_size)

    def suggested_mode(self) -> RiskMode:
        """Current posture: stop > pause > conservative > normal."""
        self._check_daily_reset()
        if self.state.daily_pnl <= -self.max_daily_loss:
            return RiskMode.STOP
        if self.in_cooldown:
            return RiskMode.PAUSE
        if (
            self.state.consecutive_losses >= self.CONSERVATIVE_LOSS_STREAK
            or self.state.current_drawdown > self.config.conservative_drawdown_percent
        ):
            return RiskMode.CONSERVATIVE
        return RiskMode.NORMAL

    @property
    def in_cooldown(self) -> bool:
        until = self.state.cooldown_until
        return until is not None and self.context.now() < until

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _total(self, balance: Decimal) -> Decimal:
        """Free balance plus capital committed to open positions."""
        return balance + self._exposure()

    def _drawdown(self, balance: Decimal) -> Decimal:
        peak = self.state.peak_balance
        if peak <= 0:
            return Decimal("0")
        return max(Decimal("0"), (peak - balance) / peak * 100)

    def _today(self) -> str:
        return self.context.now().strftime("%Y-%m-%d")

    def _check_daily_reset(self):
        today = self._today()
        if today != self.state.daily_reset_date:
            logger.info(
                "risk.daily_reset",
                previous_date=self.state.daily_reset_date,
                daily_pnl=str(self.state.daily_pnl),
            )
            self.state.daily_pnl = Decimal("0")
            self.state.daily_reset_date = today
            self.context.mark_dirty("risk")

    def get_status(self) -> Dict[str, Any]:
        return {
            "mode": self.suggested_mode().value,
            "daily_pnl": str(self.state.daily_pnl),
            "max_daily_loss": str(self.max_daily_loss),
            "peak_balance": str(self.state.peak_balance),
            "current_drawdown": str(self.state.current_drawdown),
            "consecutive_losses": self.state.consecutive_losses,
            "cooldown_until": (
                self.state.cooldown_until.isoformat() if self.state.cooldown_until else None
            ),
            "last_trade_at": (
                self.state.last_trade_at.isoformat() if self.state.last_trade_at else None
            ),
        }


def create_risk_guardrail(
    context: AgentContext,
    exposure: Optional[Callable[[], Decimal]] = None,
) -> RiskGuardrail:
    """Factory function to create the risk guardrail."""
    return RiskGuardrail(context, exposure=exposure)
