"""Data models for the survival agent.

This module defines the data structures shared by the agent components:
- Price feed observations and trade prints
- Positions and the exit signals the ledger derives from them
- Account-wide risk state and capital survival state
- Collaborator payloads (quotes, fills, entry signals)

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class PositionStatus(str, Enum):
    """Lifecycle status of an open position."""
    ACTIVE = "active"
    TRAILING = "trailing"         # Trailing stop armed
    EXITING = "exiting"           # Urgent exit queued, sale pending


class ExitAction(str, Enum):
    """Decision returned by the position ledger."""
    HOLD = "hold"
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"


class Urgency(str, Enum):
    """How quickly an exit signal must be acted on."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PriceSource(str, Enum):
    """Provenance of a price observation."""
    LIVE = "live"                 # Pushed by the websocket stream
    POLLED = "polled"             # Fetched on demand from market data


class ConnectionState(str, Enum):
    """Price stream connection state machine."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"


class RiskMode(str, Enum):
    """Trading posture suggested by the risk guardrail."""
    NORMAL = "normal"
    CONSERVATIVE = "conservative"
    PAUSE = "pause"
    STOP = "stop"


class Severity(str, Enum):
    """Outcome severity of a guardrail check."""
    OK = "ok"
    WARNING = "warning"
    BLOCKED = "blocked"


class HealthStatus(str, Enum):
    """Capital health relative to the configured watermarks."""
    HEALTHY = "healthy"
    LOW = "low"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class SurvivalAction(str, Enum):
    """Action recommended by the survival allocator."""
    NONE = "none"
    MONITOR = "monitor"
    LIQUIDATE = "liquidate"


class TradeSide(str, Enum):
    """Side of a recorded trade."""
    BUY = "buy"
    SELL = "sell"
    RESERVE_BUY = "reserve_buy"
    RESERVE_SELL = "reserve_sell"


class AlertType(str, Enum):
    """Informational price alerts."""
    LARGE_MOVE = "large_move"
    WHALE_TRADE = "whale_trade"


# =============================================================================
# Market Data Models
# =============================================================================

class PriceObservation(BaseModel):
    """A point-in-time price with provenance.

    Attributes:
        asset: Asset identifier (token mint)
        price: Price in quote currency
        source: Live stream or polling fallback
        timestamp: Observation time (UTC)
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str = Field(..., description="Asset identifier")
    price: Decimal = Field(..., gt=0, description="Observed price")
    source: PriceSource = Field(..., description="Live or polled")
    timestamp: datetime = Field(default_factory=utcnow, description="Observation time")

    @property
    def is_live(self) -> bool:
        """True if the observation came from the stream."""
        return self.source == PriceSource.LIVE

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds elapsed since the observation."""
        return ((now or utcnow()) - self.timestamp).total_seconds()


class TradeUpdate(BaseModel):
    """A trade print observed on the stream."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str = Field(..., description="Asset identifier")
    side: str = Field(..., description="buy or sell")
    quantity: Decimal = Field(default=Decimal("0"), description="Token amount")
    value: Decimal = Field(default=Decimal("0"), description="Trade value in USD")
    price: Decimal = Field(default=Decimal("0"), description="Trade price")
    tx_hash: str = Field(default="", description="Transaction hash")
    timestamp: datetime = Field(default_factory=utcnow, description="Block time")


class Quote(BaseModel):
    """Market data snapshot returned by the polling provider."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str = Field(..., description="Asset identifier")
    price: Decimal = Field(..., gt=0, description="Current price")
    liquidity: Decimal = Field(default=Decimal("0"), ge=0, description="Pool liquidity (USD)")
    volume_24h: Decimal = Field(default=Decimal("0"), ge=0, description="24h volume (USD)")
    timestamp: datetime = Field(default_factory=utcnow, description="Quote time")


class PriceAlert(BaseModel):
    """Informational alert raised by the price watcher."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    alert_type: AlertType
    asset: str
    price: Decimal
    urgency: Urgency
    message: str
    percent_change: Optional[Decimal] = None
    value: Optional[Decimal] = None
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Execution Models
# =============================================================================

class BuyFill(BaseModel):
    """Result of a successful buy."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str
    filled_quantity: Decimal = Field(..., gt=0, description="Tokens received")
    fill_price: Decimal = Field(..., gt=0, description="Average fill price")
    capital_spent: Decimal = Field(..., gt=0, description="Base currency spent")
    tx_id: str = Field(default_factory=lambda: str(uuid4()))


class SellFill(BaseModel):
    """Result of a successful sell."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str
    quantity: Decimal = Field(..., gt=0, description="Tokens sold")
    received_capital: Decimal = Field(..., gt=0, description="Base currency received")
    tx_id: str = Field(default_factory=lambda: str(uuid4()))

    @property
    def fill_price(self) -> Decimal:
        """Effective price of the sale."""
        return self.received_capital / self.quantity


# =============================================================================
# Position Models
# =============================================================================

class Position(BaseModel):
    """One open holding of a traded asset.

    Owned by the position ledger. Anything outside the ledger works on
    copies returned by its accessors.

    Attributes:
        asset: Asset identifier
        entry_price: Weighted-average entry price
        quantity: Tokens held
        capital_value: Base currency committed at entry
        opened_at: Entry timestamp
        highest_price: Highest price seen since entry
        lowest_price: Lowest price seen since entry (may be below entry)
        trailing_stop_price: Armed trailing stop, never lowered once set
        partial_exit_done: Partial take-profit already taken
        status: Lifecycle status
        last_evaluated_at: Time of the last price evaluation
        evaluation_count: Number of price evaluations
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str = Field(..., description="Asset identifier")
    entry_price: Decimal = Field(..., gt=0, description="Average entry price")
    quantity: Decimal = Field(..., gt=0, description="Tokens held")
    capital_value: Decimal = Field(..., ge=0, description="Entry capital value")
    opened_at: datetime = Field(default_factory=utcnow, description="Entry time")

    highest_price: Decimal = Field(default=Decimal("0"), description="Highest price seen")
    lowest_price: Decimal = Field(default=Decimal("0"), description="Lowest price seen")
    trailing_stop_price: Optional[Decimal] = Field(default=None, description="Trailing stop")
    partial_exit_done: bool = Field(default=False, description="Partial exit taken")
    status: PositionStatus = Field(default=PositionStatus.ACTIVE, description="Status")

    last_evaluated_at: Optional[datetime] = Field(default=None, description="Last evaluation")
    evaluation_count: int = Field(default=0, ge=0, description="Evaluations")

    def model_post_init(self, __context: Any) -> None:
        if self.highest_price == 0:
            self.highest_price = self.entry_price
        if self.lowest_price == 0:
            self.lowest_price = self.entry_price

    def gain_percent(self, price: Decimal) -> Decimal:
        """Unrealized gain at price, as a percentage of entry."""
        return (price - self.entry_price) / self.entry_price * 100

    def hold_seconds(self, now: datetime) -> float:
        """Seconds held since entry."""
        return (now - self.opened_at).total_seconds()

    def market_value(self, price: Decimal) -> Decimal:
        """Value of the holding at price."""
        return self.quantity * price


class ExitSignal(BaseModel):
    """Decision derived for a position at a given price."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str
    action: ExitAction
    reason: str
    urgency: Urgency = Urgency.LOW
    fraction: Decimal = Field(default=Decimal("0"), ge=0, le=1, description="Fraction to sell")
    price: Optional[Decimal] = None
    gain_percent: Optional[Decimal] = None

    @property
    def is_exit(self) -> bool:
        """True for partial or full exits."""
        return self.action != ExitAction.HOLD


class UrgentExit(BaseModel):
    """Out-of-band exit request raised from the live price path."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str
    price: Decimal
    reason: str
    urgency: Urgency = Urgency.CRITICAL
    detected_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Strategy Models
# =============================================================================

class EntrySignal(BaseModel):
    """Buy candidate proposed by an entry-signal producer."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    asset: str = Field(..., description="Asset identifier")
    confidence: Decimal = Field(..., ge=0, le=100, description="Confidence 0-100")
    suggested_amount: Decimal = Field(..., gt=0, description="Suggested capital amount")
    reason: str = Field(default="", description="Why the producer likes it")
    strategy_name: str = Field(default="", description="Producing strategy")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional data")


# =============================================================================
# Trade Models
# =============================================================================

class Trade(BaseModel):
    """Executed trade record.

    Sells carry the realized profit relative to the capital value that was
    committed for the sold quantity.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()), description="Trade ID")
    asset: str = Field(..., description="Asset identifier")
    side: TradeSide = Field(..., description="Trade side")
    quantity: Decimal = Field(..., ge=0, description="Tokens traded")
    capital_value: Decimal = Field(..., ge=0, description="Base currency value")
    price: Decimal = Field(default=Decimal("0"), ge=0, description="Execution price")
    profit: Optional[Decimal] = Field(default=None, description="Realized profit")
    reason: str = Field(default="", description="Why the trade happened")
    tx_id: str = Field(default="", description="Execution reference")
    timestamp: datetime = Field(default_factory=utcnow, description="Execution time")

    @property
    def is_loss(self) -> bool:
        """True if the trade closed at a loss."""
        return self.profit is not None and self.profit < 0


# =============================================================================
# Account State Models
# =============================================================================

class RiskState(BaseModel):
    """Account-wide protective state. Mutated only by the risk guardrail."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    daily_pnl: Decimal = Field(default=Decimal("0"), description="Realized P&L today")
    daily_reset_date: str = Field(default="", description="UTC date of the last reset")
    peak_balance: Decimal = Field(default=Decimal("0"), ge=0, description="Peak balance")
    current_drawdown: Decimal = Field(default=Decimal("0"), ge=0, description="Drawdown %")
    consecutive_losses: int = Field(default=0, ge=0, description="Loss streak")
    cooldown_until: Optional[datetime] = Field(default=None, description="Cooldown expiry")
    last_trade_at: Optional[datetime] = Field(default=None, description="Last trade time")


class SurvivalState(BaseModel):
    """Capital health record. Mutated only by the survival allocator."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    reserve_balance: Decimal = Field(default=Decimal("0"), ge=0, description="Reserve tokens")
    reserve_value: Decimal = Field(default=Decimal("0"), ge=0, description="Reserve value")
    total_reserve_purchased: Decimal = Field(default=Decimal("0"), description="Capital spent on reserve")
    total_reserve_sold: Decimal = Field(default=Decimal("0"), description="Capital raised from reserve")
    survival_sell_count: int = Field(default=0, ge=0, description="Executed liquidations")
    status: HealthStatus = Field(default=HealthStatus.HEALTHY, description="Capital health")
    last_checked_at: Optional[datetime] = Field(default=None, description="Last health check")
    pending_reserve_purchase: Decimal = Field(default=Decimal("0"), ge=0, description="Carried earmark")
    operating_reserve: Decimal = Field(default=Decimal("0"), ge=0, description="Operating reserve")


class StateSnapshot(BaseModel):
    """Opaque document persisted by the state store."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    positions: Dict[str, Position] = Field(default_factory=dict)
    risk: RiskState = Field(default_factory=RiskState)
    survival: SurvivalState = Field(default_factory=SurvivalState)
    saved_at: datetime = Field(default_factory=utcnow)

    @field_validator("positions")
    @classmethod
    def keys_match_assets(cls, v: Dict[str, Position]) -> Dict[str, Position]:
        """Positions are keyed by their own asset id."""
        for key, position in v.items():
            if key != position.asset:
                raise ValueError(f"Position key {key} does not match asset {position.asset}")
        return v


__all__ = [
    "utcnow",
    "PositionStatus",
    "ExitAction",
    "Urgency",
    "PriceSource",
    "ConnectionState",
    "RiskMode",
    "Severity",
    "HealthStatus",
    "SurvivalAction",
    "TradeSide",
    "AlertType",
    "PriceObservation",
    "TradeUpdate",
    "Quote",
    "PriceAlert",
    "BuyFill",
    "SellFill",
    "Position",
    "ExitSignal",
    "UrgentExit",
    "EntrySignal",
    "Trade",
    "RiskState",
    "SurvivalState",
    "StateSnapshot",
]
