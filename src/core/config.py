"""Configuration management for the survival agent."""

from decimal import Decimal
from typing import List, Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Survival Agent", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    # paper = simulated fills against market data quotes
    execution_mode: Literal["paper", "live"] = Field(
        default="paper", validation_alias="EXECUTION_MODE"
    )


# =============================================================================
# Price Feed Configuration
# =============================================================================


class FeedConfig(BaseSettings):
    """Live price stream and heartbeat settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    api_key: str = Field(default="", validation_alias="BIRDEYE_API_KEY")
    stream_url: str = Field(
        default="wss://public-api.birdeye.so/socket/solana",
        validation_alias="PRICE_STREAM_URL",
    )

    heartbeat_interval_seconds: float = Field(
        default=30.0, validation_alias="FEED_HEARTBEAT_INTERVAL"
    )
    heartbeat_timeout_seconds: float = Field(
        default=60.0, validation_alias="FEED_HEARTBEAT_TIMEOUT"
    )
    connect_timeout_seconds: float = Field(
        default=10.0, validation_alias="FEED_CONNECT_TIMEOUT"
    )
    max_reconnect_attempts: int = Field(
        default=5, validation_alias="FEED_MAX_RECONNECT_ATTEMPTS"
    )
    reconnect_base_delay_seconds: float = Field(
        default=5.0, validation_alias="FEED_RECONNECT_BASE_DELAY"
    )

    # Live observations older than this are ignored by the ledger
    stale_after_seconds: float = Field(
        default=120.0, validation_alias="FEED_STALE_AFTER_SECONDS"
    )

    # Informational alerts
    large_move_percent: Decimal = Field(
        default=Decimal("10"), validation_alias="ALERT_LARGE_MOVE_PERCENT"
    )
    whale_trade_usd: Decimal = Field(
        default=Decimal("10000"), validation_alias="ALERT_WHALE_TRADE_USD"
    )

    @field_validator("max_reconnect_attempts")
    @classmethod
    def validate_attempts(cls, v):
        """Reconnect attempts must be positive."""
        if v < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        return v

    @computed_field
    @property
    def has_credentials(self) -> bool:
        """True when an API key is configured."""
        return bool(self.api_key) and not self.api_key.startswith("your_")


# =============================================================================
# Market Data Configuration
# =============================================================================


class MarketDataConfig(BaseSettings):
    """Polling market data provider settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    api_key: str = Field(default="", validation_alias="BIRDEYE_API_KEY")
    base_url: str = Field(
        default="https://public-api.birdeye.so", validation_alias="MARKET_DATA_URL"
    )
    chain: str = Field(default="solana", validation_alias="MARKET_DATA_CHAIN")
    request_timeout_seconds: float = Field(
        default=10.0, validation_alias="MARKET_DATA_TIMEOUT"
    )


# =============================================================================
# Capital Configuration
# =============================================================================


class CapitalConfig(BaseSettings):
    """Capital levels, denominated in the base currency."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    initial_capital: Decimal = Field(
        default=Decimal("20"), validation_alias="INITIAL_CAPITAL_SOL"
    )
    capital_target: Decimal = Field(
        default=Decimal("100"), validation_alias="CAPITAL_TARGET_SOL"
    )
    monthly_operating_cost: Decimal = Field(
        default=Decimal("0.5"), validation_alias="MONTHLY_OPERATING_COST_SOL"
    )
    max_trade_size: Decimal = Field(
        default=Decimal("1.0"), validation_alias="MAX_TRADE_SIZE_SOL"
    )

    @field_validator("initial_capital", "capital_target")
    @classmethod
    def validate_positive(cls, v):
        """Capital levels must be positive."""
        if v <= 0:
            raise ValueError("Capital levels must be positive")
        return v


# =============================================================================
# Position Rules Configuration
# =============================================================================


class PositionRulesConfig(BaseSettings):
    """Exit rules applied by the position ledger. Percentages are 0-100."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    stop_loss_percent: Decimal = Field(
        default=Decimal("20"), validation_alias="STOP_LOSS_PERCENT"
    )
    trailing_stop_percent: Decimal = Field(
        default=Decimal("15"), validation_alias="TRAILING_STOP_PERCENT"
    )
    trailing_activation_percent: Decimal = Field(
        default=Decimal("30"), validation_alias="TRAILING_ACTIVATION_PERCENT"
    )
    take_profit_percent: Decimal = Field(
        default=Decimal("100"), validation_alias="TAKE_PROFIT_PERCENT"
    )
    partial_take_percent: Decimal = Field(
        default=Decimal("50"), validation_alias="PARTIAL_TAKE_PERCENT"
    )
    partial_size_percent: Decimal = Field(
        default=Decimal("50"), validation_alias="PARTIAL_SIZE_PERCENT"
    )
    max_hold_hours: float = Field(default=24.0, validation_alias="MAX_HOLD_HOURS")
    min_hold_minutes: float = Field(default=5.0, validation_alias="MIN_HOLD_MINUTES")

    # Applied to trailing gaps when the agent turns conservative
    tighten_factor: Decimal = Field(
        default=Decimal("0.8"), validation_alias="STOP_TIGHTEN_FACTOR"
    )

    urgent_queue_size: int = Field(default=100, validation_alias="URGENT_QUEUE_SIZE")

    @field_validator(
        "stop_loss_percent",
        "trailing_stop_percent",
        "partial_size_percent",
    )
    @classmethod
    def validate_percent(cls, v):
        """Validate percentage is within (0, 100]."""
        if v <= 0 or v > 100:
            raise ValueError("Percentage must be between 0 and 100")
        return v

    @field_validator("tighten_factor")
    @classmethod
    def validate_factor(cls, v):
        """Tighten factor must shrink the gap."""
        if v <= 0 or v > 1:
            raise ValueError("Tighten factor must be between 0 and 1")
        return v


# =============================================================================
# Risk Limits Configuration
# =============================================================================


class RiskLimitsConfig(BaseSettings):
    """Account-wide guardrails."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Fraction of initial capital that may be lost in one UTC day
    max_daily_loss_fraction: Decimal = Field(
        default=Decimal("0.10"), validation_alias="MAX_DAILY_LOSS_FRACTION"
    )
    max_drawdown_percent: Decimal = Field(
        default=Decimal("25"), validation_alias="MAX_DRAWDOWN_PERCENT"
    )
    max_exposure_percent: Decimal = Field(
        default=Decimal("60"), validation_alias="MAX_EXPOSURE_PERCENT"
    )
    max_single_position_percent: Decimal = Field(
        default=Decimal("20"), validation_alias="MAX_SINGLE_POSITION_PERCENT"
    )
    max_consecutive_losses: int = Field(
        default=3, validation_alias="MAX_CONSECUTIVE_LOSSES"
    )
    cooldown_minutes: float = Field(default=30.0, validation_alias="COOLDOWN_MINUTES")
    min_seconds_between_trades: float = Field(
        default=60.0, validation_alias="MIN_SECONDS_BETWEEN_TRADES"
    )
    daily_loss_warning_ratio: Decimal = Field(
        default=Decimal("0.7"), validation_alias="DAILY_LOSS_WARNING_RATIO"
    )
    min_position_size: Decimal = Field(
        default=Decimal("0.01"), validation_alias="MIN_POSITION_SIZE"
    )
    conservative_drawdown_percent: Decimal = Field(
        default=Decimal("15"), validation_alias="CONSERVATIVE_DRAWDOWN_PERCENT"
    )

    @field_validator("max_consecutive_losses")
    @classmethod
    def validate_losses(cls, v):
        """Loss streak threshold must be positive."""
        if v < 1:
            raise ValueError("max_consecutive_losses must be at least 1")
        return v


# =============================================================================
# Survival Configuration
# =============================================================================


class SurvivalConfig(BaseSettings):
    """Reserve asset and capital health thresholds."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    reserve_asset: str = Field(default="", validation_alias="SURVIVE_TOKEN_MINT")
    profit_to_reserve_fraction: Decimal = Field(
        default=Decimal("0.30"), validation_alias="PROFIT_TO_RESERVE_FRACTION"
    )
    low_watermark_fraction: Decimal = Field(
        default=Decimal("0.25"), validation_alias="LOW_CAPITAL_FRACTION"
    )
    critical_watermark_fraction: Decimal = Field(
        default=Decimal("0.10"), validation_alias="CRITICAL_CAPITAL_FRACTION"
    )
    emergency_sell_fraction: Decimal = Field(
        default=Decimal("0.20"), validation_alias="EMERGENCY_SELL_FRACTION"
    )
    critical_sell_fraction: Decimal = Field(
        default=Decimal("0.10"), validation_alias="CRITICAL_SELL_FRACTION"
    )
    min_reserve_trade: Decimal = Field(
        default=Decimal("0.01"), validation_alias="MIN_RESERVE_TRADE"
    )

    @field_validator(
        "profit_to_reserve_fraction",
        "low_watermark_fraction",
        "critical_watermark_fraction",
        "emergency_sell_fraction",
        "critical_sell_fraction",
    )
    @classmethod
    def validate_fraction(cls, v):
        """Validate that fraction is between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("Fraction must be between 0 and 1")
        return v


# =============================================================================
# Profit Allocation Configuration
# =============================================================================


class ProfitAllocationConfig(BaseSettings):
    """Operating reserve and reinvestment split."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    reserve_min_months: Decimal = Field(
        default=Decimal("2"), validation_alias="OPERATING_RESERVE_MIN_MONTHS"
    )
    reserve_ideal_months: Decimal = Field(
        default=Decimal("3"), validation_alias="OPERATING_RESERVE_IDEAL_MONTHS"
    )
    reserve_topup_fraction: Decimal = Field(
        default=Decimal("0.20"), validation_alias="OPERATING_RESERVE_TOPUP"
    )
    base_reinvest_ratio: Decimal = Field(
        default=Decimal("0.6"), validation_alias="BASE_REINVEST_RATIO"
    )
    min_reserve_purchase: Decimal = Field(
        default=Decimal("0.05"), validation_alias="MIN_RESERVE_PURCHASE"
    )


# =============================================================================
# Agent Loop Configuration
# =============================================================================


class AgentLoopConfig(BaseSettings):
    """Tick cadence and entry scanning."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    tick_interval_seconds: float = Field(
        default=30.0, validation_alias="TICK_INTERVAL_SECONDS"
    )
    error_backoff_seconds: float = Field(
        default=5.0, validation_alias="TICK_ERROR_BACKOFF"
    )
    win_rate_window: int = Field(default=20, validation_alias="WIN_RATE_WINDOW")
    paper_starting_balance: Decimal = Field(
        default=Decimal("20"), validation_alias="PAPER_STARTING_BALANCE"
    )
    paper_slippage_percent: Decimal = Field(
        default=Decimal("1"), validation_alias="PAPER_SLIPPAGE_PERCENT"
    )

    # Entry candidates (comma-separated asset ids)
    watchlist_str: str = Field(default="", validation_alias="WATCHLIST")
    min_liquidity_usd: Decimal = Field(
        default=Decimal("50000"), validation_alias="MIN_LIQUIDITY_USD"
    )
    min_volume_usd: Decimal = Field(
        default=Decimal("100000"), validation_alias="MIN_VOLUME_USD"
    )

    @property
    def watchlist(self) -> List[str]:
        """Parse the watchlist string into a list."""
        return [s.strip() for s in self.watchlist_str.split(",") if s.strip()]


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Durable state store settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///data/agent_state.db", validation_alias="DATABASE_URL"
    )
    save_debounce_seconds: float = Field(
        default=1.0, validation_alias="STATE_SAVE_DEBOUNCE"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/agent.log", validation_alias="LOG_FILE")


# =============================================================================
# Main Configuration Container
# =============================================================================


class AgentConfig:
    """Main configuration container for the survival agent."""

    def __init__(self):
        self.system = SystemConfig()
        self.feed = FeedConfig()
        self.market_data = MarketDataConfig()
        self.capital = CapitalConfig()
        self.positions = PositionRulesConfig()
        self.risk = RiskLimitsConfig()
        self.survival = SurvivalConfig()
        self.allocation = ProfitAllocationConfig()
        self.loop = AgentLoopConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_paper_trading(self) -> bool:
        """Check if running with simulated execution."""
        return self.system.execution_mode == "paper"

    @property
    def max_daily_loss(self) -> Decimal:
        """Daily loss ceiling in base currency."""
        return self.capital.initial_capital * self.risk.max_daily_loss_fraction

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean, 'issues' and 'warnings' lists
        """
        issues = []
        warnings = []

        if not self.feed.has_credentials:
            warnings.append("No price stream API key: running on polling only")

        if not self.market_data.api_key:
            issues.append("Missing market data API key (BIRDEYE_API_KEY)")

        if not self.survival.reserve_asset:
            warnings.append("No reserve asset configured: profit earmarks accumulate")

        if self.survival.critical_watermark_fraction >= self.survival.low_watermark_fraction:
            issues.append("Critical watermark must be below the low watermark")

        if self.allocation.reserve_min_months > self.allocation.reserve_ideal_months:
            issues.append("Operating reserve minimum exceeds the ideal level")

        if self.risk.max_single_position_percent > self.risk.max_exposure_percent:
            issues.append("Single position ceiling exceeds total exposure ceiling")

        if not self.is_paper_trading:
            issues.append("Live execution needs a venue executor; only paper is bundled")

        if not self.loop.watchlist:
            warnings.append("Empty watchlist: no entries will be attempted")

        return {"valid": len(issues) == 0, "issues": issues, "warnings": warnings}


# =============================================================================
# Global Configuration Instances
# =============================================================================

agent_config = AgentConfig()
database_config = agent_config.database
logging_config = agent_config.logging


__all__ = [
    "AgentConfig",
    "agent_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "FeedConfig",
    "MarketDataConfig",
    "CapitalConfig",
    "PositionRulesConfig",
    "RiskLimitsConfig",
    "SurvivalConfig",
    "ProfitAllocationConfig",
    "AgentLoopConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
