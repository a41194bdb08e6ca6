"""Unit tests for configuration classes of the survival agent."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from src.core.config import (
    AgentConfig,
    AgentLoopConfig,
    CapitalConfig,
    FeedConfig,
    LoggingConfig,
    PositionRulesConfig,
    RiskLimitsConfig,
    SurvivalConfig,
    SystemConfig,
)


# =============================================================================
# SystemConfig Tests
# =============================================================================

class TestSystemConfig:
    """Test SystemConfig configuration."""

    def test_execution_mode_validation(self):
        """Only paper and live are valid execution modes."""
        assert SystemConfig(execution_mode="paper").execution_mode == "paper"
        assert SystemConfig(execution_mode="live").execution_mode == "live"

        with pytest.raises(ValidationError):
            SystemConfig(execution_mode="simulated")

    def test_environment_validation(self):
        """Unknown environments are rejected."""
        with pytest.raises(ValidationError):
            SystemConfig(environment="invalid")


# =============================================================================
# FeedConfig Tests
# =============================================================================

class TestFeedConfig:
    """Test price feed settings."""

    def test_defaults(self):
        """Heartbeat and staleness defaults."""
        config = FeedConfig(api_key="")

        assert config.heartbeat_interval_seconds == 30.0
        assert config.heartbeat_timeout_seconds == 60.0
        assert config.max_reconnect_attempts == 5
        assert config.stale_after_seconds == 120.0

    def test_credentials(self):
        """Placeholder keys do not count as credentials."""
        assert FeedConfig(api_key="").has_credentials is False
        assert FeedConfig(api_key="your_api_key_here").has_credentials is False
        assert FeedConfig(api_key="abc123").has_credentials is True

    def test_reconnect_attempts_must_be_positive(self):
        """Zero reconnect attempts is rejected."""
        with pytest.raises(ValidationError):
            FeedConfig(max_reconnect_attempts=0)


# =============================================================================
# Capital And Rule Config Tests
# =============================================================================

class TestCapitalConfig:
    """Test capital levels."""

    def test_capital_must_be_positive(self):
        """Initial capital of zero is rejected."""
        with pytest.raises(ValidationError):
            CapitalConfig(initial_capital=Decimal("0"))


class TestPositionRulesConfig:
    """Test ledger exit rules."""

    def test_defaults(self):
        """Exit rule defaults."""
        config = PositionRulesConfig()

        assert config.stop_loss_percent == Decimal("20")
        assert config.trailing_stop_percent == Decimal("15")
        assert config.trailing_activation_percent == Decimal("30")
        assert config.take_profit_percent == Decimal("100")
        assert config.partial_take_percent == Decimal("50")
        assert config.partial_size_percent == Decimal("50")

    def test_percent_validation(self):
        """Stop percentages must lie in (0, 100]."""
        with pytest.raises(ValidationError):
            PositionRulesConfig(stop_loss_percent=Decimal("0"))
        with pytest.raises(ValidationError):
            PositionRulesConfig(trailing_stop_percent=Decimal("150"))

    def test_tighten_factor_validation(self):
        """A factor above one would loosen stops."""
        with pytest.raises(ValidationError):
            PositionRulesConfig(tighten_factor=Decimal("1.2"))


class TestRiskLimitsConfig:
    """Test guardrail limits."""

    def test_defaults(self):
        """Guardrail defaults."""
        config = RiskLimitsConfig()

        assert config.max_daily_loss_fraction == Decimal("0.10")
        assert config.max_drawdown_percent == Decimal("25")
        assert config.max_consecutive_losses == 3
        assert config.cooldown_minutes == 30.0

    def test_losses_validation(self):
        """Loss streak threshold must be positive."""
        with pytest.raises(ValidationError):
            RiskLimitsConfig(max_consecutive_losses=0)


class TestSurvivalConfig:
    """Test survival thresholds."""

    def test_fraction_validation(self):
        """Fractions must be between 0 and 1."""
        with pytest.raises(ValidationError):
            SurvivalConfig(emergency_sell_fraction=Decimal("1.5"))


# =============================================================================
# Loop And Logging Config Tests
# =============================================================================

class TestAgentLoopConfig:
    """Test loop settings."""

    def test_watchlist_parsing(self):
        """Whitespace and empty entries are ignored."""
        config = AgentLoopConfig(watchlist_str=" TOKEN_A, TOKEN_B,, TOKEN_C ")

        assert config.watchlist == ["TOKEN_A", "TOKEN_B", "TOKEN_C"]

    def test_empty_watchlist(self):
        """An empty string yields no candidates."""
        assert AgentLoopConfig(watchlist_str="").watchlist == []


class TestLoggingConfig:
    """Test logging settings."""

    def test_log_level_validation(self):
        """Unknown log levels are rejected."""
        with pytest.raises(ValidationError):
            LoggingConfig(log_level="VERBOSE")


# =============================================================================
# AgentConfig Tests
# =============================================================================

class TestAgentConfig:
    """Test the configuration container."""

    def test_max_daily_loss(self):
        """Daily loss ceiling is a fraction of initial capital."""
        config = AgentConfig()
        config.capital = CapitalConfig(initial_capital=Decimal("20"))
        config.risk = RiskLimitsConfig(max_daily_loss_fraction=Decimal("0.10"))

        assert config.max_daily_loss == Decimal("2")

    def test_validate_flags_live_execution(self):
        """Live execution is reported as an issue."""
        config = AgentConfig()
        config.system = SystemConfig(execution_mode="live")

        result = config.validate_configuration()

        assert result["valid"] is False
        assert any("Live execution" in issue for issue in result["issues"])

    def test_validate_flags_inverted_watermarks(self):
        """A critical watermark above the low watermark is an issue."""
        config = AgentConfig()
        config.survival = SurvivalConfig(
            low_watermark_fraction=Decimal("0.10"),
            critical_watermark_fraction=Decimal("0.25"),
        )

        result = config.validate_configuration()

        assert any("Critical watermark" in issue for issue in result["issues"])

    def test_validate_warns_on_empty_watchlist(self):
        """An empty watchlist is a warning, not an issue."""
        config = AgentConfig()
        config.loop = AgentLoopConfig(watchlist_str="")

        result = config.validate_configuration()

        assert any("watchlist" in w for w in result["warnings"])
