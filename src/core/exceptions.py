"""Shared exception types for the survival agent."""

from typing import Optional


class AgentError(Exception):
    """Base class for agent errors."""


class ExecutionError(AgentError):
    """Raised when a buy or sell cannot be completed.

    Execution is never retried automatically; a failed sale must surface
    to the caller rather than be assumed complete.
    """

    def __init__(self, asset: str, message: str, original: Optional[Exception] = None):
        super().__init__(f"{asset}: {message}")
        self.asset = asset
        self.original = original


class FillError(ExecutionError):
    """Raised when an order fills partially or not at all."""

    def __init__(self, asset: str, requested, filled):
        super().__init__(asset, f"requested {requested}, filled {filled}")
        self.requested = requested
        self.filled = filled


class MarketDataError(AgentError):
    """Raised when market data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class QuoteNotFoundError(MarketDataError):
    """Raised when the provider has no quote for an asset."""

    def __init__(self, asset: str):
        super().__init__(f"no quote for {asset}")
        self.asset = asset


class MalformedResponseError(MarketDataError):
    """Raised when a collaborator payload fails schema validation."""


class FeedError(AgentError):
    """Raised when the price feed is used incorrectly."""


class RateLimitError(MarketDataError):
    """Raised when the provider throttles requests."""
