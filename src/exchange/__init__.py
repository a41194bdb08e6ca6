"""External trading collaborators: market data and execution."""

from src.exchange.execution import (
    PaperExecutor,
    TradeExecutor,
    create_executor,
)
from src.exchange.market_data import (
    BirdeyeMarketData,
    MarketDataProvider,
    RetryConfig,
    create_market_data,
    with_retry,
)

__all__ = [
    "TradeExecutor",
    "PaperExecutor",
    "create_executor",
    "MarketDataProvider",
    "BirdeyeMarketData",
    "RetryConfig",
    "create_market_data",
    "with_retry",
]
