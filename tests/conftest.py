"""Pytest fixtures and utilities for the survival agent test suite."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

import pytest
import pytest_asyncio

from src.core.config import AgentConfig, FeedConfig
from src.core.context import AgentContext
from src.core.exceptions import QuoteNotFoundError
from src.core.models import Quote
from src.exchange.execution import PaperExecutor
from src.exchange.market_data import MarketDataProvider
from src.feed.price_feed import PriceFeed
from src.positions.ledger import PositionLedger
from src.risk.risk_manager import RiskGuardrail
from src.storage.database import StateStore
from src.survival.profit_allocator import ProfitAllocator
from src.survival.survival_manager import SurvivalAllocator


# =============================================================================
# Test Doubles
# =============================================================================

class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeMarketData(MarketDataProvider):
    """In-memory quotes keyed by asset."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.liquidity: Dict[str, Decimal] = {}
        self.volume: Dict[str, Decimal] = {}
        self.calls = 0
        self.closed = False

    def set_price(self, asset: str, price) -> None:
        self.prices[asset] = Decimal(str(price))

    async def get_quote(self, asset: str) -> Quote:
        self.calls += 1
        if asset not in self.prices:
            raise QuoteNotFoundError(asset)
        return Quote(
            asset=asset,
            price=self.prices[asset],
            liquidity=self.liquidity.get(asset, Decimal("100000")),
            volume_24h=self.volume.get(asset, Decimal("500000")),
        )

    async def close(self):
        self.closed = True


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Deterministic UTC clock."""
    return FakeClock()


@pytest.fixture
def test_config():
    """Agent configuration with defaults and a reserve asset."""
    config = AgentConfig()
    config.feed = FeedConfig(api_key="", stream_url="wss://example.invalid/socket")
    config.survival.reserve_asset = "RESERVE"
    config.system.execution_mode = "paper"
    return config


@pytest.fixture
def context(test_config, clock):
    """Fresh agent context using the fake clock."""
    return AgentContext(config=test_config, clock=clock)


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def market_data():
    """Fake market data with a few priced assets."""
    return FakeMarketData({
        "TOKEN_A": Decimal("1.00"),
        "TOKEN_B": Decimal("2.00"),
        "RESERVE": Decimal("0.50"),
    })


@pytest.fixture
def executor(market_data):
    """Paper executor with no slippage."""
    return PaperExecutor(
        market_data,
        starting_balance=Decimal("20"),
        slippage_percent=Decimal("0"),
    )


@pytest.fixture
def feed(test_config, market_data, clock):
    """Price feed without credentials (polling only)."""
    return PriceFeed(config=test_config.feed, market_data=market_data, clock=clock)


@pytest.fixture
def ledger(context, feed):
    """Position ledger wired to the feed."""
    return PositionLedger(context, feed)


@pytest.fixture
def risk(context, ledger):
    """Risk guardrail reading exposure from the ledger."""
    return RiskGuardrail(context, exposure=ledger.total_exposure)


@pytest.fixture
def survival(context, executor, market_data):
    """Survival allocator over the paper executor."""
    return SurvivalAllocator(context, executor, market_data)


@pytest.fixture
def allocator(context):
    """Profit allocator."""
    return ProfitAllocator(context)


@pytest_asyncio.fixture
async def state_store():
    """State store on an in-memory SQLite database."""
    store = StateStore("sqlite+aiosqlite:///:memory:", debounce_seconds=0.01)
    await store.initialize()
    yield store
    await store.close()
