"""Unit tests for the market data provider and retry decorator."""
from decimal import Decimal
from unittest.mock import AsyncMock

import aiohttp
import pytest

from src.core.config import MarketDataConfig
from src.core.exceptions import MalformedResponseError, QuoteNotFoundError, RateLimitError
from src.exchange.market_data import BirdeyeMarketData, create_market_data, with_retry


OVERVIEW = {
    "success": True,
    "data": {
        "address": "TOKEN_A",
        "price": 0.00012345,
        "liquidity": 85000.5,
        "v24hUSD": 250000,
        "symbol": "TKA",
    },
}


# =============================================================================
# Overview Parsing Tests
# =============================================================================

class TestParseOverview:
    """Test token overview parsing."""

    def test_valid_payload(self):
        quote = BirdeyeMarketData._parse_overview("TOKEN_A", OVERVIEW)

        assert quote.asset == "TOKEN_A"
        assert quote.price == Decimal("0.00012345")
        assert quote.liquidity == Decimal("85000.5")
        assert quote.volume_24h == Decimal("250000")

    @pytest.mark.parametrize("payload", [
        {"success": False, "data": None},
        {"success": True, "data": None},
        {"success": True, "data": {"price": None}},
        {"success": True, "data": {"price": 0}},
    ])
    def test_unknown_asset(self, payload):
        """Unsuccessful or priceless payloads mean no quote."""
        with pytest.raises(QuoteNotFoundError):
            BirdeyeMarketData._parse_overview("TOKEN_A", payload)

    def test_malformed_payload(self):
        """Payloads failing the schema are reported as malformed."""
        with pytest.raises(MalformedResponseError):
            BirdeyeMarketData._parse_overview("TOKEN_A", {"data": {"price": "abc"}})


# =============================================================================
# Provider Tests
# =============================================================================

class TestBirdeyeMarketData:
    """Test the REST provider with the transport patched."""

    @pytest.mark.asyncio
    async def test_get_quote(self):
        provider = create_market_data(MarketDataConfig(api_key="test"))
        provider._fetch = AsyncMock(return_value=OVERVIEW)

        quote = await provider.get_quote("TOKEN_A")

        assert quote.price == Decimal("0.00012345")
        provider._fetch.assert_awaited_once_with("/defi/token_overview", {"address": "TOKEN_A"})

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        """Only transport errors are retried."""
        provider = BirdeyeMarketData(MarketDataConfig(api_key="test"))
        provider._fetch = AsyncMock(side_effect=QuoteNotFoundError("TOKEN_A"))

        with pytest.raises(QuoteNotFoundError):
            await provider.get_quote("TOKEN_A")

        assert provider._fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        provider = BirdeyeMarketData(MarketDataConfig(api_key="test"))

        await provider.close()

        assert provider._session is None


# =============================================================================
# Retry Decorator Tests
# =============================================================================

class TestRetryDecorator:
    """Test retry decorator functionality."""

    @pytest.mark.asyncio
    async def test_retry_success_first_attempt(self):
        """Successful calls don't retry."""
        call_count = 0

        @with_retry(max_retries=3)
        async def successful_function():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_function() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_network_error(self):
        """Network errors are retried with backoff."""
        call_count = 0

        @with_retry(max_retries=3, base_delay=0.01)
        async def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise aiohttp.ClientConnectionError("connection reset")
            return "success"

        assert await flaky() == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_retry_exhausted_raises(self):
        """The last error is raised once retries run out."""
        @with_retry(max_retries=2, base_delay=0.01)
        async def always_fails():
            raise aiohttp.ClientConnectionError("always fails")

        with pytest.raises(aiohttp.ClientConnectionError, match="always fails"):
            await always_fails()

    @pytest.mark.asyncio
    async def test_no_retry_on_non_retryable_error(self):
        """Non-retryable errors propagate immediately."""
        call_count = 0

        @with_retry(max_retries=3)
        async def raises_value_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not retryable")

        with pytest.raises(ValueError, match="not retryable"):
            await raises_value_error()

        assert call_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retry(self):
        """Rate limits are retried with their own backoff."""
        call_count = 0

        @with_retry(max_retries=2, base_delay=0.01, max_delay=0.001)
        async def throttled():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise RateLimitError("rate limited")
            return "success"

        assert await throttled() == "success"
        assert call_count == 2
